"""Idempotent get-or-create for every cloud resource a cluster needs.

Each ``ensure_*`` method looks the resource up by name, applies any missing
mutable piece of desired state to an existing one, or creates it. Results
are memoized in ClusterState, so calling a method twice in one run issues at
most one creation request. Provider errors propagate unchanged; there is no
retry at this layer.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass

from loguru import logger
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from hetzner_k3s.cluster import naming
from hetzner_k3s.cluster.naming import ServerSpec
from hetzner_k3s.cluster.state import (
    FIREWALL,
    LOAD_BALANCER,
    NETWORK,
    SSH_KEY,
    ClusterState,
    placement_group_key,
    server_key,
)
from hetzner_k3s.config import ClusterSpec
from hetzner_k3s.core.exceptions import ConfigurationError, ProviderError
from hetzner_k3s.hetzner.provider import CloudProvider
from hetzner_k3s.hetzner.types import (
    FirewallResponse,
    FirewallRule,
    LoadBalancerResponse,
    NetworkResponse,
    PlacementGroupResponse,
    ServerResponse,
    SSHKeyResponse,
)

PLACEMENT_GROUP_MAX_SIZE = 10
ANYWHERE = "0.0.0.0/0"

LB_ADDRESS_ATTEMPTS = 10
LB_ADDRESS_DELAY = 3.0

log = logger.bind(component="reconciler")


# =============================================================================
# Pure helpers
# =============================================================================


def firewall_rules(spec: ClusterSpec, network_range: str) -> list[FirewallRule]:
    """Compute the cluster firewall rule set.

    The API port is opened to the allowed networks only for single-master
    clusters; HA clusters reach the API through the load balancer.
    """
    rules: list[FirewallRule] = [
        {
            "description": "Allow ICMP (ping)",
            "direction": "in",
            "protocol": "icmp",
            "source_ips": [ANYWHERE],
        },
        {
            "description": "Allow all TCP traffic between nodes on the private network",
            "direction": "in",
            "protocol": "tcp",
            "port": "any",
            "source_ips": [network_range],
        },
        {
            "description": "Allow all UDP traffic between nodes on the private network",
            "direction": "in",
            "protocol": "udp",
            "port": "any",
            "source_ips": [network_range],
        },
    ]
    if not spec.is_ha:
        rules.extend(
            {
                "description": "Allow port 6443 (Kubernetes API server)",
                "direction": "in",
                "protocol": "tcp",
                "port": "6443",
                "source_ips": [cidr],
            }
            for cidr in spec.api_allowed_networks
        )
    rules.extend(
        {
            "description": "Allow port 22 (SSH)",
            "direction": "in",
            "protocol": "tcp",
            "port": "22",
            "source_ips": [cidr],
        }
        for cidr in spec.ssh_allowed_networks
    )
    return rules


def _same_range(a: str, b: str) -> bool:
    return ipaddress.ip_network(a, strict=False) == ipaddress.ip_network(b, strict=False)


def has_selector(lb: LoadBalancerResponse, selector: str) -> bool:
    return any(
        t.get("type") == "label_selector"
        and t.get("label_selector", {}).get("selector") == selector
        for t in lb.get("targets", [])
    )


def public_ip(resource: ServerResponse | LoadBalancerResponse) -> str | None:
    ipv4 = (resource.get("public_net") or {}).get("ipv4")
    return ipv4["ip"] if ipv4 and ipv4.get("ip") else None


def private_ip(server: ServerResponse) -> str | None:
    nets = server.get("private_net") or []
    return nets[0]["ip"] if nets else None


class _AddressPending(Exception):
    pass


# =============================================================================
# Reconciler
# =============================================================================


@dataclass
class ResourceReconciler:
    """Resolve-or-create for each resource kind, cached in ``state``.

    Args:
        provider: Cloud API.
        state: Per-run handle cache.
        public_key: Contents of the operator's public SSH key.
        user_data: Cloud-init document given to every new server.
    """

    provider: CloudProvider
    state: ClusterState
    public_key: str = ""
    user_data: str = ""

    @property
    def spec(self) -> ClusterSpec:
        return self.state.spec

    # ─── Network ─────────────────────────────────────────────────────

    async def ensure_network(self) -> NetworkResponse:
        return await self.state.memo(NETWORK, self._reconcile_network)

    async def _reconcile_network(self) -> NetworkResponse:
        name = self.spec.network_name
        zone = naming.network_zone(self.spec.location)
        network = await self.provider.get_network(name)

        if network is not None:
            log.info("Network exists: {name}.", name=name)
            if not any(_same_range(s["ip_range"], network["ip_range"]) for s in network["subnets"]):
                await self.provider.add_subnet(network["id"], network["ip_range"], zone)
            return network

        if self.spec.existing_network:
            raise ConfigurationError(f"Existing network '{name}' was not found")

        log.info("Creating network {name}...", name=name)
        network = await self.provider.create_network(name, self.spec.network_ip_range)
        await self.provider.add_subnet(network["id"], network["ip_range"], zone)
        log.info("...network created: {name}.", name=name)
        return network

    # ─── Firewall ────────────────────────────────────────────────────

    async def ensure_firewall(self) -> FirewallResponse:
        return await self.state.memo(FIREWALL, self._reconcile_firewall)

    async def _reconcile_firewall(self) -> FirewallResponse:
        name = self.spec.cluster_name
        network = await self.ensure_network()
        rules = firewall_rules(self.spec, network["ip_range"])
        firewall = await self.provider.get_firewall(name)

        if firewall is not None:
            log.info("Firewall {name} exists, updating rules.", name=name)
            await self.provider.set_firewall_rules(firewall["id"], rules)
            return firewall

        log.info("Creating firewall {name}...", name=name)
        firewall = await self.provider.create_firewall(name, rules)
        log.info("...firewall {name} created.", name=name)
        return firewall

    # ─── SSH key ─────────────────────────────────────────────────────

    async def ensure_ssh_key(self) -> SSHKeyResponse:
        return await self.state.memo(SSH_KEY, self._reconcile_ssh_key)

    async def _reconcile_ssh_key(self) -> SSHKeyResponse:
        name = self.spec.cluster_name
        key = await self.provider.get_ssh_key(name)
        if key is not None:
            log.info("SSH public key exists.")
            return key

        log.info("Creating SSH public key...")
        key = await self.provider.create_ssh_key(name, self.public_key)
        log.info("...SSH public key uploaded.")
        return key

    # ─── Placement groups ────────────────────────────────────────────

    async def ensure_placement_group(self, name: str, size: int) -> PlacementGroupResponse:
        if size > PLACEMENT_GROUP_MAX_SIZE:
            raise ConfigurationError(
                f"Placement group '{name}' would hold {size} servers; "
                f"the maximum is {PLACEMENT_GROUP_MAX_SIZE}"
            )

        async def reconcile() -> PlacementGroupResponse:
            group = await self.provider.get_placement_group(name)
            if group is not None:
                log.info("Placement group exists: {name}.", name=name)
                return group
            log.info("Creating placement group {name}...", name=name)
            group = await self.provider.create_placement_group(name)
            log.info("...placement group created: {name}.", name=name)
            return group

        return await self.state.memo(placement_group_key(name), reconcile)

    # ─── Load balancer ───────────────────────────────────────────────

    async def ensure_load_balancer(self) -> LoadBalancerResponse:
        return await self.state.memo(LOAD_BALANCER, self._reconcile_load_balancer)

    async def _reconcile_load_balancer(self) -> LoadBalancerResponse:
        cluster = self.spec.cluster_name
        name = naming.load_balancer_name(cluster)
        selector = naming.master_selector(cluster)
        lb = await self.provider.get_load_balancer(name)

        if lb is not None:
            log.info("Load balancer exists: {name}.", name=name)
            if not has_selector(lb, selector):
                await self.provider.add_label_selector_target(lb["id"], selector)
            return lb

        network = await self.ensure_network()
        log.info("Creating load balancer {name}...", name=name)
        lb = await self.provider.create_load_balancer(name, self.spec.location, network["id"], selector)
        log.info("...load balancer created: {name}.", name=name)
        return lb

    async def load_balancer_address(self) -> str:
        """Public IPv4 of the API load balancer.

        The address is assigned asynchronously after creation, so an
        unassigned address triggers a re-fetch (the only cached handle that
        is ever refreshed).
        """
        lb = await self.ensure_load_balancer()
        if (ip := public_ip(lb)) is not None:
            return ip

        name = lb["name"]

        @retry(
            stop=stop_after_attempt(LB_ADDRESS_ATTEMPTS),
            wait=wait_fixed(LB_ADDRESS_DELAY),
            retry=retry_if_exception_type(_AddressPending),
        )
        async def refetch() -> str:
            fresh = await self.provider.get_load_balancer(name)
            if fresh is None or (ip := public_ip(fresh)) is None:
                raise _AddressPending
            self.state.replace(LOAD_BALANCER, fresh)
            return ip

        try:
            return await refetch()
        except RetryError as e:
            raise ProviderError(
                f"Resolve address of load balancer '{name}'", "public IP was never assigned"
            ) from e

    async def api_address(self) -> str:
        """Where clients reach the Kubernetes API.

        The load balancer for multi-master clusters, otherwise the first
        master's public address.
        """
        if self.spec.is_ha:
            return await self.load_balancer_address()
        master = self.state.first_master
        if master is None or (ip := public_ip(master)) is None:
            raise ProviderError("Resolve API address", "first master has no public IP")
        return ip

    # ─── Servers ─────────────────────────────────────────────────────

    async def ensure_server(self, desired: ServerSpec, group_size: int) -> ServerResponse:
        async def reconcile() -> ServerResponse:
            server = await self.provider.get_server(desired.name)
            if server is not None:
                log.info("Server exists: {name}.", name=desired.name)
                return server

            network = await self.ensure_network()
            firewall = await self.ensure_firewall()
            ssh_key = await self.ensure_ssh_key()
            group = await self.ensure_placement_group(desired.placement_group, group_size)

            log.info("Creating server: {name}...", name=desired.name)
            server = await self.provider.create_server(
                name=desired.name,
                server_type=desired.instance_type,
                image=self.spec.image,
                location=desired.location,
                ssh_key_id=ssh_key["id"],
                network_id=network["id"],
                firewall_id=firewall["id"],
                placement_group_id=group["id"],
                user_data=self.user_data,
                labels=desired.labels(self.spec.cluster_name),
            )
            log.info("...server created: {name}.", name=desired.name)
            return server

        return await self.state.memo(server_key(desired.name), reconcile)

    async def refresh_server(self, server: ServerResponse) -> ServerResponse:
        fresh = await self.provider.get_server(server["name"])
        if fresh is None:
            raise ProviderError(f"Refresh server '{server['name']}'", "server disappeared")
        return fresh
