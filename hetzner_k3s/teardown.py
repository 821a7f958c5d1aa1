"""Best-effort deletion of every resource belonging to a cluster.

Resources are only looked up, never created. Each failed deletion is logged
and the next one is attempted anyway; re-running picks up whatever is left.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from loguru import logger

from hetzner_k3s.cluster import naming
from hetzner_k3s.config import ClusterSpec
from hetzner_k3s.core.exceptions import HetznerK3sError
from hetzner_k3s.hetzner.provider import CloudProvider

SETTLE_DELAY = 1.0

log = logger.bind(component="teardown")


@dataclass
class TeardownReport:
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.failed


@dataclass
class TeardownOrchestrator:
    """Deletes load balancer, SSH key, servers, placement groups, network
    and firewall, in that order.

    The pauses before the network and the firewall give the provider time
    to detach servers from them.
    """

    provider: CloudProvider
    spec: ClusterSpec
    pause: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def _step(
        self,
        report: TeardownReport,
        label: str,
        delete: Callable[[], Awaitable[bool]],
    ) -> None:
        try:
            found = await delete()
        except HetznerK3sError as e:
            log.error("Cannot delete {label}: {err}", label=label, err=e)
            report.failed.append(label)
            return
        if found:
            report.deleted.append(label)

    async def _load_balancer(self) -> bool:
        name = naming.load_balancer_name(self.spec.cluster_name)
        lb = await self.provider.get_load_balancer(name)
        if lb is None:
            return False
        log.info("Deleting load balancer: {name}...", name=name)
        await self.provider.delete_load_balancer(lb["id"])
        log.info("...load balancer deleted: {name}.", name=name)
        return True

    async def _ssh_key(self) -> bool:
        key = await self.provider.get_ssh_key(self.spec.cluster_name)
        if key is None:
            return False
        log.info("Deleting SSH public key...")
        await self.provider.delete_ssh_key(key["id"])
        log.info("...SSH public key deleted.")
        return True

    async def _servers(self, report: TeardownReport) -> None:
        cluster = self.spec.cluster_name
        try:
            servers = await self.provider.list_servers()
        except HetznerK3sError as e:
            log.error("Cannot list servers: {err}", err=e)
            report.failed.append("servers")
            return

        for server in servers:
            if not naming.belongs_to(cluster, server.get("labels") or {}):
                continue

            async def delete(server=server) -> bool:
                log.info("Deleting server: {name}...", name=server["name"])
                await self.provider.delete_server(server["id"])
                log.info("...server deleted: {name}.", name=server["name"])
                return True

            await self._step(report, f"server {server['name']}", delete)

    async def _placement_groups(self, report: TeardownReport) -> None:
        for name in naming.placement_group_names(self.spec):

            async def delete(name=name) -> bool:
                group = await self.provider.get_placement_group(name)
                if group is None:
                    return False
                log.info("Deleting placement group: {name}...", name=name)
                await self.provider.delete_placement_group(group["id"])
                return True

            await self._step(report, f"placement group {name}", delete)

    async def _network(self) -> bool:
        if self.spec.existing_network:
            log.info("Keeping existing network {name}.", name=self.spec.existing_network)
            return False
        network = await self.provider.get_network(self.spec.network_name)
        if network is None:
            return False
        log.info("Deleting network: {name}...", name=network["name"])
        await self.provider.delete_network(network["id"])
        log.info("...network deleted: {name}.", name=network["name"])
        return True

    async def _firewall(self) -> bool:
        firewall = await self.provider.get_firewall(self.spec.cluster_name)
        if firewall is None:
            return False
        log.info("Deleting firewall {name}...", name=firewall["name"])
        await self.provider.delete_firewall(firewall["id"])
        log.info("...firewall {name} deleted.", name=firewall["name"])
        return True

    async def teardown(self) -> TeardownReport:
        """Delete everything; never raises for a single failed deletion."""
        report = TeardownReport()
        await self._step(report, "load balancer", self._load_balancer)
        await self._step(report, "ssh key", self._ssh_key)
        await self._servers(report)
        await self._placement_groups(report)
        await self.pause(SETTLE_DELAY)
        await self._step(report, "network", self._network)
        await self.pause(SETTLE_DELAY)
        await self._step(report, "firewall", self._firewall)

        if not report.clean:
            log.warning("Teardown finished with errors: {failed}", failed=", ".join(report.failed))
        return report
