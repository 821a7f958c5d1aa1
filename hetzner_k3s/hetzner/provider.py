"""Cloud provider protocol.

The orchestrator only ever talks to the cloud through this interface, so
tests can substitute an in-memory implementation for the real API client.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from hetzner_k3s.hetzner.types import (
    FirewallResponse,
    FirewallRule,
    LoadBalancerResponse,
    LocationResponse,
    NetworkResponse,
    PlacementGroupResponse,
    ServerResponse,
    SSHKeyResponse,
)


@runtime_checkable
class CloudProvider(Protocol):
    """Get/create/delete access to every resource kind a cluster uses.

    ``get_*`` methods look a resource up by its exact name and return
    ``None`` when it does not exist. Listing methods page through all
    results. Every method raises ``ProviderError`` on API failure.
    """

    # networks
    async def get_network(self, name: str) -> NetworkResponse | None: ...
    async def create_network(self, name: str, ip_range: str) -> NetworkResponse: ...
    async def add_subnet(self, network_id: int, ip_range: str, network_zone: str) -> None: ...
    async def delete_network(self, network_id: int) -> None: ...

    # firewalls
    async def get_firewall(self, name: str) -> FirewallResponse | None: ...
    async def create_firewall(self, name: str, rules: list[FirewallRule]) -> FirewallResponse: ...
    async def set_firewall_rules(self, firewall_id: int, rules: list[FirewallRule]) -> None: ...
    async def delete_firewall(self, firewall_id: int) -> None: ...

    # ssh keys
    async def get_ssh_key(self, name: str) -> SSHKeyResponse | None: ...
    async def create_ssh_key(self, name: str, public_key: str) -> SSHKeyResponse: ...
    async def delete_ssh_key(self, key_id: int) -> None: ...

    # placement groups
    async def get_placement_group(self, name: str) -> PlacementGroupResponse | None: ...
    async def create_placement_group(self, name: str) -> PlacementGroupResponse: ...
    async def delete_placement_group(self, group_id: int) -> None: ...

    # load balancers
    async def get_load_balancer(self, name: str) -> LoadBalancerResponse | None: ...

    async def create_load_balancer(
        self, name: str, location: str, network_id: int, selector: str
    ) -> LoadBalancerResponse: ...

    async def add_label_selector_target(self, lb_id: int, selector: str) -> None: ...
    async def delete_load_balancer(self, lb_id: int) -> None: ...

    # servers
    async def get_server(self, name: str) -> ServerResponse | None: ...

    async def create_server(
        self,
        *,
        name: str,
        server_type: str,
        image: str,
        location: str,
        ssh_key_id: int,
        network_id: int,
        firewall_id: int,
        placement_group_id: int,
        user_data: str,
        labels: dict[str, str],
    ) -> ServerResponse: ...

    async def delete_server(self, server_id: int) -> None: ...
    async def list_servers(self) -> list[ServerResponse]: ...

    # locations
    async def list_locations(self) -> list[LocationResponse]: ...
