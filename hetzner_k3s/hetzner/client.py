"""Async client for the Hetzner Cloud API.

Built on the shared aiohttp HttpClient. Returns TypedDicts directly.
"""

from __future__ import annotations

import json
from typing import Any, cast

from loguru import logger

from hetzner_k3s.core.exceptions import ProviderError
from hetzner_k3s.infra.http import BearerAuth, HttpClient, HttpError

from .types import (
    FirewallResponse,
    FirewallRule,
    LoadBalancerResponse,
    LocationResponse,
    NetworkResponse,
    PlacementGroupResponse,
    ServerResponse,
    SSHKeyResponse,
)

API_BASE_URL = "https://api.hetzner.cloud/v1"
PAGE_SIZE = 50

LOAD_BALANCER_TYPE = "lb11"
API_PORT = 6443

log = logger.bind(provider="hetzner")


def _error_message(err: HttpError) -> str:
    try:
        payload = json.loads(err.body)
        return payload["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return err.body or "request failed"


class HetznerClient:
    """Hetzner Cloud API client implementing :class:`CloudProvider`.

    Example:
        async with HetznerClient(token) as client:
            network = await client.get_network("my-cluster")
    """

    def __init__(self, token: str, *, base_url: str = API_BASE_URL, http: HttpClient | None = None) -> None:
        self._http = http or HttpClient(base_url, BearerAuth(token))

    async def __aenter__(self) -> HetznerClient:
        await self._http.__aenter__()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self._http.close()

    async def close(self) -> None:
        await self._http.close()

    # =========================================================================
    # Low-level helpers
    # =========================================================================

    async def _call(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        try:
            return await self._http.request(method, path, json=body, params=params)
        except HttpError as e:
            raise ProviderError(operation, _error_message(e), e.status) from e

    async def _list(self, collection: str, params: dict[str, Any] | None = None) -> list[Any]:
        items: list[Any] = []
        page: int | None = 1
        while page:
            query = {**(params or {}), "page": page, "per_page": PAGE_SIZE}
            data = await self._call(f"List {collection}", "GET", f"/{collection}", params=query)
            items.extend(data.get(collection, []))
            pagination = (data.get("meta") or {}).get("pagination") or {}
            page = pagination.get("next_page")
        return items

    async def _by_name(self, collection: str, name: str) -> Any | None:
        data = await self._call(
            f"Find {collection} '{name}'", "GET", f"/{collection}", params={"name": name}
        )
        found = data.get(collection, [])
        return found[0] if found else None

    async def _create(self, collection: str, key: str, body: dict[str, Any]) -> Any:
        data = await self._call(f"Create {key} '{body.get('name')}'", "POST", f"/{collection}", body=body)
        return data[key]

    async def _action(self, operation: str, path: str, body: dict[str, Any]) -> None:
        await self._call(operation, "POST", path, body=body)

    async def _delete(self, collection: str, resource_id: int) -> None:
        await self._call(f"Delete {collection}/{resource_id}", "DELETE", f"/{collection}/{resource_id}")

    # =========================================================================
    # Networks
    # =========================================================================

    async def get_network(self, name: str) -> NetworkResponse | None:
        return cast(NetworkResponse | None, await self._by_name("networks", name))

    async def create_network(self, name: str, ip_range: str) -> NetworkResponse:
        return cast(
            NetworkResponse,
            await self._create("networks", "network", {"name": name, "ip_range": ip_range}),
        )

    async def add_subnet(self, network_id: int, ip_range: str, network_zone: str) -> None:
        await self._action(
            f"Add subnet to network {network_id}",
            f"/networks/{network_id}/actions/add_subnet",
            {"type": "cloud", "ip_range": ip_range, "network_zone": network_zone},
        )

    async def delete_network(self, network_id: int) -> None:
        await self._delete("networks", network_id)

    # =========================================================================
    # Firewalls
    # =========================================================================

    async def get_firewall(self, name: str) -> FirewallResponse | None:
        return cast(FirewallResponse | None, await self._by_name("firewalls", name))

    async def create_firewall(self, name: str, rules: list[FirewallRule]) -> FirewallResponse:
        return cast(
            FirewallResponse,
            await self._create("firewalls", "firewall", {"name": name, "rules": rules}),
        )

    async def set_firewall_rules(self, firewall_id: int, rules: list[FirewallRule]) -> None:
        await self._action(
            f"Set rules of firewall {firewall_id}",
            f"/firewalls/{firewall_id}/actions/set_rules",
            {"rules": rules},
        )

    async def delete_firewall(self, firewall_id: int) -> None:
        await self._delete("firewalls", firewall_id)

    # =========================================================================
    # SSH keys
    # =========================================================================

    async def get_ssh_key(self, name: str) -> SSHKeyResponse | None:
        return cast(SSHKeyResponse | None, await self._by_name("ssh_keys", name))

    async def create_ssh_key(self, name: str, public_key: str) -> SSHKeyResponse:
        return cast(
            SSHKeyResponse,
            await self._create("ssh_keys", "ssh_key", {"name": name, "public_key": public_key}),
        )

    async def delete_ssh_key(self, key_id: int) -> None:
        await self._delete("ssh_keys", key_id)

    # =========================================================================
    # Placement groups
    # =========================================================================

    async def get_placement_group(self, name: str) -> PlacementGroupResponse | None:
        return cast(PlacementGroupResponse | None, await self._by_name("placement_groups", name))

    async def create_placement_group(self, name: str) -> PlacementGroupResponse:
        return cast(
            PlacementGroupResponse,
            await self._create("placement_groups", "placement_group", {"name": name, "type": "spread"}),
        )

    async def delete_placement_group(self, group_id: int) -> None:
        await self._delete("placement_groups", group_id)

    # =========================================================================
    # Load balancers
    # =========================================================================

    async def get_load_balancer(self, name: str) -> LoadBalancerResponse | None:
        return cast(LoadBalancerResponse | None, await self._by_name("load_balancers", name))

    async def create_load_balancer(
        self, name: str, location: str, network_id: int, selector: str
    ) -> LoadBalancerResponse:
        body = {
            "name": name,
            "load_balancer_type": LOAD_BALANCER_TYPE,
            "algorithm": {"type": "round_robin"},
            "location": location,
            "network": network_id,
            "public_interface": True,
            "services": [
                {
                    "protocol": "tcp",
                    "listen_port": API_PORT,
                    "destination_port": API_PORT,
                    "proxyprotocol": False,
                }
            ],
            "targets": [
                {
                    "type": "label_selector",
                    "label_selector": {"selector": selector},
                    "use_private_ip": True,
                }
            ],
        }
        return cast(LoadBalancerResponse, await self._create("load_balancers", "load_balancer", body))

    async def add_label_selector_target(self, lb_id: int, selector: str) -> None:
        await self._action(
            f"Add target to load balancer {lb_id}",
            f"/load_balancers/{lb_id}/actions/add_target",
            {"type": "label_selector", "label_selector": {"selector": selector}, "use_private_ip": True},
        )

    async def delete_load_balancer(self, lb_id: int) -> None:
        await self._delete("load_balancers", lb_id)

    # =========================================================================
    # Servers
    # =========================================================================

    async def get_server(self, name: str) -> ServerResponse | None:
        return cast(ServerResponse | None, await self._by_name("servers", name))

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
    ) -> ServerResponse:
        body = {
            "name": name,
            "server_type": server_type,
            "image": image,
            "location": location,
            "ssh_keys": [ssh_key_id],
            "networks": [network_id],
            "firewalls": [{"firewall": firewall_id}],
            "placement_group": placement_group_id,
            "user_data": user_data,
            "labels": labels,
            "start_after_create": True,
        }
        log.debug("Creating server {name} ({server_type})", name=name, server_type=server_type)
        return cast(ServerResponse, await self._create("servers", "server", body))

    async def delete_server(self, server_id: int) -> None:
        await self._delete("servers", server_id)

    async def list_servers(self) -> list[ServerResponse]:
        return cast(list[ServerResponse], await self._list("servers"))

    # =========================================================================
    # Locations
    # =========================================================================

    async def list_locations(self) -> list[LocationResponse]:
        return cast(list[LocationResponse], await self._list("locations"))
