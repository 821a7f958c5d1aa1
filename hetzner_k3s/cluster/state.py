"""In-memory view of the resources resolved during one run.

Every handle is filled at most once. Concurrent callers asking for the same
key wait on a per-key lock, so a resource is never created twice even when
two resolution paths race for it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, cast

from hetzner_k3s.cluster.naming import Role, classify
from hetzner_k3s.config import ClusterSpec
from hetzner_k3s.hetzner.types import (
    FirewallResponse,
    LoadBalancerResponse,
    NetworkResponse,
    PlacementGroupResponse,
    ServerResponse,
    SSHKeyResponse,
)

NETWORK = "network"
FIREWALL = "firewall"
SSH_KEY = "ssh_key"
LOAD_BALANCER = "load_balancer"
TOKEN = "token"


def placement_group_key(name: str) -> str:
    return f"placement_group:{name}"


def server_key(name: str) -> str:
    return f"server:{name}"


@dataclass
class ClusterState:
    """Resolved handles for a single orchestration run.

    Holds a reference to the (immutable) ClusterSpec rather than copying its
    fields. Nothing here survives the process.
    """

    spec: ClusterSpec
    _cache: dict[str, Any] = field(default_factory=dict, repr=False)
    _locks: dict[str, asyncio.Lock] = field(default_factory=dict, repr=False)
    _servers: list[ServerResponse] = field(default_factory=list, repr=False)

    async def memo[T](self, key: str, resolve: Callable[[], Awaitable[T]]) -> T:
        """Return the cached value for ``key``, resolving it on first use.

        ``resolve`` runs at most once per key; concurrent callers wait for
        the first one and share its result. A failed resolve caches nothing.
        """
        if key in self._cache:
            return cast(T, self._cache[key])
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            if key not in self._cache:
                self._cache[key] = await resolve()
            return cast(T, self._cache[key])

    def replace(self, key: str, value: Any) -> None:
        """Overwrite a cached handle.

        Only used for the load balancer, whose public address is assigned
        after creation.
        """
        self._cache[key] = value

    def _require(self, key: str) -> Any:
        try:
            return self._cache[key]
        except KeyError:
            raise LookupError(f"'{key}' has not been resolved yet") from None

    # ─── Typed views ─────────────────────────────────────────────────

    @property
    def network(self) -> NetworkResponse:
        return cast(NetworkResponse, self._require(NETWORK))

    @property
    def firewall(self) -> FirewallResponse:
        return cast(FirewallResponse, self._require(FIREWALL))

    @property
    def ssh_key(self) -> SSHKeyResponse:
        return cast(SSHKeyResponse, self._require(SSH_KEY))

    @property
    def load_balancer(self) -> LoadBalancerResponse | None:
        return cast(LoadBalancerResponse | None, self._cache.get(LOAD_BALANCER))

    def placement_group(self, name: str) -> PlacementGroupResponse:
        return cast(PlacementGroupResponse, self._require(placement_group_key(name)))

    # ─── Servers ─────────────────────────────────────────────────────

    def set_servers(self, servers: list[ServerResponse]) -> None:
        self._servers = sorted(servers, key=lambda s: s["name"])

    @property
    def servers(self) -> list[ServerResponse]:
        return list(self._servers)

    @property
    def masters(self) -> list[ServerResponse]:
        return [s for s in self._servers if classify(s["name"]) is Role.MASTER]

    @property
    def workers(self) -> list[ServerResponse]:
        return [s for s in self._servers if classify(s["name"]) is Role.WORKER]

    @property
    def first_master(self) -> ServerResponse | None:
        masters = self.masters
        return masters[0] if masters else None
