"""Fan out server creation and readiness probing across the whole cluster."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

from loguru import logger

from hetzner_k3s.cluster.naming import ServerSpec, server_specs
from hetzner_k3s.cluster.resources import ResourceReconciler, private_ip
from hetzner_k3s.hetzner.types import ServerResponse
from hetzner_k3s.provisioning.readiness import ReadinessProber
from hetzner_k3s.utils.conc import for_each_async, map_async

log = logger.bind(component="provisioner")


@dataclass
class Provisioner:
    """Create every configured server and wait until all of them are ready.

    Two barriers: all creations, then all readiness probes. The first
    failure in either phase cancels the rest of that phase and aborts the
    run. Results are collected into per-task slots, so no lock is shared
    between tasks.
    """

    reconciler: ResourceReconciler
    prober: ReadinessProber

    async def _prepare_shared(self, specs: list[ServerSpec]) -> dict[str, int]:
        sizes = Counter(s.placement_group for s in specs)
        await self.reconciler.ensure_network()
        await self.reconciler.ensure_firewall()
        await self.reconciler.ensure_ssh_key()
        for name, size in sizes.items():
            await self.reconciler.ensure_placement_group(name, size)
        return dict(sizes)

    async def _with_private_ip(self, server: ServerResponse) -> ServerResponse:
        if private_ip(server) is not None:
            return server
        return await self.reconciler.refresh_server(server)

    async def provision(self) -> list[ServerResponse]:
        """Return all cluster servers, SSH-ready and sorted by name."""
        state = self.reconciler.state
        specs = server_specs(state.spec)
        sizes = await self._prepare_shared(specs)

        servers = await map_async(
            lambda s: self.reconciler.ensure_server(s, sizes[s.placement_group]),
            specs,
        )
        await for_each_async(self.prober.await_ready, servers)
        servers = await map_async(self._with_private_ip, servers)

        servers.sort(key=lambda s: s["name"])
        state.set_servers(servers)
        log.info("{n} servers ready.", n=len(servers))
        return servers
