"""Top-level workflows: create, delete, upgrade and list a cluster.

The orchestrator owns the ClusterState for one run and is the only place
that decides when resources are resolved, so creation side effects are
visible here rather than hidden behind accessors.
"""

from __future__ import annotations

import getpass
from collections.abc import Callable
from dataclasses import dataclass

import asyncssh
from loguru import logger

from hetzner_k3s.addons import AddonDeployer, manifests
from hetzner_k3s.bootstrap import BootstrapCoordinator, scripts, upgrade_cluster
from hetzner_k3s.cluster import naming
from hetzner_k3s.cluster.resources import ResourceReconciler, private_ip
from hetzner_k3s.cluster.state import ClusterState
from hetzner_k3s.config import ClusterSpec
from hetzner_k3s.core.exceptions import ProviderError
from hetzner_k3s.hetzner.provider import CloudProvider
from hetzner_k3s.hetzner.types import ServerResponse
from hetzner_k3s.infra.http import HttpClient
from hetzner_k3s.infra.kubectl import ManifestApplier
from hetzner_k3s.infra.ssh import Prompt, RemoteExecutor
from hetzner_k3s.preflight import Credentials, Preflight
from hetzner_k3s.provisioning import Provisioner, ReadinessProber
from hetzner_k3s.releases import ReleaseLister
from hetzner_k3s.teardown import TeardownOrchestrator, TeardownReport

log = logger.bind(component="orchestrator")

type ExecutorFactory = Callable[[asyncssh.SSHKey], RemoteExecutor]


@dataclass
class ClusterOrchestrator:
    """Wires the collaborators together for one CLI invocation.

    Args:
        spec: Validated cluster configuration.
        provider: Hetzner Cloud API.
        releases: k3s release lister.
        http: Plain HTTP client (public IP lookup, manifest downloads).
        applier: kubectl bound to the cluster kubeconfig.
        executor_factory: Builds the SSH executor from the decrypted key.
        prompt: Passphrase prompt for encrypted private keys.
    """

    spec: ClusterSpec
    provider: CloudProvider
    releases: ReleaseLister
    http: HttpClient
    applier: ManifestApplier
    executor_factory: ExecutorFactory
    prompt: Prompt = getpass.getpass

    def _preflight(self) -> Preflight:
        return Preflight(self.spec, self.provider, self.releases, self.http, self.prompt)

    async def _cluster_servers(self) -> list[ServerResponse]:
        servers = await self.provider.list_servers()
        return sorted(
            (s for s in servers if naming.belongs_to(self.spec.cluster_name, s.get("labels") or {})),
            key=lambda s: s["name"],
        )

    # ─── Create ──────────────────────────────────────────────────────

    async def create(self) -> ClusterState:
        log.info("Creating cluster...")
        credentials = await self._preflight().create()
        state = await self.build(credentials)
        log.info("...cluster created.")
        return state

    async def build(self, credentials: Credentials) -> ClusterState:
        """Provision, bootstrap and install addons, without preflight."""
        spec = self.spec
        state = ClusterState(spec)
        reconciler = ResourceReconciler(
            self.provider,
            state,
            public_key=credentials.public_key,
            user_data=scripts.cloud_init(spec),
        )
        executor = self.executor_factory(credentials.private_key)

        await Provisioner(reconciler, ReadinessProber(executor)).provision()

        if spec.is_ha:
            await reconciler.ensure_load_balancer()
            await reconciler.load_balancer_address()

        coordinator = BootstrapCoordinator(state, reconciler, executor)
        await coordinator.deploy()

        async def autoscaler_manifest() -> str:
            first = state.first_master
            if first is None or (ip := private_ip(first)) is None:
                raise ProviderError("Build autoscaler manifest", "first master has no private IP")
            token = await coordinator.resolve_token()
            return manifests.autoscaler_manifest(
                spec,
                cloud_init=scripts.autoscaler_cloud_init(spec, token=token, first_master_private_ip=ip),
                ssh_key=state.ssh_key["name"],
                network=state.network["name"],
                firewall=state.firewall["name"],
            )

        await AddonDeployer(self.applier, self.http, autoscaler_manifest).deploy(spec)
        return state

    # ─── Delete ──────────────────────────────────────────────────────

    async def delete(self) -> TeardownReport:
        log.info("Deleting cluster...")
        await self._preflight().delete()
        report = await TeardownOrchestrator(self.provider, self.spec).teardown()
        log.info("...cluster deleted.")
        return report

    # ─── Upgrade ─────────────────────────────────────────────────────

    async def upgrade(self) -> None:
        log.info("Upgrading cluster...")
        await self._preflight().upgrade()
        state = ClusterState(self.spec)
        state.set_servers(await self._cluster_servers())
        await upgrade_cluster(state, self.applier, self.spec.k3s_version)

    # ─── List ────────────────────────────────────────────────────────

    async def list_servers(self) -> list[ServerResponse]:
        return await self._cluster_servers()
