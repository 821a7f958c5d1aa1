"""Turn provisioned servers into a running k3s cluster.

Stages, each a barrier for the next:

    S0  first master, cluster-init mode
    S1  fetch the admin kubeconfig from the first master
    S2  remaining masters, concurrently
    S3  all workers, concurrently

A failure anywhere aborts the remaining stages. Nodes that already joined
are left as they are.
"""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from hetzner_k3s.bootstrap import scripts
from hetzner_k3s.cluster.resources import ResourceReconciler, private_ip, public_ip
from hetzner_k3s.cluster.state import TOKEN, ClusterState
from hetzner_k3s.config import ClusterSpec
from hetzner_k3s.core.exceptions import BootstrapError, HetznerK3sError, ProviderError
from hetzner_k3s.hetzner.types import ServerResponse
from hetzner_k3s.infra.kubectl import ManifestApplier
from hetzner_k3s.infra.ssh import RemoteExecutor
from hetzner_k3s.utils.conc import for_each_async

TOKEN_LENGTH = 32

log = logger.bind(component="bootstrap")


def generate_token(length: int = TOKEN_LENGTH) -> str:
    return secrets.token_hex((length + 1) // 2)[:length]


def write_kubeconfig(path: Path, content: str) -> None:
    """Write the admin kubeconfig readable by its owner only."""
    path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(content)
    os.chmod(path, 0o600)


def _address(server: ServerResponse) -> str:
    ip = public_ip(server)
    if ip is None:
        raise ProviderError(f"Resolve address of '{server['name']}'", "server has no public IP")
    return ip


def _private_address(server: ServerResponse) -> str:
    ip = private_ip(server)
    if ip is None:
        raise ProviderError(f"Resolve private address of '{server['name']}'", "server has no private IP")
    return ip


@dataclass
class BootstrapCoordinator:
    """Install k3s on every server in dependency order."""

    state: ClusterState
    reconciler: ResourceReconciler
    executor: RemoteExecutor

    @property
    def spec(self) -> ClusterSpec:
        return self.state.spec

    # ─── Token ───────────────────────────────────────────────────────

    async def resolve_token(self) -> str:
        """Join token, resolved once per run.

        Read from the first master when it already runs k3s, otherwise a
        fresh random value.
        """
        return await self.state.memo(TOKEN, self._derive_token)

    async def _derive_token(self) -> str:
        first = self.state.first_master
        if first is None:
            return generate_token()
        try:
            output = await self.executor.run(_address(first), scripts.TOKEN_COMMAND)
        except HetznerK3sError as e:
            log.warning(
                "Could not read the join token from {name}, generating a new one: {err}",
                name=first["name"], err=e,
            )
            return generate_token()
        return scripts.parse_token(output) or generate_token()

    # ─── Nodes ───────────────────────────────────────────────────────

    async def _deploy_master(
        self,
        master: ServerResponse,
        *,
        first: bool,
        token: str,
        api_address: str,
        master_private_ips: list[str],
    ) -> None:
        name = master["name"]
        label = "first master" if first else "master"
        log.info("Deploying k3s to {label} {name}...", label=label, name=name)
        script = scripts.master_script(
            self.spec,
            token=token,
            api_address=api_address,
            master_private_ips=master_private_ips,
            first=first,
        )
        try:
            await self.executor.run(_address(master), script)
        except HetznerK3sError as e:
            raise BootstrapError("first master" if first else "masters", name, e) from e
        log.info("...k3s has been deployed to {label} {name}.", label=label, name=name)

    async def _deploy_worker(self, worker: ServerResponse, *, token: str, first_master_ip: str) -> None:
        name = worker["name"]
        log.info("Deploying k3s to worker {name}...", name=name)
        script = scripts.worker_script(self.spec, token=token, first_master_private_ip=first_master_ip)
        try:
            await self.executor.run(_address(worker), script)
        except HetznerK3sError as e:
            raise BootstrapError("workers", name, e) from e
        log.info("...k3s has been deployed to worker {name}.", name=name)

    # ─── Credentials ─────────────────────────────────────────────────

    async def save_kubeconfig(self, first_master: ServerResponse, api_address: str) -> Path:
        try:
            raw = await self.executor.run(_address(first_master), scripts.KUBECONFIG_COMMAND)
        except HetznerK3sError as e:
            raise BootstrapError("credentials", first_master["name"], e) from e
        content = scripts.rewrite_kubeconfig(
            raw, api_address=api_address, cluster_name=self.spec.cluster_name
        )
        path = self.spec.kubeconfig_path
        write_kubeconfig(path, content)
        log.info("Kubeconfig saved to {path}.", path=path)
        return path

    # ─── Stages ──────────────────────────────────────────────────────

    async def deploy(self) -> None:
        """Run S0 to S3 over the servers held in ClusterState."""
        masters = self.state.masters
        workers = self.state.workers
        if not masters:
            raise ProviderError("Bootstrap cluster", "no master servers found")

        first, rest = masters[0], masters[1:]
        api_address = await self.reconciler.api_address()
        token = await self.resolve_token()
        master_ips = [_private_address(m) for m in masters]

        await self._deploy_master(
            first, first=True, token=token, api_address=api_address, master_private_ips=master_ips
        )
        await self.save_kubeconfig(first, api_address)

        await for_each_async(
            lambda m: self._deploy_master(
                m, first=False, token=token, api_address=api_address, master_private_ips=master_ips
            ),
            rest,
        )

        first_master_ip = master_ips[0]
        await for_each_async(
            lambda w: self._deploy_worker(w, token=token, first_master_ip=first_master_ip),
            workers,
        )


# =============================================================================
# Upgrade
# =============================================================================


async def upgrade_cluster(state: ClusterState, applier: ManifestApplier, version: str) -> None:
    """Hand the upgrade to system-upgrade-controller.

    Masters first; the agent plan is only applied once the server plan was
    accepted.
    """
    await applier.ensure_available()
    concurrency = scripts.agent_upgrade_concurrency(len(state.workers))

    log.info("Upgrading k3s on masters to {version}...", version=version)
    await applier.apply(scripts.server_upgrade_plan(version))
    log.info("Upgrading k3s on workers to {version}...", version=version)
    await applier.apply(scripts.agent_upgrade_plan(version, concurrency))
    log.info(
        "Upgrade will now start. Run `watch kubectl get nodes` to see the nodes being upgraded."
    )
