"""Install the cluster addons once the API is reachable."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger

from hetzner_k3s.addons import manifests
from hetzner_k3s.config import ClusterSpec
from hetzner_k3s.core.exceptions import ManifestApplyError
from hetzner_k3s.infra.http import HttpClient, HttpError
from hetzner_k3s.infra.kubectl import ManifestApplier

log = logger.bind(component="addons")

type AutoscalerManifest = Callable[[], Awaitable[str]]


@dataclass
class AddonDeployer:
    """Applies the addons in order, stopping at the first failure.

    Every step uses ``kubectl apply``, so re-running is safe.

    Args:
        applier: kubectl wrapper bound to the cluster kubeconfig.
        http: Used to download the CSI driver manifest.
        autoscaler_manifest: Builds the autoscaler manifest on demand; only
            called when autoscaling pools are configured.
    """

    applier: ManifestApplier
    http: HttpClient
    autoscaler_manifest: AutoscalerManifest | None = None

    async def _download(self, url: str) -> str:
        try:
            return await self.http.text(url)
        except HttpError as e:
            raise ManifestApplyError(f"Download of {url} failed: {e}") from e

    async def deploy(self, spec: ClusterSpec) -> None:
        await self.applier.ensure_available()

        log.info("Deploying Hetzner Cloud Controller Manager...")
        await self.applier.apply(manifests.ccm_secret(spec))
        await self.applier.apply_url(manifests.CCM_URL)
        log.info("...Hetzner Cloud Controller Manager deployed")

        log.info("Deploying k3s System Upgrade Controller...")
        await self.applier.apply_url(manifests.UPGRADE_CONTROLLER_URL)
        log.info("...k3s System Upgrade Controller deployed")

        log.info("Deploying Hetzner CSI Driver...")
        await self.applier.apply(manifests.csi_secret(spec))
        await self.applier.delete(manifests.CSI_DRIVER_OBJECT, ignore_not_found=True)
        csi = manifests.csi_driver_manifest(
            await self._download(manifests.CSI_URL),
            default_storage_class=spec.hcloud_volume_is_default_storage_class,
        )
        await self.applier.apply(csi)
        log.info("...CSI Driver deployed")

        if spec.schedule_csi_controller_on_master:
            log.info("Updating Hetzner CSI Controller...")
            await self.applier.apply(manifests.CSI_CONTROLLER_ON_MASTER)
            log.info("...CSI Controller updated.")

        if spec.autoscaling_node_pools and self.autoscaler_manifest is not None:
            log.info("Deploying Hetzner Autoscaler...")
            await self.applier.apply(manifests.autoscaler_secret(spec))
            await self.applier.apply(await self.autoscaler_manifest())
            log.info("...Autoscaler deployed")
