from __future__ import annotations

from pathlib import Path

import pytest

from hetzner_k3s.core.exceptions import ManifestApplyError
from hetzner_k3s.infra.kubectl import KubectlApplier, ManifestApplier

pytestmark = [pytest.mark.unit]

RECORDER = """#!/bin/sh
echo "args: $*" >> "{log}"
echo "kubeconfig: $KUBECONFIG" >> "{log}"
if [ "$3" = "-" ]; then cat >> "{log}"; fi
exit {status}
"""


def fake_kubectl(tmp_path: Path, status: int = 0) -> tuple[Path, Path]:
    log = tmp_path / "kubectl.log"
    binary = tmp_path / "kubectl"
    binary.write_text(RECORDER.format(log=log, status=status))
    binary.chmod(0o755)
    return binary, log


class TestKubectlApplier:
    def test_satisfies_protocol(self, tmp_path: Path) -> None:
        assert isinstance(KubectlApplier(tmp_path / "kubeconfig"), ManifestApplier)

    @pytest.mark.asyncio
    async def test_apply_sends_manifest_on_stdin(self, tmp_path: Path) -> None:
        binary, log = fake_kubectl(tmp_path)
        applier = KubectlApplier(tmp_path / "kubeconfig", binary=str(binary))

        await applier.apply("kind: Secret\n")

        assert log.read_text().splitlines() == [
            "args: apply -f -",
            f"kubeconfig: {tmp_path / 'kubeconfig'}",
            "kind: Secret",
        ]

    @pytest.mark.asyncio
    async def test_apply_url(self, tmp_path: Path) -> None:
        binary, log = fake_kubectl(tmp_path)
        await KubectlApplier(tmp_path / "kubeconfig", binary=str(binary)).apply_url("https://x/y.yaml")
        assert log.read_text().splitlines()[0] == "args: apply -f https://x/y.yaml"

    @pytest.mark.asyncio
    async def test_delete_ignores_missing(self, tmp_path: Path) -> None:
        binary, log = fake_kubectl(tmp_path)
        await KubectlApplier(tmp_path / "kubeconfig", binary=str(binary)).delete("kind: CSIDriver\n")
        assert log.read_text().splitlines()[0] == "args: delete -f - --ignore-not-found"

    @pytest.mark.asyncio
    async def test_failure_raises(self, tmp_path: Path) -> None:
        binary, _ = fake_kubectl(tmp_path, status=1)
        with pytest.raises(ManifestApplyError, match="exit 1"):
            await KubectlApplier(tmp_path / "kubeconfig", binary=str(binary)).apply("kind: Secret\n")

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path: Path) -> None:
        applier = KubectlApplier(tmp_path / "kubeconfig", binary=str(tmp_path / "no-kubectl"))
        with pytest.raises(ManifestApplyError, match="not found on PATH"):
            await applier.ensure_available()
