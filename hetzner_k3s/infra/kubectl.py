"""kubectl wrapper used to apply manifests against the new cluster."""

from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from loguru import logger

from hetzner_k3s.core.exceptions import ManifestApplyError

KUBECTL = "kubectl"

log = logger.bind(component="kubectl")


@runtime_checkable
class ManifestApplier(Protocol):
    async def ensure_available(self) -> None: ...
    async def apply(self, manifest: str) -> None: ...
    async def apply_url(self, url: str) -> None: ...
    async def delete(self, manifest: str, *, ignore_not_found: bool = True) -> None: ...


async def run(binary: str, *args: str, stdin: str | None = None, env: dict[str, str] | None = None) -> str:
    proc = await asyncio.create_subprocess_exec(
        binary, *args,
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    stdout, stderr = await proc.communicate(stdin.encode() if stdin is not None else None)
    if proc.returncode != 0:
        cmd = f"{binary} {' '.join(args)}"
        raise ManifestApplyError(f"{cmd} failed (exit {proc.returncode}): {stderr.decode().strip()}")
    return stdout.decode().strip()


@dataclass
class KubectlApplier:
    """Apply manifests with the local ``kubectl`` and the cluster kubeconfig.

    Manifests are passed on stdin so nothing is written to disk.
    """

    kubeconfig_path: Path
    binary: str = KUBECTL
    _checked: bool = field(default=False, repr=False)

    def _env(self) -> dict[str, str]:
        return {**os.environ, "KUBECONFIG": str(self.kubeconfig_path)}

    async def ensure_available(self) -> None:
        if self._checked:
            return
        if shutil.which(self.binary) is None:
            raise ManifestApplyError(
                f"'{self.binary}' was not found on PATH; it is required to install cluster addons"
            )
        self._checked = True

    async def _kubectl(self, *args: str, stdin: str | None = None) -> str:
        await self.ensure_available()
        output = await run(self.binary, *args, stdin=stdin, env=self._env())
        if output:
            log.debug("{output}", output=output)
        return output

    async def apply(self, manifest: str) -> None:
        await self._kubectl("apply", "-f", "-", stdin=manifest)

    async def apply_url(self, url: str) -> None:
        await self._kubectl("apply", "-f", url)

    async def delete(self, manifest: str, *, ignore_not_found: bool = True) -> None:
        args = ["delete", "-f", "-"]
        if ignore_not_found:
            args.append("--ignore-not-found")
        await self._kubectl(*args, stdin=manifest)
