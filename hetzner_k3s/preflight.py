"""Checks that run before any mutating call.

Each operation has its own checklist. The first failing check raises
PreflightError and nothing is created or deleted.
"""

from __future__ import annotations

import getpass
import ipaddress
from dataclasses import dataclass
from typing import Literal

import asyncssh
from loguru import logger

from hetzner_k3s.config import ClusterSpec, validate
from hetzner_k3s.core.exceptions import ConfigurationError, HetznerK3sError, PreflightError
from hetzner_k3s.hetzner.provider import CloudProvider
from hetzner_k3s.infra.http import HttpClient, HttpError
from hetzner_k3s.infra.ssh import Prompt, load_private_key, load_public_key
from hetzner_k3s.releases import ReleaseLister

PUBLIC_IP_URL = "http://whatismyip.akamai.com"

type Operation = Literal["create", "delete", "upgrade"]

log = logger.bind(component="preflight")


@dataclass(frozen=True, slots=True)
class Credentials:
    """SSH material validated during preflight."""

    public_key: str
    private_key: asyncssh.SSHKey


def _contains(cidrs: tuple[str, ...], address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return any(address in ipaddress.ip_network(c, strict=False) for c in cidrs)


@dataclass
class Preflight:
    spec: ClusterSpec
    provider: CloudProvider
    releases: ReleaseLister
    http: HttpClient
    prompt: Prompt = getpass.getpass

    # ─── Individual checks ───────────────────────────────────────────

    def check_config(self) -> None:
        try:
            validate(self.spec)
        except ConfigurationError as e:
            raise PreflightError("cluster", str(e)) from e

    def check_ssh_keys(self) -> Credentials:
        for path in (self.spec.public_ssh_key_path, self.spec.private_ssh_key_path):
            if path.is_dir():
                raise PreflightError("ssh keys", f"{path} is a directory")
        public_key = load_public_key(self.spec.public_ssh_key_path)
        private_key = load_private_key(self.spec.private_ssh_key_path, self.prompt)
        return Credentials(public_key=public_key, private_key=private_key)

    async def current_ip(self) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
        try:
            text = await self.http.text(PUBLIC_IP_URL)
            return ipaddress.ip_address(text.strip())
        except (HttpError, ValueError) as e:
            raise PreflightError("public ip", f"cannot determine current public IP: {e}") from e

    async def check_allowed_networks(self) -> None:
        address = await self.current_ip()
        if not _contains(self.spec.ssh_allowed_networks, address):
            raise PreflightError(
                "ssh_allowed_networks",
                f"your current IP {address} is not included in any of the allowed SSH networks",
            )
        if not _contains(self.spec.api_allowed_networks, address):
            raise PreflightError(
                "api_allowed_networks",
                f"your current IP {address} is not included in any of the allowed API networks",
            )

    async def check_token(self) -> list[str]:
        """Probe the API token with a harmless read; returns location names."""
        try:
            locations = await self.provider.list_locations()
        except HetznerK3sError as e:
            raise PreflightError("hetzner_token", f"cannot validate token: {e}") from e
        return [loc["name"] for loc in locations]

    async def check_version(self) -> None:
        try:
            available = await self.releases.available()
        except HetznerK3sError as e:
            raise PreflightError("k3s_version", f"cannot list releases: {e}") from e
        if self.spec.k3s_version not in available:
            raise PreflightError("k3s_version", f"{self.spec.k3s_version} does not exist")

    def check_location(self, locations: list[str]) -> None:
        if self.spec.location not in locations:
            raise PreflightError(
                "location",
                f"invalid location for master nodes {self.spec.location!r}; "
                f"valid locations: {', '.join(sorted(locations))}",
            )

    async def check_existing_network(self) -> None:
        if not self.spec.existing_network:
            return
        if await self.provider.get_network(self.spec.existing_network) is None:
            raise PreflightError(
                "existing_network", f"cannot find existing network {self.spec.existing_network!r}"
            )

    def check_kubeconfig_path(self) -> None:
        path = self.spec.kubeconfig_path
        if not path.exists():
            raise PreflightError("kubeconfig_path", f"{path} does not exist")
        if path.is_dir():
            raise PreflightError("kubeconfig_path", f"{path} is a directory")

    # ─── Checklists ──────────────────────────────────────────────────

    async def create(self) -> Credentials:
        credentials = self.check_ssh_keys()
        await self.check_allowed_networks()
        locations = await self.check_token()
        await self.check_version()
        self.check_config()
        self.check_location(locations)
        await self.check_existing_network()
        log.debug("Preflight for create passed")
        return credentials

    async def delete(self) -> None:
        await self.check_token()
        self.check_config()
        log.debug("Preflight for delete passed")

    async def upgrade(self) -> None:
        self.check_config()
        self.check_kubeconfig_path()
        await self.check_version()
        log.debug("Preflight for upgrade passed")
