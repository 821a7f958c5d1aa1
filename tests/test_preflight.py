from __future__ import annotations

from pathlib import Path

import asyncssh
import pytest

from hetzner_k3s.config import ClusterSpec
from hetzner_k3s.core.exceptions import PreflightError
from hetzner_k3s.preflight import PUBLIC_IP_URL, Preflight
from tests.fakes import FakeHttp, FakeProvider, FakeReleases, make_spec, provider_error

pytestmark = [pytest.mark.unit]


@pytest.fixture
def keys(tmp_path: Path) -> tuple[Path, Path]:
    key = asyncssh.generate_private_key("ssh-ed25519")
    private, public = tmp_path / "id", tmp_path / "id.pub"
    key.write_private_key(private)
    key.write_public_key(public)
    return private, public


def spec_with_keys(keys: tuple[Path, Path], **overrides) -> ClusterSpec:
    private, public = keys
    return make_spec(private_ssh_key_path=private, public_ssh_key_path=public, **overrides)


def preflight(spec: ClusterSpec, provider: FakeProvider | None = None, **kwargs) -> Preflight:
    return Preflight(
        spec,
        provider or FakeProvider(),
        kwargs.get("releases", FakeReleases()),
        kwargs.get("http", FakeHttp()),
        prompt=lambda _: pytest.fail("no passphrase expected"),
    )


class TestCreate:
    @pytest.mark.asyncio
    async def test_passes_and_returns_credentials(self, keys: tuple[Path, Path]) -> None:
        http = FakeHttp()
        credentials = await preflight(spec_with_keys(keys), http=http).create()

        assert credentials.public_key.startswith("ssh-ed25519 ")
        assert http.urls == [PUBLIC_IP_URL]

    @pytest.mark.asyncio
    async def test_current_ip_outside_ssh_networks(self, keys: tuple[Path, Path]) -> None:
        spec = spec_with_keys(keys, ssh_allowed_networks=("10.0.0.0/8",))
        with pytest.raises(PreflightError) as exc:
            await preflight(spec, http=FakeHttp(ip="203.0.113.7")).create()
        assert exc.value.check == "ssh_allowed_networks"
        assert "203.0.113.7" in exc.value.reason

    @pytest.mark.asyncio
    async def test_current_ip_outside_api_networks(self, keys: tuple[Path, Path]) -> None:
        spec = spec_with_keys(keys, api_allowed_networks=("198.51.100.0/24",))
        with pytest.raises(PreflightError) as exc:
            await preflight(spec).create()
        assert exc.value.check == "api_allowed_networks"

    @pytest.mark.asyncio
    async def test_unparseable_ip(self, keys: tuple[Path, Path]) -> None:
        with pytest.raises(PreflightError, match="public IP"):
            await preflight(spec_with_keys(keys), http=FakeHttp(ip="<html>")).create()

    @pytest.mark.asyncio
    async def test_invalid_token(self, keys: tuple[Path, Path]) -> None:
        provider = FakeProvider()
        provider.fail["list_locations"] = provider_error("List locations")
        with pytest.raises(PreflightError) as exc:
            await preflight(spec_with_keys(keys), provider).create()
        assert exc.value.check == "hetzner_token"

    @pytest.mark.asyncio
    async def test_unknown_version(self, keys: tuple[Path, Path]) -> None:
        spec = spec_with_keys(keys, k3s_version="v1.99.0+k3s1")
        with pytest.raises(PreflightError, match="does not exist"):
            await preflight(spec).create()

    @pytest.mark.asyncio
    async def test_location_not_offered(self, keys: tuple[Path, Path]) -> None:
        spec = spec_with_keys(keys, location="hel1")
        with pytest.raises(PreflightError) as exc:
            await preflight(spec).create()
        assert exc.value.check == "location"
        assert "nbg1" in exc.value.reason

    @pytest.mark.asyncio
    async def test_missing_existing_network(self, keys: tuple[Path, Path]) -> None:
        spec = spec_with_keys(keys, existing_network="shared")
        with pytest.raises(PreflightError, match="cannot find existing network"):
            await preflight(spec).create()

    @pytest.mark.asyncio
    async def test_nothing_is_created(self, keys: tuple[Path, Path]) -> None:
        provider = FakeProvider()
        await preflight(spec_with_keys(keys), provider).create()
        assert not any(method.startswith("create_") for method, _ in provider.calls)

    @pytest.mark.asyncio
    async def test_key_path_is_directory(self, tmp_path: Path, keys: tuple[Path, Path]) -> None:
        spec = make_spec(private_ssh_key_path=tmp_path, public_ssh_key_path=keys[1])
        with pytest.raises(PreflightError, match="is a directory"):
            await preflight(spec).create()


class TestDeleteAndUpgrade:
    @pytest.mark.asyncio
    async def test_delete_checks_token(self) -> None:
        provider = FakeProvider()
        await preflight(make_spec(), provider).delete()
        assert provider.calls == [("list_locations", None)]

    @pytest.mark.asyncio
    async def test_upgrade_requires_kubeconfig(self, tmp_path: Path) -> None:
        spec = make_spec(kubeconfig_path=tmp_path / "missing")
        with pytest.raises(PreflightError) as exc:
            await preflight(spec).upgrade()
        assert exc.value.check == "kubeconfig_path"

    @pytest.mark.asyncio
    async def test_upgrade_kubeconfig_is_directory(self, tmp_path: Path) -> None:
        with pytest.raises(PreflightError, match="is a directory"):
            await preflight(make_spec(kubeconfig_path=tmp_path)).upgrade()

    @pytest.mark.asyncio
    async def test_upgrade_passes(self, tmp_path: Path) -> None:
        kubeconfig = tmp_path / "kubeconfig"
        kubeconfig.write_text("apiVersion: v1\n")
        await preflight(make_spec(kubeconfig_path=kubeconfig)).upgrade()
