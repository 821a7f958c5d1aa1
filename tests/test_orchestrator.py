from __future__ import annotations

import base64
import re
from pathlib import Path

import asyncssh
import pytest

from hetzner_k3s.bootstrap import scripts
from hetzner_k3s.config import AutoscalingPool, ClusterSpec
from hetzner_k3s.orchestrator import ClusterOrchestrator
from hetzner_k3s.preflight import Credentials
from tests.fakes import (
    FakeApplier,
    FakeExecutor,
    FakeHttp,
    FakeProvider,
    FakeReleases,
    make_server,
    make_spec,
)

pytestmark = [pytest.mark.unit]

KUBECONFIG = "server: https://127.0.0.1:6443\ncurrent-context: default\n"


def handler(address: str, command: str) -> str:
    if command == scripts.READY_COMMAND:
        return "true"
    if command == scripts.KUBECONFIG_COMMAND:
        return KUBECONFIG
    return ""


@pytest.fixture(scope="module")
def credentials() -> Credentials:
    key = asyncssh.generate_private_key("ssh-ed25519")
    return Credentials(public_key=key.export_public_key().decode().strip(), private_key=key)


class Harness:
    def __init__(self, spec: ClusterSpec) -> None:
        self.provider = FakeProvider()
        self.executor = FakeExecutor(handler)
        self.applier = FakeApplier()
        self.keys: list[asyncssh.SSHKey] = []

        def executor_factory(key: asyncssh.SSHKey) -> FakeExecutor:
            self.keys.append(key)
            return self.executor

        self.orchestrator = ClusterOrchestrator(
            spec=spec,
            provider=self.provider,
            releases=FakeReleases(),  # type: ignore[arg-type]
            http=FakeHttp("kind: StorageClass\n"),  # type: ignore[arg-type]
            applier=self.applier,
            executor_factory=executor_factory,
        )

    def installs(self) -> list[tuple[str, str]]:
        return [(a, c) for a, c in self.executor.commands if "get.k3s.io" in c]


class TestBuild:
    @pytest.mark.asyncio
    async def test_single_master_has_no_load_balancer(
        self, tmp_path: Path, credentials: Credentials
    ) -> None:
        h = Harness(make_spec(masters=1, workers=1, kubeconfig_path=tmp_path / "kubeconfig"))

        state = await h.orchestrator.build(credentials)

        assert h.provider.count("create_load_balancer") == 0
        assert h.provider.count("get_load_balancer") == 0
        assert state.load_balancer is None
        assert h.keys == [credentials.private_key]
        master1 = h.provider.servers["test-cpx11-master1"]
        address = master1["public_net"]["ipv4"]["ip"]
        assert f"https://{address}:6443" in (tmp_path / "kubeconfig").read_text()
        assert len(h.installs()) == 2

    @pytest.mark.asyncio
    async def test_ha_cluster_uses_load_balancer(self, tmp_path: Path, credentials: Credentials) -> None:
        h = Harness(make_spec(masters=3, workers=2, kubeconfig_path=tmp_path / "kubeconfig"))

        state = await h.orchestrator.build(credentials)

        assert h.provider.count("create_load_balancer") == 1
        assert state.load_balancer is not None
        assert "https://5.5.5.5:6443" in (tmp_path / "kubeconfig").read_text()
        joins = [c for _, c in h.installs() if "--server https://5.5.5.5:6443" in c]
        assert len(joins) == 2
        assert len(h.installs()) == 5

    @pytest.mark.asyncio
    async def test_public_key_is_uploaded(self, tmp_path: Path, credentials: Credentials) -> None:
        h = Harness(make_spec(kubeconfig_path=tmp_path / "kubeconfig"))
        await h.orchestrator.build(credentials)
        assert h.provider.ssh_keys["test"]["public_key"] == credentials.public_key

    @pytest.mark.asyncio
    async def test_addons_follow_bootstrap(self, tmp_path: Path, credentials: Credentials) -> None:
        pools = (AutoscalingPool("auto", "cpx31", instance_min=0, instance_max=3),)
        h = Harness(
            make_spec(kubeconfig_path=tmp_path / "kubeconfig", autoscaling_node_pools=pools)
        )

        await h.orchestrator.build(credentials)

        manifest = h.applier.calls[-1][1]
        assert "--nodes=0:3:CPX31:NBG1:test-cpx31-pool-auto-as" in manifest
        assert 'name: HCLOUD_SSH_KEY\n            value: "test"' in manifest
        encoded = re.search(r'name: HCLOUD_CLOUD_INIT\n\s+value: "([^"]+)"', manifest)
        assert encoded is not None
        cloud_init = base64.b64decode(encoded.group(1)).decode()
        assert "K3S_URL=https://10.0.0." in cloud_init

    @pytest.mark.asyncio
    async def test_second_build_creates_nothing(self, tmp_path: Path, credentials: Credentials) -> None:
        h = Harness(make_spec(masters=3, workers=1, kubeconfig_path=tmp_path / "kubeconfig"))
        await h.orchestrator.build(credentials)
        creations = [c for c in h.provider.calls if c[0].startswith("create_")]

        await h.orchestrator.build(credentials)

        assert [c for c in h.provider.calls if c[0].startswith("create_")] == creations


class TestOtherCommands:
    @pytest.mark.asyncio
    async def test_list_servers_filters_by_cluster(self) -> None:
        h = Harness(make_spec())
        h.provider.servers = {
            "b": make_server(2, "test-cpx11-master2"),
            "a": make_server(1, "test-cpx11-master1"),
            "x": make_server(3, "other-cpx11-master1", cluster="other"),
        }

        servers = await h.orchestrator.list_servers()

        assert [s["name"] for s in servers] == ["test-cpx11-master1", "test-cpx11-master2"]

    @pytest.mark.asyncio
    async def test_upgrade_applies_plans(self, tmp_path: Path) -> None:
        kubeconfig = tmp_path / "kubeconfig"
        kubeconfig.write_text(KUBECONFIG)
        h = Harness(make_spec(workers=3, kubeconfig_path=kubeconfig))
        h.provider.servers = {
            name: make_server(i, name)
            for i, name in enumerate(
                ["test-cpx11-master1", *(f"test-cpx21-pool-small-worker{n}" for n in (1, 2, 3))], start=1
            )
        }

        await h.orchestrator.upgrade()

        [(_, server_plan), (_, agent_plan)] = h.applier.calls
        assert "name: k3s-server" in server_plan
        assert "concurrency: 2" in agent_plan
