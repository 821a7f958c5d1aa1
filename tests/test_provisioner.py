from __future__ import annotations

import pytest

from hetzner_k3s.cluster.resources import ResourceReconciler
from hetzner_k3s.cluster.state import ClusterState
from hetzner_k3s.core.exceptions import ProviderError, ReadinessTimeoutError
from hetzner_k3s.provisioning import Provisioner, ReadinessProber
from tests.fakes import FakeExecutor, FakeProvider, make_server, make_spec

pytestmark = [pytest.mark.unit]


async def no_sleep(_: float) -> None:
    return None


def provisioner_for(provider: FakeProvider, executor: FakeExecutor, **spec_kwargs) -> Provisioner:
    state = ClusterState(make_spec(**spec_kwargs))
    reconciler = ResourceReconciler(provider, state, public_key="ssh-ed25519 AAA")
    return Provisioner(reconciler, ReadinessProber(executor, attempts=3, sleep=no_sleep))


class TestProvisioner:
    @pytest.mark.asyncio
    async def test_creates_all_servers_sorted(self) -> None:
        provider = FakeProvider()
        provisioner = provisioner_for(provider, FakeExecutor(), masters=3, workers=2)

        servers = await provisioner.provision()

        assert [s["name"] for s in servers] == [
            "test-cpx11-master1",
            "test-cpx11-master2",
            "test-cpx11-master3",
            "test-cpx21-pool-small-worker1",
            "test-cpx21-pool-small-worker2",
        ]
        assert provider.count("create_server") == 5
        assert provider.count("create_network") == 1
        assert provider.count("create_firewall") == 1
        assert set(provider.placement_groups) == {"test", "test-small"}
        assert len(provisioner.reconciler.state.masters) == 3

    @pytest.mark.asyncio
    async def test_second_run_creates_nothing(self) -> None:
        provider = FakeProvider()
        await provisioner_for(provider, FakeExecutor(), masters=3, workers=1).provision()
        created = provider.count("create_server")

        await provisioner_for(provider, FakeExecutor(), masters=3, workers=1).provision()

        assert provider.count("create_server") == created
        assert provider.count("create_network") == 1

    @pytest.mark.asyncio
    async def test_every_server_is_probed(self) -> None:
        executor = FakeExecutor()
        await provisioner_for(FakeProvider(), executor, masters=1, workers=2).provision()
        assert len({address for address, _ in executor.commands}) == 3

    @pytest.mark.asyncio
    async def test_missing_private_ip_is_refreshed(self) -> None:
        provider = FakeProvider()
        provisioner = provisioner_for(provider, FakeExecutor())
        lookups = 0

        async def attaching_later(name: str):
            nonlocal lookups
            lookups += 1
            return make_server(8, name, private=lookups > 1)

        provider.get_server = attaching_later  # type: ignore[method-assign]

        [server] = await provisioner.provision()

        assert lookups == 2
        assert server["private_net"][0]["ip"] == "10.0.0.8"

    @pytest.mark.asyncio
    async def test_creation_failure_aborts(self) -> None:
        provider = FakeProvider()
        provider.fail["create_server"] = ProviderError("Create server", "quota exceeded", 403)
        executor = FakeExecutor()

        with pytest.raises(ProviderError, match="quota exceeded"):
            await provisioner_for(provider, executor, masters=3).provision()
        assert executor.commands == []

    @pytest.mark.asyncio
    async def test_readiness_timeout_aborts(self) -> None:
        provider = FakeProvider()
        provisioner = provisioner_for(provider, FakeExecutor(lambda a, c: "false"))

        with pytest.raises(ReadinessTimeoutError):
            await provisioner.provision()
        assert provisioner.reconciler.state.servers == []
