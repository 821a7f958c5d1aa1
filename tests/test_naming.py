from __future__ import annotations

import pytest

from hetzner_k3s.cluster import naming
from hetzner_k3s.cluster.naming import Role, classify
from hetzner_k3s.config import WorkerPool
from tests.fakes import make_spec

pytestmark = [pytest.mark.unit]


class TestClassify:
    @pytest.mark.parametrize(
        ("name", "role"),
        [
            ("test-cpx11-master1", Role.MASTER),
            ("test-cpx11-master12", Role.MASTER),
            ("test-cpx21-pool-small-worker3", Role.WORKER),
            ("test-cpx21-pool-small-as-1a2b", None),
            ("test-cpx11-master", None),
            ("master1-bastion", None),
        ],
    )
    def test_role_from_name(self, name: str, role: Role | None) -> None:
        assert classify(name) is role


class TestServerSpecs:
    def test_master_names(self) -> None:
        names = [s.name for s in naming.master_specs(make_spec(masters=3))]
        assert names == ["test-cpx11-master1", "test-cpx11-master2", "test-cpx11-master3"]

    def test_worker_names_and_groups(self) -> None:
        spec = make_spec(workers=2)
        workers = naming.worker_specs(spec)
        assert [w.name for w in workers] == [
            "test-cpx21-pool-small-worker1",
            "test-cpx21-pool-small-worker2",
        ]
        assert {w.placement_group for w in workers} == {"test-small"}
        assert all(w.instance_type == "cpx21" for w in workers)

    def test_every_name_classifies_back_to_its_role(self) -> None:
        for server in naming.server_specs(make_spec(masters=3, workers=4)):
            assert classify(server.name) is server.role

    def test_worker_pool_location(self) -> None:
        spec = make_spec(worker_node_pools=(WorkerPool("us", "cpx11", 1, location="ash"),))
        [worker] = naming.worker_specs(spec)
        assert worker.location == "ash"

    def test_labels(self) -> None:
        [master] = naming.master_specs(make_spec())
        assert master.labels("test") == {"cluster": "test", "role": "master"}

    def test_placement_group_names(self) -> None:
        assert naming.placement_group_names(make_spec(workers=1)) == ["test", "test-small"]


class TestHelpers:
    def test_network_zone(self) -> None:
        assert naming.network_zone("nbg1") == "eu-central"
        assert naming.network_zone("ash") == "us-east"
        assert naming.network_zone("hil") == "us-west"

    def test_master_selector(self) -> None:
        assert naming.master_selector("prod") == "cluster=prod,role=master"

    def test_belongs_to(self) -> None:
        assert naming.belongs_to("prod", {"cluster": "prod"})
        assert naming.belongs_to("prod", {"hcloud/node-group": "prod-cpx11-pool-auto-as"})
        assert not naming.belongs_to("prod", {"cluster": "staging"})
        assert not naming.belongs_to("prod", {})
