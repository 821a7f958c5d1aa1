"""Resource names, labels and role classification.

A server's role is never stored separately: it is recovered from its name,
which is what lets a second run against existing infrastructure reclassify
the servers it finds.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from hetzner_k3s.config import ClusterSpec

MASTER_PATTERN = re.compile(r"master\d+$")
WORKER_PATTERN = re.compile(r"worker\d+$")

NODE_GROUP_LABEL = "hcloud/node-group"

NETWORK_ZONES = {"ash": "us-east", "hil": "us-west"}
DEFAULT_NETWORK_ZONE = "eu-central"


class Role(StrEnum):
    MASTER = "master"
    WORKER = "worker"


def classify(name: str) -> Role | None:
    """Derive a server's role from its name, or ``None`` if it has none."""
    if MASTER_PATTERN.search(name):
        return Role.MASTER
    if WORKER_PATTERN.search(name):
        return Role.WORKER
    return None


def network_zone(location: str) -> str:
    return NETWORK_ZONES.get(location, DEFAULT_NETWORK_ZONE)


def load_balancer_name(cluster: str) -> str:
    return f"{cluster}-api"


def master_selector(cluster: str) -> str:
    return f"cluster={cluster},role={Role.MASTER}"


def master_placement_group(cluster: str) -> str:
    return cluster


def worker_placement_group(cluster: str, pool: str) -> str:
    return f"{cluster}-{pool}"


def autoscaling_prefix(cluster: str, instance_type: str, pool: str) -> str:
    return f"{cluster}-{instance_type}-pool-{pool}-as"


def belongs_to(cluster: str, labels: dict[str, str]) -> bool:
    """True for servers created by this tool or by the cluster autoscaler."""
    if labels.get("cluster") == cluster:
        return True
    return labels.get(NODE_GROUP_LABEL, "").startswith(cluster)


@dataclass(frozen=True, slots=True)
class ServerSpec:
    """Desired state of one server."""

    name: str
    role: Role
    instance_type: str
    location: str
    placement_group: str

    def labels(self, cluster: str) -> dict[str, str]:
        return {"cluster": cluster, "role": str(self.role)}


def master_specs(spec: ClusterSpec) -> list[ServerSpec]:
    masters = spec.masters
    return [
        ServerSpec(
            name=f"{spec.cluster_name}-{masters.instance_type}-master{i + 1}",
            role=Role.MASTER,
            instance_type=masters.instance_type,
            location=spec.location,
            placement_group=master_placement_group(spec.cluster_name),
        )
        for i in range(masters.instance_count)
    ]


def worker_specs(spec: ClusterSpec) -> list[ServerSpec]:
    return [
        ServerSpec(
            name=f"{spec.cluster_name}-{pool.instance_type}-pool-{pool.name}-worker{i + 1}",
            role=Role.WORKER,
            instance_type=pool.instance_type,
            location=spec.pool_location(pool),
            placement_group=worker_placement_group(spec.cluster_name, pool.name),
        )
        for pool in spec.worker_node_pools
        for i in range(pool.instance_count)
    ]


def server_specs(spec: ClusterSpec) -> list[ServerSpec]:
    return master_specs(spec) + worker_specs(spec)


def placement_group_names(spec: ClusterSpec) -> list[str]:
    return [master_placement_group(spec.cluster_name)] + [
        worker_placement_group(spec.cluster_name, pool.name) for pool in spec.worker_node_pools
    ]
