from hetzner_k3s.cluster.naming import Role, ServerSpec, classify
from hetzner_k3s.cluster.resources import ResourceReconciler
from hetzner_k3s.cluster.state import ClusterState

__all__ = ["ClusterState", "ResourceReconciler", "Role", "ServerSpec", "classify"]
