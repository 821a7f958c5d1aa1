from hetzner_k3s.bootstrap.coordinator import BootstrapCoordinator, upgrade_cluster

__all__ = ["BootstrapCoordinator", "upgrade_cluster"]
