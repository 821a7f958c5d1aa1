from hetzner_k3s.addons.deployer import AddonDeployer

__all__ = ["AddonDeployer"]
