from hetzner_k3s.hetzner.client import HetznerClient
from hetzner_k3s.hetzner.provider import CloudProvider

__all__ = ["CloudProvider", "HetznerClient"]
