from hetzner_k3s.provisioning.provisioner import Provisioner
from hetzner_k3s.provisioning.readiness import ReadinessProber

__all__ = ["Provisioner", "ReadinessProber"]
