"""Provision k3s clusters on Hetzner Cloud."""

from __future__ import annotations

__version__ = "0.1.0"

from hetzner_k3s.config import ClusterSpec, load_config
from hetzner_k3s.core.exceptions import HetznerK3sError
from hetzner_k3s.orchestrator import ClusterOrchestrator

__all__ = ["ClusterOrchestrator", "ClusterSpec", "HetznerK3sError", "__version__", "load_config"]
