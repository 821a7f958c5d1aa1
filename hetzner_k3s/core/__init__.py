from hetzner_k3s.core.exceptions import (
    BootstrapError,
    ConfigurationError,
    HetznerK3sError,
    ManifestApplyError,
    PreflightError,
    ProviderError,
    ReadinessTimeoutError,
    RemoteCommandError,
)

__all__ = [
    "BootstrapError",
    "ConfigurationError",
    "HetznerK3sError",
    "ManifestApplyError",
    "PreflightError",
    "ProviderError",
    "ReadinessTimeoutError",
    "RemoteCommandError",
]
