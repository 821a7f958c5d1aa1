"""Exception hierarchy for hetzner-k3s.

Every error raised on purpose by this package inherits from HetznerK3sError,
so the CLI can report any of them with a single except clause.
"""

from __future__ import annotations


class HetznerK3sError(Exception):
    """Base exception for all hetzner-k3s errors."""


class ConfigurationError(HetznerK3sError):
    """Raised for invalid configuration or missing required settings."""

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        self.problems = problems or []
        if self.problems:
            message = message + "\n" + "\n".join(f"  - {p}" for p in self.problems)
        super().__init__(message)


class PreflightError(HetznerK3sError):
    """Raised when a preflight check fails before any mutating call."""

    def __init__(self, check: str, reason: str) -> None:
        self.check = check
        self.reason = reason
        super().__init__(f"Preflight check '{check}' failed: {reason}")


class ProviderError(HetznerK3sError):
    """Raised when a Hetzner Cloud API call fails."""

    def __init__(self, operation: str, reason: str, status: int = 0) -> None:
        self.operation = operation
        self.reason = reason
        self.status = status
        detail = f" (HTTP {status})" if status else ""
        super().__init__(f"{operation} failed{detail}: {reason}")


class RemoteCommandError(HetznerK3sError):
    """Raised when a command over SSH fails after all attempts."""

    def __init__(
        self,
        address: str,
        command: str,
        reason: str,
        exit_status: int | None = None,
    ) -> None:
        self.address = address
        self.command = command
        self.reason = reason
        self.exit_status = exit_status
        super().__init__(f"Command on {address} failed: {reason}")


class ReadinessTimeoutError(HetznerK3sError):
    """Raised when a server never reports its readiness marker."""

    def __init__(self, server: str, attempts: int) -> None:
        self.server = server
        self.attempts = attempts
        super().__init__(f"Server {server} not ready after {attempts} attempts")


class BootstrapError(HetznerK3sError):
    """Raised when k3s installation fails on a node."""

    def __init__(self, stage: str, node: str, error: BaseException) -> None:
        self.stage = stage
        self.node = node
        self.error = error
        super().__init__(f"Bootstrap stage '{stage}' failed on {node}: {error}")


class ManifestApplyError(HetznerK3sError):
    """Raised when a kubectl invocation fails."""
