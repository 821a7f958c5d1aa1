"""AsyncSSH-based remote command execution.

Service class pattern - key, host-key policy and retry settings are bound at
construction, not passed on every call. A fresh connection is opened per
command; commands are few and long-running, so pooling buys nothing.
"""

from __future__ import annotations

import getpass
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

import asyncssh
from loguru import logger
from tenacity import AsyncRetrying, stop_after_attempt, wait_fixed

from hetzner_k3s.core.exceptions import PreflightError, RemoteCommandError

SSH_USER = "root"
SSH_PORT = 22
COMMAND_ATTEMPTS = 3
COMMAND_DELAY = 5.0
PASSPHRASE_ATTEMPTS = 3

DEFAULT_KNOWN_HOSTS = Path("~/.ssh/known_hosts").expanduser()

log = logger.bind(component="ssh")

type Prompt = Callable[[str], str]
type Confirm = Callable[[str], bool]


@runtime_checkable
class RemoteExecutor(Protocol):
    async def run(
        self,
        address: str,
        command: str,
        *,
        attempts: int | None = None,
        connect_timeout: float | None = None,
    ) -> str: ...


# =============================================================================
# Private key
# =============================================================================


def load_private_key(path: Path, prompt: Prompt = getpass.getpass) -> asyncssh.SSHKey:
    """Load a private key, asking for its passphrase if it is encrypted.

    Args:
        path: Private key file.
        prompt: Reads a passphrase without echo.

    Raises:
        PreflightError: If the key cannot be read or decrypted.
    """
    try:
        return asyncssh.read_private_key(path)
    except OSError as e:
        raise PreflightError("private ssh key", f"cannot read {path}: {e}") from e
    except asyncssh.KeyImportError as e:
        if "passphrase" not in str(e).lower():
            raise PreflightError("private ssh key", f"cannot parse {path}: {e}") from e

    for _ in range(PASSPHRASE_ATTEMPTS):
        passphrase = prompt(f"Enter passphrase for {path}: ")
        try:
            return asyncssh.read_private_key(path, passphrase)
        except (asyncssh.KeyEncryptionError, asyncssh.KeyImportError):
            log.warning("Wrong passphrase for {path}", path=path)
    raise PreflightError("private ssh key", f"could not decrypt {path}")


def load_public_key(path: Path) -> str:
    """Read and validate an OpenSSH public key file.

    Raises:
        PreflightError: If the file is unreadable or not a public key.
    """
    try:
        text = path.read_text()
        asyncssh.import_public_key(text)
    except OSError as e:
        raise PreflightError("public ssh key", f"cannot read {path}: {e}") from e
    except asyncssh.KeyImportError as e:
        raise PreflightError("public ssh key", f"cannot parse {path}: {e}") from e
    return text.strip()


def _ask_yes_no(question: str) -> bool:
    return input(f"{question} [y/N] ").strip().lower() in ("y", "yes")


# =============================================================================
# Host key trust
# =============================================================================


@dataclass
class HostKeyPolicy:
    """Trust-on-first-use host key policy.

    Hosts already in ``known_hosts`` are verified against it. An unknown
    host is trusted after confirmation (or automatically with
    ``auto_approve``) and then appended to ``known_hosts``.
    """

    known_hosts: Path = DEFAULT_KNOWN_HOSTS
    auto_approve: bool = False
    confirm: Confirm = _ask_yes_no
    _decisions: dict[str, bool] = field(default_factory=dict, repr=False)

    def known_hosts_file(self) -> str:
        if not self.known_hosts.exists():
            self.known_hosts.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            self.known_hosts.touch(mode=0o600)
        return str(self.known_hosts)

    def trust(self, host: str, key: asyncssh.SSHKey) -> bool:
        if host in self._decisions:
            return self._decisions[host]

        fingerprint = key.get_fingerprint()
        approved = self.auto_approve or self.confirm(
            f"The authenticity of host '{host}' can't be established.\n"
            f"{key.get_algorithm()} key fingerprint is {fingerprint}.\n"
            "Are you sure you want to continue connecting?"
        )
        self._decisions[host] = approved
        if approved:
            self._remember(host, key)
        return approved

    def _remember(self, host: str, key: asyncssh.SSHKey) -> None:
        self.known_hosts.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        line = key.export_public_key("openssh").decode().strip()
        with self.known_hosts.open("a") as f:
            f.write(f"{host} {line}\n")
        log.debug("Added {host} to {path}", host=host, path=self.known_hosts)


class _TrustOnFirstUse(asyncssh.SSHClient):
    def __init__(self, policy: HostKeyPolicy) -> None:
        self._policy = policy

    def validate_host_public_key(
        self, host: str, addr: str, port: int, key: asyncssh.SSHKey
    ) -> bool:
        return self._policy.trust(host, key)


# =============================================================================
# Executor
# =============================================================================


@dataclass
class SSHExecutor:
    """Run shell commands as root on cluster servers.

    Each command is attempted ``attempts`` times with a fixed ``delay``
    between attempts. Connection failures and non-zero exit codes both
    count as a failed attempt.

    Example:
        >>> executor = SSHExecutor(private_key=load_private_key(path))
        >>> await executor.run("1.2.3.4", "cat /etc/ready")
        'true\\n'
    """

    private_key: asyncssh.SSHKey
    host_keys: HostKeyPolicy | None = None
    attempts: int = COMMAND_ATTEMPTS
    delay: float = COMMAND_DELAY
    connect_timeout: float = 30.0

    async def _connect(self, address: str, connect_timeout: float) -> asyncssh.SSHClientConnection:
        if self.host_keys is None:
            return await asyncssh.connect(
                address,
                port=SSH_PORT,
                username=SSH_USER,
                client_keys=[self.private_key],
                known_hosts=None,
                connect_timeout=connect_timeout,
            )
        policy = self.host_keys
        return await asyncssh.connect(
            address,
            port=SSH_PORT,
            username=SSH_USER,
            client_keys=[self.private_key],
            known_hosts=policy.known_hosts_file(),
            client_factory=lambda: _TrustOnFirstUse(policy),
            connect_timeout=connect_timeout,
        )

    async def _run_once(self, address: str, command: str, connect_timeout: float) -> str:
        try:
            async with await self._connect(address, connect_timeout) as conn:
                result = await conn.run(command, check=False)
        except (OSError, asyncssh.Error, TimeoutError) as e:
            raise RemoteCommandError(address, command, str(e) or type(e).__name__) from e

        stdout = str(result.stdout or "")
        if stdout:
            log.debug("[{address}] {output}", address=address, output=stdout.rstrip())
        if result.exit_status:
            raise RemoteCommandError(
                address,
                command,
                f"exit status {result.exit_status}: {str(result.stderr or '').strip()}",
                result.exit_status,
            )
        return stdout

    async def run(
        self,
        address: str,
        command: str,
        *,
        attempts: int | None = None,
        connect_timeout: float | None = None,
    ) -> str:
        """Execute ``command`` on ``address`` and return its stdout.

        Args:
            address: Public IP of the server.
            command: Shell command line.
            attempts: Override the configured number of attempts.
            connect_timeout: Override the configured connect timeout.

        Raises:
            RemoteCommandError: When every attempt failed.
        """
        timeout = connect_timeout or self.connect_timeout
        log.debug("[{address}] $ {command}", address=address, command=command.splitlines()[0] if command else "")

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts or self.attempts),
            wait=wait_fixed(self.delay),
            reraise=True,
        ):
            with attempt:
                return await self._run_once(address, command, timeout)
        raise AssertionError("unreachable")
