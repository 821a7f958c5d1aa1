"""Wait until a freshly created server has finished its first boot."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    stop_after_attempt,
    wait_fixed,
)

from hetzner_k3s.bootstrap.scripts import READY_COMMAND, READY_VALUE
from hetzner_k3s.cluster.resources import public_ip
from hetzner_k3s.core.exceptions import ReadinessTimeoutError
from hetzner_k3s.hetzner.types import ServerResponse
from hetzner_k3s.infra.ssh import RemoteExecutor

READY_ATTEMPTS = 15
READY_DELAY = 5.0
PROBE_CONNECT_TIMEOUT = 5.0

log = logger.bind(component="readiness")


class ServerNotReadyError(Exception):
    """The readiness marker is missing or has an unexpected value."""


@dataclass
class ReadinessProber:
    """Polls the readiness marker written by the server's boot cron entry.

    Any SSH failure or marker value other than ``true`` counts as "not
    yet ready". Attempts are spaced by a fixed delay with no backoff.
    """

    executor: RemoteExecutor
    attempts: int = READY_ATTEMPTS
    delay: float = READY_DELAY
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def _probe(self, address: str) -> None:
        output = await self.executor.run(
            address, READY_COMMAND, attempts=1, connect_timeout=PROBE_CONNECT_TIMEOUT
        )
        if output.strip() != READY_VALUE:
            raise ServerNotReadyError(f"marker is {output.strip()!r}")

    async def await_ready(self, server: ServerResponse) -> None:
        """Block until ``server`` reports ready.

        Raises:
            ReadinessTimeoutError: After ``attempts`` failed probes.
        """
        name = server["name"]
        address = public_ip(server)
        log.info("Waiting for server to be ready: {name}...", name=name)

        def before(state: RetryCallState) -> None:
            if state.attempt_number > 1:
                log.info(
                    "Waiting for server to be ready: {name}... retrying: {n}",
                    name=name, n=state.attempt_number,
                )

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.attempts),
                wait=wait_fixed(self.delay),
                sleep=self.sleep,
                before=before,
            ):
                with attempt:
                    if address is None:
                        raise ServerNotReadyError("no public address yet")
                    await self._probe(address)
        except RetryError as e:
            log.debug("Last probe error for {name}: {err}", name=name, err=e.last_attempt.exception())
            raise ReadinessTimeoutError(name, self.attempts) from e.last_attempt.exception()

        log.info("...server is ready: {name}.", name=name)
