"""Bounded retry for broker connections.

Both the gateway and the movies service connect to RabbitMQ once at startup.
In docker-compose the broker often comes up after them, so the first
attempts are expected to fail. After `max_attempts` we give up and raise
`BrokerConnectionError`: the process should not run half-initialized.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, TypeVar

from aio_pika.exceptions import AMQPError

from .config import BrokerSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors worth another attempt: refused/reset sockets, DNS failures while the
# broker container starts, AMQP handshake errors. Anything else propagates.
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    AMQPError,
    OSError,
    asyncio.TimeoutError,
)


class BrokerConnectionError(Exception):
    """The broker stayed unreachable for every allowed attempt."""


class RetryAborted(Exception):
    """Shutdown was requested while still waiting for the broker."""


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait in between.

    `backoff` multiplies the delay after each failure; 1.0 gives the fixed
    delay used for broker startup.
    """

    max_attempts: int = 30
    delay: float = 2.0
    backoff: float = 1.0
    max_delay: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay < 0:
            raise ValueError("delay must be >= 0")
        if self.backoff < 1:
            raise ValueError("backoff must be >= 1")

    @classmethod
    def from_settings(cls, settings: BrokerSettings) -> "RetryPolicy":
        return cls(max_attempts=settings.connect_attempts, delay=settings.connect_delay)

    def delays(self) -> Iterator[float]:
        """Yield the wait before attempt 2, 3, ... max_attempts."""
        delay = self.delay
        for _ in range(self.max_attempts - 1):
            yield delay if self.max_delay is None else min(delay, self.max_delay)
            delay *= self.backoff

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        stop_event: asyncio.Event | None = None,
    ) -> T:
        """Await `operation()` until it succeeds or attempts run out.

        Args:
            operation: zero-arg coroutine factory; called once per attempt.
            name: used in log lines, e.g. "publisher".
            sleep: injectable for tests.
            stop_event: when set, the wait between attempts ends early and
                no further attempt is made.

        Raises:
            BrokerConnectionError: every attempt failed with a retryable error.
            RetryAborted: `stop_event` was set after a failed attempt.
        """
        delays = self.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except RETRYABLE_ERRORS as e:
                logger.warning(
                    "[%s] attempt %d/%d to connect to RabbitMQ failed: %s",
                    name,
                    attempt,
                    self.max_attempts,
                    e,
                )
                wait = next(delays, None)
                if wait is None:
                    raise BrokerConnectionError(
                        f"{name}: RabbitMQ unreachable after {self.max_attempts} attempts"
                    ) from e
            if await self._pause(wait, sleep, stop_event):
                raise RetryAborted(f"{name}: stopped after {attempt} failed attempts")

    async def _pause(
        self,
        seconds: float,
        sleep: Callable[[float], Awaitable[object]],
        stop_event: asyncio.Event | None,
    ) -> bool:
        """Sleep `seconds` or until `stop_event` is set. Returns True if stopped."""
        if stop_event is None:
            await sleep(seconds)
            return False
        if stop_event.is_set():
            return True

        sleeper = asyncio.ensure_future(sleep(seconds))
        stopper = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (sleeper, stopper):
                waiter.cancel()
            await asyncio.gather(sleeper, stopper, return_exceptions=True)
        return stop_event.is_set()
