"""RabbitMQ consumer loop for the movies service.

High-level flow:
    receive -> decode envelope -> parse payload -> call write API -> ack / nack

Important RabbitMQ concepts used here:

1) Topology
- The exchange is declared with the same parameters as the gateway's
  publisher; a mismatch makes the broker close the channel.
- One durable queue, bound to both the "created" and "deleted" routing keys.
- Every consumer instance (in-process or `python -m movies_service.worker`)
  reads the same queue. RabbitMQ hands each delivery to exactly one of them.

2) prefetch_count=1 and manual ack
- The broker sends at most one unacknowledged delivery to this consumer. We
  process it, ack or nack it, and only then receive the next one. A slow
  write never lets deliveries pile up in memory.
- Nothing is removed from the queue until we ack.

3) Failure policy: requeue on any failure
- Malformed envelopes, bad payloads and write API errors (including
  "movie not found" on delete) are nacked with requeue=True. A message that
  can never succeed will come back forever; there is no redelivery limit or
  dead-letter queue. Failures are logged with the `redelivered` flag so such
  loops are visible.
- Unknown actions are acked without doing anything.
- Requeued messages go back to the queue and can overtake newer ones: no
  ordering between deliveries is assumed.

4) Shutdown
- `stop_event` is checked between deliveries. The delivery in progress is
  finished (acked or nacked) before the connection is closed.
- A stop while still retrying the broker connection ends the retry wait
  immediately.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Protocol

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue

from movie_events import (
    BrokerConnectionError,
    BrokerSettings,
    CreateMovie,
    DeleteMovie,
    EnvelopeError,
    MovieCommand,
    RetryAborted,
    RetryPolicy,
    decode,
    parse_command,
)

from .models import Movie

logger = logging.getLogger(__name__)

# One unacknowledged delivery per consumer instance.
PREFETCH_COUNT = 1


class MovieWriter(Protocol):
    """Write API the consumer applies envelopes to."""

    def create_movie(self, title: str, year: int) -> Movie: ...

    def delete_movie(self, movie_id: str) -> None: ...


class ConsumerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONSUMING = "consuming"
    DRAINING = "draining"
    CLOSED = "closed"
    FAILED = "failed"


class MovieEventConsumer:
    """Drains the movies work queue into a `MovieWriter`.

    Usage:
        consumer = MovieEventConsumer(service, BrokerSettings.from_env())
        stop = asyncio.Event()
        task = asyncio.create_task(consumer.run(stop))
        ...
        stop.set()
        await task
    """

    def __init__(
        self,
        writer: MovieWriter,
        settings: BrokerSettings,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._writer = writer
        self._settings = settings
        self._retry = retry or RetryPolicy.from_settings(settings)
        self._state = ConsumerState.DISCONNECTED

    @property
    def state(self) -> ConsumerState:
        return self._state

    async def run(self, stop_event: asyncio.Event) -> None:
        """Connect, declare topology and consume until `stop_event` is set.

        A stop requested while still retrying the connection ends the run
        as `CLOSED` without raising.

        Raises:
            BrokerConnectionError: RabbitMQ stayed unreachable at startup.
        """
        self._state = ConsumerState.CONNECTING
        try:
            connection = await self._retry.run(
                lambda: aio_pika.connect_robust(self._settings.url),
                name="consumer",
                stop_event=stop_event,
            )
        except RetryAborted:
            self._state = ConsumerState.CLOSED
            logger.info("[Consumer] Stop requested before RabbitMQ was reachable")
            return
        except BrokerConnectionError:
            self._state = ConsumerState.FAILED
            raise

        try:
            channel = await connection.channel()
            await channel.set_qos(prefetch_count=PREFETCH_COUNT)
            queue = await self._declare_topology(channel)

            self._state = ConsumerState.CONSUMING
            logger.info(
                "[Consumer] Listening on queue %s (rks: %s, %s)",
                self._settings.queue,
                self._settings.routing_key_created,
                self._settings.routing_key_deleted,
            )

            async with queue.iterator() as messages:
                await self.consume(messages, stop_event)
        except Exception:
            self._state = ConsumerState.FAILED
            raise
        finally:
            if not connection.is_closed:
                await connection.close()
            if self._state is not ConsumerState.FAILED:
                self._state = ConsumerState.CLOSED
            logger.info("[Consumer] Closed (%s)", self._state.value)

    async def _declare_topology(self, channel: AbstractChannel) -> AbstractQueue:
        exchange = await channel.declare_exchange(
            self._settings.exchange,
            type=self._settings.exchange_type,
            durable=True,
        )
        queue = await channel.declare_queue(self._settings.queue, durable=True)
        for routing_key in (
            self._settings.routing_key_created,
            self._settings.routing_key_deleted,
        ):
            await queue.bind(exchange, routing_key=routing_key)
        return queue

    async def consume(
        self,
        messages: AsyncIterator[AbstractIncomingMessage],
        stop_event: asyncio.Event,
    ) -> None:
        """Handle deliveries one at a time until stopped or `messages` ends.

        The state turns `DRAINING` as soon as the stop is seen, including
        while a delivery is still being processed.
        """
        stop_waiter = asyncio.create_task(stop_event.wait())
        stop_waiter.add_done_callback(lambda _: self._start_draining(stop_event))
        try:
            while not stop_event.is_set():
                next_delivery = asyncio.create_task(_next(messages))
                done, _ = await asyncio.wait(
                    {next_delivery, stop_waiter},
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if stop_waiter in done:
                    await self._abandon(next_delivery)
                    break

                message = next_delivery.result()
                if message is None:
                    break
                await self.handle_delivery(message)
        finally:
            stop_waiter.cancel()
            await asyncio.gather(stop_waiter, return_exceptions=True)

        self._start_draining(stop_event)

    def _start_draining(self, stop_event: asyncio.Event) -> None:
        if stop_event.is_set() and self._state is not ConsumerState.DRAINING:
            self._state = ConsumerState.DRAINING
            logger.info("[Consumer] Stop requested; no further deliveries will be pulled")

    async def _abandon(self, next_delivery: asyncio.Task) -> None:
        """Give back a delivery that raced with the stop signal."""
        if not next_delivery.done():
            next_delivery.cancel()
            try:
                await next_delivery
            except asyncio.CancelledError:
                pass
            return

        if next_delivery.cancelled() or next_delivery.exception() is not None:
            return
        message = next_delivery.result()
        if message is None:
            return
        logger.info("[Consumer] Returning unprocessed delivery to the queue")
        await message.nack(requeue=True)

    async def handle_delivery(self, message: AbstractIncomingMessage) -> bool:
        """Process one delivery and ack it, or nack it with requeue.

        Returns True when the delivery was acked.
        """
        try:
            await self.process(message.body)
        except Exception as e:
            logger.error(
                "[Consumer] Failed processing delivery (rk=%s redelivered=%s): %s; requeueing",
                message.routing_key,
                message.redelivered,
                e,
                exc_info=not isinstance(e, EnvelopeError),
            )
            await message.nack(requeue=True)
            return False

        await message.ack()
        return True

    async def process(self, body: bytes) -> MovieCommand | None:
        """Decode `body` and apply it to the writer.

        Returns the applied command, or None for an unknown action.

        Raises:
            MalformedEnvelope, InvalidPayload: the body cannot be applied.
            Exception: whatever the writer raises.
        """
        envelope = decode(body)
        command = parse_command(envelope)

        if command is None:
            logger.warning("[Consumer] Ignoring unknown action %r", envelope.action)
            return None

        if isinstance(command, CreateMovie):
            movie = await asyncio.to_thread(
                self._writer.create_movie, command.title, command.year
            )
            logger.info(
                "[Consumer] Created movie %s (%r, %s)", movie.id, command.title, command.year
            )
        elif isinstance(command, DeleteMovie):
            await asyncio.to_thread(self._writer.delete_movie, command.id)
            logger.info("[Consumer] Deleted movie %s", command.id)

        return command


async def _next(
    messages: AsyncIterator[AbstractIncomingMessage],
) -> AbstractIncomingMessage | None:
    try:
        return await messages.__anext__()
    except StopAsyncIteration:
        return None
