"""RabbitMQ publisher for the gateway.

Key points:

1) One publisher per process
Opening an AMQP connection is relatively heavy; the gateway connects once at
startup and keeps the publisher on `app.state`. If the broker never shows up,
startup fails instead of serving requests that cannot be written.

2) Publisher confirms
The channel is opened in confirm mode, so `publish()` returns only after the
broker has taken responsibility for the message (or raises after
`publish_timeout`). Messages are persistent and the exchange is durable, so
an accepted write survives a broker restart.

3) No retry on publish
A failed publish raises `PublishError`; the HTTP layer turns it into a 500.
The caller decides whether to try again.

4) One channel, one lock
AMQP channels are not meant for interleaved use. Concurrent requests share
the channel but publish one at a time.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError
from pydantic import BaseModel

from movie_events import Action, BrokerSettings, RetryPolicy, encode

logger = logging.getLogger(__name__)

_PUBLISH_ERRORS = (AMQPError, ChannelInvalidStateError, ConnectionError, asyncio.TimeoutError)


class PublishError(Exception):
    """A single publish was not confirmed (timeout, NACK, closed channel)."""


class MoviePublisher:
    """Publishes movie write intents to the configured exchange.

    Build it with `await MoviePublisher.connect(settings)`; the constructor
    only takes already-open AMQP objects.
    """

    def __init__(
        self,
        connection: AbstractConnection,
        channel: AbstractChannel,
        exchange: AbstractExchange,
        settings: BrokerSettings,
    ) -> None:
        self._connection = connection
        self._channel = channel
        self._exchange = exchange
        self._settings = settings
        self._lock = asyncio.Lock()
        self._closed = False

    @classmethod
    async def connect(
        cls, settings: BrokerSettings, retry: RetryPolicy | None = None
    ) -> "MoviePublisher":
        """Connect, open a confirm channel and declare the exchange.

        Declaring is idempotent: an exchange that already exists with the same
        name, kind and durability is left as is.

        Raises:
            BrokerConnectionError: the broker was unreachable on every attempt.
        """
        retry = retry or RetryPolicy.from_settings(settings)
        connection = await retry.run(
            lambda: aio_pika.connect_robust(settings.url), name="publisher"
        )

        try:
            channel = await connection.channel(publisher_confirms=True)
            exchange = await channel.declare_exchange(
                settings.exchange,
                type=settings.exchange_type,
                durable=True,
            )
        except BaseException:
            await connection.close()
            raise

        logger.info(
            "[Publisher] Connected; exchange=%s type=%s",
            settings.exchange,
            settings.exchange_type,
        )
        return cls(connection, channel, exchange, settings)

    def routing_key_for(self, action: Action | str) -> str:
        """Map a logical action to its configured routing key.

        Raises:
            ValueError: the action has no routing key.
        """
        return self._settings.routing_keys[Action(action)]

    async def publish(self, routing_key: str, body: bytes) -> None:
        """Send `body` to the exchange and wait for the broker's confirm.

        Raises:
            PublishError: timeout, channel/connection failure or broker NACK.
        """
        message = aio_pika.Message(
            body=body,
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )

        async with self._lock:
            if self._closed:
                raise PublishError("publisher is closed")
            try:
                await self._exchange.publish(
                    message,
                    routing_key=routing_key,
                    mandatory=False,
                    timeout=self._settings.publish_timeout,
                )
            except _PUBLISH_ERRORS as e:
                logger.error("[Publisher] Publish failed rk=%s: %r", routing_key, e)
                # Details stay in the log; the message reaches HTTP clients.
                raise PublishError(
                    f"publish to {routing_key!r} was not confirmed by RabbitMQ"
                ) from e

        logger.info("[Publisher] Delivered rk=%s (%d bytes)", routing_key, len(body))

    async def publish_event(
        self, action: Action, payload: BaseModel | Mapping[str, Any]
    ) -> str:
        """Encode an envelope for `action` and publish it. Returns the routing key."""
        routing_key = self.routing_key_for(action)
        await self.publish(routing_key, encode(action, payload))
        return routing_key

    async def close(self) -> None:
        """Close channel and connection. Safe to call more than once."""
        async with self._lock:
            if self._closed:
                return
            self._closed = True

        for resource in (self._channel, self._connection):
            if resource is None or resource.is_closed:
                continue
            try:
                await resource.close()
            except (AMQPError, ConnectionError) as e:
                logger.warning("[Publisher] Error while closing: %r", e)

        logger.info("[Publisher] Closed")

    async def __aenter__(self) -> "MoviePublisher":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
