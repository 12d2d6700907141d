"""
Unit tests for MovieEventConsumer.

Deliveries come from FakeDeliveries (conftest), which behaves like a queue
consumer with prefetch=1: requeued messages go to the back of the queue and
come back flagged as redelivered.
"""

import asyncio
import json
import threading
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import FakeDeliveries, FakeMessage
from movie_events import Action, BrokerConnectionError, RetryPolicy, encode
from movies_service.models import Movie
from movies_service.mongo import MovieNotFound
from movies_service.rabbitmq_consumer import (
    PREFETCH_COUNT,
    ConsumerState,
    MovieEventConsumer,
)


def create_body(title="Interestelar", year=2014) -> bytes:
    return encode(Action.CREATE, {"title": title, "year": year})


def delete_body(movie_id="abc123") -> bytes:
    return encode(Action.DELETE, {"id": movie_id})


@pytest.fixture
def writer():
    writer = MagicMock()
    writer.create_movie.side_effect = lambda title, year: Movie(
        id="65f0c0ffee0000000000abcd", title=title, year=year
    )
    writer.delete_movie.return_value = None
    return writer


@pytest.fixture
def consumer(writer, broker_settings):
    return MovieEventConsumer(writer, broker_settings, retry=RetryPolicy(max_attempts=2, delay=0))


@pytest.mark.asyncio
class TestHandleDelivery:
    async def test_create_is_applied_and_acked(self, consumer, writer):
        message = FakeMessage(create_body("Interestelar", 2014))

        assert await consumer.handle_delivery(message) is True

        writer.create_movie.assert_called_once_with("Interestelar", 2014)
        assert message.acked and not message.nacked

    async def test_delete_is_applied_and_acked(self, consumer, writer):
        message = FakeMessage(delete_body("65f0c0ffee0000000000abcd"), routing_key="movie.deleted")

        assert await consumer.handle_delivery(message) is True

        writer.delete_movie.assert_called_once_with("65f0c0ffee0000000000abcd")
        assert message.acked

    async def test_delete_not_found_is_requeued(self, consumer, writer):
        # Deterministic failure, retried anyway: no dead-letter queue.
        writer.delete_movie.side_effect = MovieNotFound("abc123")
        message = FakeMessage(delete_body("abc123"), routing_key="movie.deleted")

        assert await consumer.handle_delivery(message) is False

        assert message.nacked and message.requeue is True
        assert not message.acked

    @pytest.mark.parametrize(
        "body",
        [
            b"definitely not json",
            b'{"action": "create"}',
            json.dumps(
                {"action": "create", "data": {"title": ""}, "timestamp": "2024-01-01T00:00:00Z"}
            ).encode(),
        ],
    )
    async def test_undecodable_is_requeued_without_writes(self, consumer, writer, body):
        message = FakeMessage(body)

        assert await consumer.handle_delivery(message) is False

        assert message.nacked and message.requeue is True
        writer.create_movie.assert_not_called()
        writer.delete_movie.assert_not_called()

    async def test_unknown_action_is_acked_without_writes(self, consumer, writer):
        message = FakeMessage(encode("archive", {"id": "abc123"}))

        assert await consumer.handle_delivery(message) is True

        assert message.acked
        writer.create_movie.assert_not_called()
        writer.delete_movie.assert_not_called()

    async def test_writer_exception_is_requeued(self, consumer, writer):
        writer.create_movie.side_effect = RuntimeError("mongo down")
        message = FakeMessage(create_body())

        assert await consumer.handle_delivery(message) is False

        assert message.nacked and message.requeue is True

    async def test_dispatch_uses_action_not_routing_key(self, consumer, writer):
        message = FakeMessage(delete_body("abc123"), routing_key="movie.created")

        await consumer.handle_delivery(message)

        writer.delete_movie.assert_called_once_with("abc123")
        writer.create_movie.assert_not_called()


@pytest.mark.asyncio
class TestConsumeLoop:
    async def test_bad_message_does_not_stop_the_loop(self, consumer, writer):
        loop = asyncio.get_running_loop()
        stop = asyncio.Event()

        def create_then_stop(title, year):
            # The garbage message keeps coming back; stop once Dune is stored.
            loop.call_soon_threadsafe(stop.set)
            return Movie(id="65f0c0ffee0000000000abcd", title=title, year=year)

        writer.create_movie.side_effect = create_then_stop
        deliveries = FakeDeliveries([b"garbage"])
        deliveries.add(create_body("Dune", 2021))

        await asyncio.wait_for(consumer.consume(deliveries, stop), 1)

        writer.create_movie.assert_called_once_with("Dune", 2021)
        assert deliveries.pulled[0].nacked and deliveries.pulled[0].requeue is True
        assert deliveries.pulled[1].acked

    async def test_never_more_than_one_unacked_delivery(self, consumer, writer):
        def slow_create(title, year):
            time.sleep(0.02)
            return Movie(id="65f0c0ffee0000000000abcd", title=title, year=year)

        writer.create_movie.side_effect = slow_create
        deliveries = FakeDeliveries([create_body(f"Movie {i}", 2000 + i) for i in range(4)])

        await consumer.consume(deliveries, asyncio.Event())

        assert PREFETCH_COUNT == 1
        assert writer.create_movie.call_count == 4
        assert deliveries.unsettled_at_pull == [0, 0, 0, 0, 0]

    async def test_requeued_message_is_processed_after_later_ones(self, consumer, writer):
        # create fails once, so the delete published after it runs first.
        calls = []

        def flaky_create(title, year):
            calls.append(("create", title))
            if len(calls) == 1:
                raise RuntimeError("transient")
            return Movie(id="65f0c0ffee0000000000abcd", title=title, year=year)

        writer.create_movie.side_effect = flaky_create
        writer.delete_movie.side_effect = lambda movie_id: calls.append(("delete", movie_id))

        deliveries = FakeDeliveries([create_body("Dune", 2021)])
        deliveries.add(delete_body("abc123"), routing_key="movie.deleted")

        await consumer.consume(deliveries, asyncio.Event())

        assert calls == [("create", "Dune"), ("delete", "abc123"), ("create", "Dune")]
        redelivered = deliveries.pulled[2]
        assert redelivered.redelivered is True
        assert redelivered.acked

    async def test_stop_while_idle(self, consumer):
        deliveries = FakeDeliveries(block_when_empty=True)
        stop = asyncio.Event()

        task = asyncio.create_task(consumer.consume(deliveries, stop))
        await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, 1)

        assert consumer.state is ConsumerState.DRAINING

    async def test_stop_lets_in_flight_delivery_finish(self, consumer, writer):
        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        started = threading.Event()

        def create_then_stop(title, year):
            started.set()
            loop.call_soon_threadsafe(stop.set)
            time.sleep(0.02)
            return Movie(id="65f0c0ffee0000000000abcd", title=title, year=year)

        writer.create_movie.side_effect = create_then_stop
        deliveries = FakeDeliveries([create_body("First"), create_body("Second")])

        await asyncio.wait_for(consumer.consume(deliveries, stop), 1)

        assert started.is_set()
        assert writer.create_movie.call_count == 1
        assert len(deliveries.pulled) == 1
        assert deliveries.pulled[0].acked

    async def test_draining_while_in_flight_delivery_finishes(self, consumer, writer):
        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        release = threading.Event()

        def create_then_wait(title, year):
            loop.call_soon_threadsafe(stop.set)
            release.wait(1)
            return Movie(id="65f0c0ffee0000000000abcd", title=title, year=year)

        writer.create_movie.side_effect = create_then_wait
        deliveries = FakeDeliveries([create_body("First")])

        task = asyncio.create_task(consumer.consume(deliveries, stop))
        for _ in range(100):
            await asyncio.sleep(0.005)
            if consumer.state is ConsumerState.DRAINING:
                break

        assert consumer.state is ConsumerState.DRAINING
        assert not deliveries.pulled[0].acked

        release.set()
        await asyncio.wait_for(task, 1)

        assert deliveries.pulled[0].acked
        assert consumer.state is ConsumerState.DRAINING


@pytest.mark.asyncio
class TestRun:
    def _amqp(self, deliveries):
        queue = MagicMock()
        queue.bind = AsyncMock()
        iterator_cm = MagicMock()
        iterator_cm.__aenter__ = AsyncMock(return_value=deliveries)
        iterator_cm.__aexit__ = AsyncMock(return_value=False)
        queue.iterator = MagicMock(return_value=iterator_cm)

        exchange = MagicMock(name="exchange")
        channel = AsyncMock()
        channel.declare_exchange.return_value = exchange
        channel.declare_queue.return_value = queue

        connection = AsyncMock()
        connection.is_closed = False
        connection.channel.return_value = channel
        return connection, channel, exchange, queue

    async def test_declares_topology_and_consumes(self, consumer, writer):
        deliveries = FakeDeliveries([create_body("Interestelar", 2014)])
        connection, channel, exchange, queue = self._amqp(deliveries)

        with patch(
            "movies_service.rabbitmq_consumer.aio_pika.connect_robust",
            new=AsyncMock(return_value=connection),
        ):
            await consumer.run(asyncio.Event())

        channel.set_qos.assert_awaited_once_with(prefetch_count=1)
        channel.declare_exchange.assert_awaited_once_with("movies", type="topic", durable=True)
        channel.declare_queue.assert_awaited_once_with("movies.worker.q", durable=True)
        bound = [c.kwargs["routing_key"] for c in queue.bind.await_args_list]
        assert bound == ["movie.created", "movie.deleted"]
        assert all(c.args[0] is exchange for c in queue.bind.await_args_list)

        writer.create_movie.assert_called_once_with("Interestelar", 2014)
        assert deliveries.pulled[0].acked
        connection.close.assert_awaited_once()
        assert consumer.state is ConsumerState.CLOSED

    async def test_stop_closes_connection(self, consumer):
        deliveries = FakeDeliveries(block_when_empty=True)
        connection, *_ = self._amqp(deliveries)
        stop = asyncio.Event()

        with patch(
            "movies_service.rabbitmq_consumer.aio_pika.connect_robust",
            new=AsyncMock(return_value=connection),
        ):
            task = asyncio.create_task(consumer.run(stop))
            for _ in range(50):
                await asyncio.sleep(0)
                if consumer.state is ConsumerState.CONSUMING:
                    break
            assert consumer.state is ConsumerState.CONSUMING
            stop.set()
            await asyncio.wait_for(task, 1)

        connection.close.assert_awaited_once()
        assert consumer.state is ConsumerState.CLOSED

    async def test_unreachable_broker_fails(self, consumer):
        connect = AsyncMock(side_effect=ConnectionRefusedError("refused"))

        with patch("movies_service.rabbitmq_consumer.aio_pika.connect_robust", new=connect):
            with pytest.raises(BrokerConnectionError):
                await consumer.run(asyncio.Event())

        assert connect.await_count == 2
        assert consumer.state is ConsumerState.FAILED

    async def test_stop_while_connecting_closes_quickly(self, writer, broker_settings):
        consumer = MovieEventConsumer(
            writer, broker_settings, retry=RetryPolicy(max_attempts=6, delay=0.5)
        )
        connect = AsyncMock(side_effect=ConnectionRefusedError("refused"))
        loop = asyncio.get_running_loop()
        stop = asyncio.Event()

        with patch("movies_service.rabbitmq_consumer.aio_pika.connect_robust", new=connect):
            loop.call_later(0.1, stop.set)
            started = loop.time()
            await asyncio.wait_for(consumer.run(stop), 1)
            elapsed = loop.time() - started

        # Returned before the second attempt was due at 0.5s.
        assert elapsed < 0.4
        assert connect.await_count == 1
        assert consumer.state is ConsumerState.CLOSED

    async def test_topology_error_fails_and_closes(self, consumer):
        connection, channel, *_ = self._amqp(FakeDeliveries())
        channel.declare_exchange.side_effect = RuntimeError("precondition failed")

        with patch(
            "movies_service.rabbitmq_consumer.aio_pika.connect_robust",
            new=AsyncMock(return_value=connection),
        ):
            with pytest.raises(RuntimeError):
                await consumer.run(asyncio.Event())

        connection.close.assert_awaited_once()
        assert consumer.state is ConsumerState.FAILED
