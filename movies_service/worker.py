"""Standalone consumer process.

Runs the same consumer as the movies service, without the HTTP API:

    python -m movies_service.worker

Start several of these against the same queue to scale writes; RabbitMQ
distributes deliveries between them.

Shutdown:
- First SIGINT/SIGTERM: stop pulling deliveries, finish the current one,
  close the connection.
- Second signal: cancel immediately (the unacked delivery is requeued by the
  broker when the connection drops).
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from movie_events import BrokerConnectionError, BrokerSettings
from movie_events.logging_config import setup_logging

from .rabbitmq_consumer import MovieEventConsumer
from .service import build_movie_service

logger = logging.getLogger(__name__)


def install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    def handle_signal(sig: signal.Signals) -> None:
        if not stop_event.is_set():
            logger.info("Received %s, finishing current delivery...", sig.name)
            stop_event.set()
        else:
            logger.warning("Received second %s, forcing shutdown", sig.name)
            for task in asyncio.all_tasks(loop):
                task.cancel()

    # Signal handlers are not supported on Windows; Ctrl+C cancels instead.
    if sys.platform == "win32":
        return

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)


async def run_worker(settings: BrokerSettings | None = None) -> None:
    settings = settings or BrokerSettings.from_env()
    service = await asyncio.to_thread(build_movie_service)

    stop_event = asyncio.Event()
    install_signal_handlers(asyncio.get_running_loop(), stop_event)

    consumer = MovieEventConsumer(service, settings)
    await consumer.run(stop_event)


def main() -> int:
    setup_logging()
    try:
        asyncio.run(run_worker())
    except BrokerConnectionError as e:
        logger.error("Worker could not start: %s", e)
        return 1
    except asyncio.CancelledError:
        logger.warning("Worker cancelled")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
