"""movies service FastAPI application.

Responsibilities:
- Own the movies collection in MongoDB (seeded on first start).
- Serve the internal movie API the gateway reads from.
- Run the RabbitMQ consumer that applies the gateway's write intents.

Why run the consumer inside this process?
- The write path then needs no extra deployment unit. Set
  CONSUMER_ENABLED=false and run `python -m movies_service.worker` instead
  to scale consumers separately.
- The consumer is an asyncio task on the server's event loop; writes go to
  pymongo in a worker thread so HTTP requests keep being served.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status

from movie_events import BrokerSettings
from movie_events.logging_config import setup_logging

from .config import CONSUMER_ENABLED, DEFAULT_PAGE_SIZE
from .models import CreateMovieRequest, Movie
from .mongo import InvalidMovieId, MovieNotFound
from .rabbitmq_consumer import ConsumerState, MovieEventConsumer
from .service import MovieService, build_movie_service

logger = logging.getLogger(__name__)


def create_app(
    service: MovieService | None = None,
    consumer_enabled: bool = CONSUMER_ENABLED,
    broker_settings: BrokerSettings | None = None,
) -> FastAPI:
    """Build the movies service app.

    Without `service`, startup connects to MongoDB and seeds it. With
    `consumer_enabled`, startup also launches the RabbitMQ consumer task.
    """
    app = FastAPI(title="Movies Service")
    app.state.service = service
    app.state.consumer = None
    app.state.consumer_task = None
    app.state.stop_event = None

    @app.on_event("startup")
    async def on_startup() -> None:
        """Startup hook.

        - Connect to MongoDB (and seed it) unless a service was injected.
        - Start the consumer task.
        """
        if app.state.service is None:
            app.state.service = await asyncio.to_thread(build_movie_service)

        if consumer_enabled:
            consumer = MovieEventConsumer(
                app.state.service, broker_settings or BrokerSettings.from_env()
            )
            stop_event = asyncio.Event()
            task = asyncio.create_task(consumer.run(stop_event))
            task.add_done_callback(_log_consumer_exit)

            app.state.consumer = consumer
            app.state.stop_event = stop_event
            app.state.consumer_task = task

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        """Shutdown hook.

        Signal the consumer to stop and wait for the in-flight delivery.
        """
        if app.state.stop_event is not None:
            app.state.stop_event.set()
        if app.state.consumer_task is not None:
            # Failures were already logged by _log_consumer_exit.
            await asyncio.gather(app.state.consumer_task, return_exceptions=True)

    @app.get("/health")
    def health(request: Request, response: Response) -> dict[str, str]:
        """Liveness: fails once the consumer could not connect or crashed."""
        consumer: MovieEventConsumer | None = request.app.state.consumer
        state = consumer.state.value if consumer is not None else "disabled"
        if consumer is not None and consumer.state is ConsumerState.FAILED:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {"status": "unavailable", "consumer": state}
        return {"status": "ok", "consumer": state}

    @app.get("/movies", response_model=list[Movie])
    def list_movies(
        title: str | None = None,
        year: int | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        service: MovieService = Depends(get_service),
    ):
        """Return a page of movies. Non-positive limits fall back to the default."""
        if limit <= 0:
            limit = DEFAULT_PAGE_SIZE
        if offset < 0:
            offset = 0
        return service.list_movies(limit=limit, offset=offset, title=title, year=year)

    @app.get("/movies/{movie_id}", response_model=Movie)
    def get_movie(movie_id: str, service: MovieService = Depends(get_service)):
        try:
            return service.get_movie(movie_id)
        except InvalidMovieId:
            raise HTTPException(status_code=400, detail="Invalid movie id format")
        except MovieNotFound:
            raise HTTPException(status_code=404, detail="Movie not found")

    @app.post("/movies", status_code=status.HTTP_201_CREATED, response_model=Movie)
    def create_movie(req: CreateMovieRequest, service: MovieService = Depends(get_service)):
        """Synchronous create. The gateway uses RabbitMQ instead."""
        return service.create_movie(req.title, req.year)

    @app.delete("/movies/{movie_id}")
    def delete_movie(movie_id: str, service: MovieService = Depends(get_service)):
        try:
            service.delete_movie(movie_id)
        except InvalidMovieId:
            raise HTTPException(status_code=400, detail="Invalid movie id format")
        except MovieNotFound:
            raise HTTPException(status_code=404, detail="Movie not found")
        return {"status": "deleted", "id": movie_id}

    return app


def get_service(request: Request) -> MovieService:
    service = request.app.state.service
    if service is None:
        raise HTTPException(status_code=503, detail="Database not initialized")
    return service


def _log_consumer_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        logger.warning("[Consumer] Task cancelled")
    elif task.exception() is not None:
        logger.error("[Consumer] Task failed", exc_info=task.exception())


setup_logging()
app = create_app()
