"""gateway FastAPI application.

Responsibilities:
- Accept movie writes and publish them to RabbitMQ (202 Accepted).
- Serve reads by proxying to the movies service.

Important note:
This service does NOT write to MongoDB and does not call the movies service
for writes. A 202 means the intent was confirmed by the broker; the movies
service consumer applies it later. Whether the write eventually succeeded is
visible only in the movies service (logs, queue depth), not to the caller.
"""

from __future__ import annotations

import logging

import httpx
from fastapi import FastAPI, HTTPException, Query, Request, status

from movie_events import Action, BrokerSettings, DeleteMovie
from movie_events.logging_config import setup_logging

from .api_client import InvalidMovieId, MovieNotFound, MoviesServiceClient
from .config import DEFAULT_PAGE_SIZE
from .models import AcceptedResponse, CreateMovieRequest, Movie
from .rabbitmq_publisher import MoviePublisher, PublishError

logger = logging.getLogger(__name__)


def create_app(
    publisher: MoviePublisher | None = None,
    movies_client: MoviesServiceClient | None = None,
    broker_settings: BrokerSettings | None = None,
) -> FastAPI:
    """Build the gateway app.

    Anything not passed in is created on startup: the publisher connects to
    RabbitMQ (failing startup if the broker stays unreachable) and the
    movies client points at MOVIES_SERVICE_URL.
    """
    app = FastAPI(title="Movies API Gateway")
    app.state.publisher = publisher
    app.state.movies_client = movies_client or MoviesServiceClient()
    app.state.owns_publisher = publisher is None

    @app.on_event("startup")
    async def on_startup() -> None:
        """Connect the publisher once when the app starts."""
        if app.state.publisher is None:
            settings = broker_settings or BrokerSettings.from_env()
            app.state.publisher = await MoviePublisher.connect(settings)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        if app.state.owns_publisher and app.state.publisher is not None:
            await app.state.publisher.close()

    @app.get("/health")
    def health() -> dict[str, str]:
        """Basic liveness endpoint."""
        return {"status": "ok"}

    @app.get("/movies", response_model=list[Movie])
    def list_movies(
        request: Request,
        title: str | None = None,
        year: int | None = None,
        limit: int = Query(DEFAULT_PAGE_SIZE),
        offset: int = Query(0),
    ):
        """Return a page of movies (proxied to the movies service)."""
        client: MoviesServiceClient = request.app.state.movies_client
        try:
            return client.list_movies(limit=limit, offset=offset, title=title, year=year)
        except httpx.HTTPError as e:
            logger.error("Movies service error on list: %s", e)
            # 502: our upstream dependency failed.
            raise HTTPException(status_code=502, detail=f"Movies service error: {e}")

    @app.get("/movies/{movie_id}", response_model=Movie)
    def get_movie(request: Request, movie_id: str):
        """Return a single movie (proxied to the movies service)."""
        client: MoviesServiceClient = request.app.state.movies_client
        try:
            return client.get_movie(movie_id)
        except MovieNotFound:
            raise HTTPException(status_code=404, detail="Movie not found")
        except InvalidMovieId:
            raise HTTPException(status_code=400, detail="Invalid movie id")
        except httpx.HTTPError as e:
            logger.error("Movies service error on get %s: %s", movie_id, e)
            raise HTTPException(status_code=502, detail=f"Movies service error: {e}")

    @app.post(
        "/movies",
        status_code=status.HTTP_202_ACCEPTED,
        response_model=AcceptedResponse,
    )
    async def create_movie(request: Request, req: CreateMovieRequest):
        """Publish a `create` intent.

        Returns once RabbitMQ has confirmed the message. The movie itself is
        inserted asynchronously by the movies service consumer.
        """
        await _publish(request, Action.CREATE, req)
        return AcceptedResponse(action=Action.CREATE.value)

    @app.delete(
        "/movies/{movie_id}",
        status_code=status.HTTP_202_ACCEPTED,
        response_model=AcceptedResponse,
    )
    async def delete_movie(request: Request, movie_id: str):
        """Publish a `delete` intent for `movie_id`."""
        await _publish(request, Action.DELETE, DeleteMovie(id=movie_id))
        return AcceptedResponse(action=Action.DELETE.value, id=movie_id)

    return app


async def _publish(request: Request, action: Action, payload) -> None:
    publisher: MoviePublisher | None = request.app.state.publisher
    if publisher is None:
        raise HTTPException(status_code=503, detail="Publisher not connected")

    try:
        await publisher.publish_event(action, payload)
    except PublishError as e:
        # The write is lost unless the client retries.
        raise HTTPException(status_code=500, detail=f"Failed to publish event: {e}")


setup_logging()
app = create_app()
