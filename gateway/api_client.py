"""HTTP client for calling the movies service.

Reads are synchronous: the gateway asks the movies service and returns its
answer. Writes never go through here (they are published to RabbitMQ).

Why is this its own module?
- Keeps the FastAPI route handlers small and readable.
- Maps the movies service's 400/404 answers to exceptions in one place.
"""

from __future__ import annotations

from typing import Any

import httpx

from .config import MOVIES_SERVICE_TIMEOUT, MOVIES_SERVICE_URL


class MovieNotFound(Exception):
    """The movies service answered 404."""


class InvalidMovieId(Exception):
    """The movies service answered 400 for a malformed id."""


class MoviesServiceClient:
    """Thin synchronous client for the movies service read endpoints.

    `transport` is passed through to httpx; tests use `httpx.MockTransport`.
    """

    def __init__(
        self,
        base_url: str = MOVIES_SERVICE_URL,
        timeout: float = MOVIES_SERVICE_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        # A client per call keeps this simple; the read path is low volume.
        return httpx.Client(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        )

    def list_movies(
        self,
        limit: int,
        offset: int,
        title: str | None = None,
        year: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return one page of movies.

        Raises:
            httpx.HTTPError on connection failures, timeouts or non-2xx status.
        """
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if title:
            params["title"] = title
        if year is not None:
            params["year"] = year

        with self._client() as client:
            resp = client.get("/movies", params=params)
            resp.raise_for_status()
            return resp.json()

    def get_movie(self, movie_id: str) -> dict[str, Any]:
        """Return a single movie.

        Raises:
            MovieNotFound: 404 from the movies service.
            InvalidMovieId: 400 from the movies service.
            httpx.HTTPError: any other failure.
        """
        with self._client() as client:
            resp = client.get(f"/movies/{movie_id}")
            if resp.status_code == 404:
                raise MovieNotFound(movie_id)
            if resp.status_code == 400:
                raise InvalidMovieId(movie_id)
            resp.raise_for_status()
            return resp.json()
