"""Movie use cases.

`MovieService` is what both entry points call:
- the internal HTTP API (reads, plus synchronous writes)
- the RabbitMQ consumer (asynchronous writes from the gateway)
"""

from __future__ import annotations

from .config import MOVIES_SEED_FILE
from .models import Movie
from .mongo import MovieRepository, get_collection, seed_movies


class MovieService:
    def __init__(self, repo: MovieRepository) -> None:
        self.repo = repo

    def get_movie(self, movie_id: str) -> Movie:
        return self.repo.get(movie_id)

    def list_movies(
        self,
        limit: int,
        offset: int,
        title: str | None = None,
        year: int | None = None,
    ) -> list[Movie]:
        return self.repo.find(limit=limit, offset=offset, title=title, year=year)

    def create_movie(self, title: str, year: int) -> Movie:
        return self.repo.save(Movie(title=title, year=year))

    def delete_movie(self, movie_id: str) -> None:
        """Raises `MovieNotFound` when nothing was deleted."""
        self.repo.delete(movie_id)


def build_movie_service(seed_file: str | None = MOVIES_SEED_FILE) -> MovieService:
    """Connect to MongoDB, seed an empty collection and wire the service."""
    collection = get_collection()
    if seed_file:
        seed_movies(collection, seed_file)
    return MovieService(MovieRepository(collection))
