"""MongoDB access for the movies service.

This module has one job: handle MongoDB interactions.

IDs:
- Documents use a generated ObjectId as `_id`.
- Outside this module an id is the 24-char hex string. Anything else raises
  `InvalidMovieId` before Mongo is queried.

No idempotency key:
- Envelopes carry no event id, so a `create` redelivered after a crash
  between "inserted" and "acked" inserts a second document.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

from bson import ObjectId
from pydantic import TypeAdapter, ValidationError
from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection

from .config import MONGO_COLLECTION, MONGO_DB, MONGO_URI
from .models import Movie, MovieSeed

logger = logging.getLogger(__name__)


class MovieNotFound(Exception):
    """No movie has the given id."""


class InvalidMovieId(ValueError):
    """The id is not a 24-char hex ObjectId."""


def get_collection(
    uri: str = MONGO_URI, db_name: str = MONGO_DB, name: str = MONGO_COLLECTION
) -> Collection:
    """Connect to MongoDB and return the movies collection.

    Also creates the index used by title/year searches.
    """
    client = MongoClient(uri)
    collection = client[db_name][name]
    collection.create_index([("title", ASCENDING), ("year", ASCENDING)])
    return collection


def to_object_id(movie_id: str) -> ObjectId:
    if not isinstance(movie_id, str) or not ObjectId.is_valid(movie_id):
        raise InvalidMovieId(movie_id)
    return ObjectId(movie_id)


def _to_movie(doc: dict[str, Any]) -> Movie:
    return Movie(id=str(doc["_id"]), title=doc["title"], year=doc["year"])


class MovieRepository:
    """CRUD over the movies collection."""

    def __init__(self, collection: Collection) -> None:
        self.collection = collection

    def get(self, movie_id: str) -> Movie:
        doc = self.collection.find_one({"_id": to_object_id(movie_id)})
        if doc is None:
            raise MovieNotFound(movie_id)
        return _to_movie(doc)

    def find(
        self,
        limit: int,
        offset: int,
        title: str | None = None,
        year: int | None = None,
    ) -> list[Movie]:
        """Return one page, ordered by insertion (`_id`).

        `title` matches case-insensitively anywhere in the title; `year` is
        an exact match.
        """
        query: dict[str, Any] = {}
        if title:
            query["title"] = {"$regex": re.escape(title), "$options": "i"}
        if year is not None:
            query["year"] = year

        cursor = (
            self.collection.find(query).sort("_id", ASCENDING).skip(offset).limit(limit)
        )
        return [_to_movie(doc) for doc in cursor]

    def save(self, movie: Movie) -> Movie:
        """Insert a movie without id, or replace the stored one with that id."""
        doc = {"title": movie.title, "year": movie.year}

        if movie.id is None:
            result = self.collection.insert_one(doc)
            saved = movie.model_copy(update={"id": str(result.inserted_id)})
            logger.info("[Mongo] Inserted movie %s", saved.id)
            return saved

        result = self.collection.replace_one({"_id": to_object_id(movie.id)}, doc)
        if result.matched_count == 0:
            raise MovieNotFound(movie.id)
        return movie

    def delete(self, movie_id: str) -> None:
        result = self.collection.delete_one({"_id": to_object_id(movie_id)})
        if result.deleted_count == 0:
            raise MovieNotFound(movie_id)
        logger.info("[Mongo] Deleted movie %s", movie_id)


def seed_movies(collection: Collection, path: str | Path) -> int:
    """Insert the seed file's movies if the collection is empty.

    Returns:
        Number of inserted documents (0 when the collection already has data
        or the file does not exist).

    Raises:
        ValueError: the file exists but is not a JSON list of movies.
    """
    if collection.count_documents({}) > 0:
        logger.info("[Mongo] Collection already has data; seeding not needed")
        return 0

    path = Path(path)
    if not path.is_file():
        logger.warning("[Mongo] Seed file %s not found; starting empty", path)
        return 0

    try:
        seeds = TypeAdapter(list[MovieSeed]).validate_json(path.read_bytes())
    except ValidationError as e:
        raise ValueError(f"invalid seed file {path}: {e}") from e

    if not seeds:
        return 0

    collection.insert_many([{"title": s.title, "year": s.year} for s in seeds])
    logger.info("[Mongo] Seeded %d movies from %s", len(seeds), path)
    return len(seeds)
