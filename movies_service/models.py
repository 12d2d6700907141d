"""Pydantic models for the movies service."""

from __future__ import annotations

from pydantic import BaseModel, Field


class Movie(BaseModel):
    """A stored movie. `id` is the hex form of the Mongo ObjectId."""

    id: str | None = None
    title: str
    year: int


class CreateMovieRequest(BaseModel):
    """Request body for `POST /movies` on the internal API."""

    title: str = Field(min_length=1)
    year: int


class MovieSeed(BaseModel):
    """One entry of the seed file. `year` may be written as a string."""

    title: str = Field(min_length=1)
    year: int
