"""Pydantic models for the gateway.

Input is validated at the HTTP boundary so that:
- bad requests fail fast with a 422
- RabbitMQ only receives payloads the consumer can apply
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class CreateMovieRequest(BaseModel):
    """Request body for `POST /movies`."""

    title: str = Field(min_length=1, examples=["Interestelar"])
    year: int = Field(ge=-(2**31), le=2**31 - 1, examples=[2014])


class Movie(BaseModel):
    """Movie as returned by the movies service."""

    id: str
    title: str
    year: int


class AcceptedResponse(BaseModel):
    """Body of a 202: the write was queued, not applied yet."""

    status: Literal["accepted"] = "accepted"
    action: str
    id: str | None = None
