"""Wire format for movie write intents.

The gateway never writes to MongoDB. It wraps each write in an envelope and
publishes it to RabbitMQ:

    {"action": "create", "data": {"title": "...", "year": 2014}, "timestamp": "..."}

Decoding happens in two stages:

1) `decode()` validates only the envelope shell (action/data/timestamp).
2) `parse_command()` validates `data` against the shape implied by `action`.

Unknown actions pass stage 1 and come back from stage 2 as `None`, so a
consumer can acknowledge envelopes produced by a newer gateway instead of
retrying them forever.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Union

from pydantic import BaseModel, Field, ValidationError


class Action(str, Enum):
    CREATE = "create"
    DELETE = "delete"


class EnvelopeError(Exception):
    """Base class for envelope decoding failures."""


class MalformedEnvelope(EnvelopeError):
    """The bytes are not a JSON envelope with action, data and timestamp."""


class InvalidPayload(EnvelopeError):
    """The envelope is well formed but `data` does not match its action."""


class Envelope(BaseModel):
    """Envelope shell.

    `action` is kept as a plain string here; mapping it to `Action` is the
    job of `parse_command()`. `data` is any JSON value until then.

    `timestamp` is informational. It is not used for ordering or dedup.
    """

    action: str
    data: Any = Field(...)
    timestamp: datetime


class CreateMovie(BaseModel):
    """Payload for `create`."""

    title: str = Field(min_length=1)
    # Strict: the wire type is an int32, "2014" is rejected.
    year: int = Field(strict=True, ge=-(2**31), le=2**31 - 1)


class DeleteMovie(BaseModel):
    """Payload for `delete`."""

    id: str = Field(min_length=1)


MovieCommand = Union[CreateMovie, DeleteMovie]

PAYLOAD_MODELS: dict[Action, type[BaseModel]] = {
    Action.CREATE: CreateMovie,
    Action.DELETE: DeleteMovie,
}


def encode(action: Action | str, payload: BaseModel | Mapping[str, Any]) -> bytes:
    """Serialize an envelope stamped with the current UTC time."""
    if isinstance(payload, BaseModel):
        data = payload.model_dump(mode="json")
    else:
        data = dict(payload)

    envelope = Envelope(
        action=action.value if isinstance(action, Action) else action,
        data=data,
        timestamp=datetime.now(timezone.utc),
    )
    return envelope.model_dump_json().encode("utf-8")


def decode(body: bytes) -> Envelope:
    """Parse the envelope shell.

    Raises:
        MalformedEnvelope: invalid UTF-8/JSON or a missing/mistyped field.
    """
    try:
        return Envelope.model_validate_json(body)
    except (ValidationError, ValueError) as e:
        raise MalformedEnvelope(str(e)) from e


def parse_command(envelope: Envelope) -> MovieCommand | None:
    """Decode `envelope.data` against the model for its action.

    Returns:
        The typed command, or None when the action is not recognized.

    Raises:
        InvalidPayload: the action is known but `data` has the wrong shape.
    """
    try:
        action = Action(envelope.action)
    except ValueError:
        return None

    model = PAYLOAD_MODELS[action]
    try:
        return model.model_validate(envelope.data)
    except ValidationError as e:
        raise InvalidPayload(f"bad {action.value} payload: {e}") from e
