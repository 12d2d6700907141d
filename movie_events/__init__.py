"""Shared contract between the gateway and the movies service."""

from .config import BrokerSettings
from .envelope import (
    Action,
    CreateMovie,
    DeleteMovie,
    Envelope,
    EnvelopeError,
    InvalidPayload,
    MalformedEnvelope,
    MovieCommand,
    decode,
    encode,
    parse_command,
)
from .retry import BrokerConnectionError, RetryAborted, RetryPolicy

__all__ = [
    "Action",
    "BrokerConnectionError",
    "BrokerSettings",
    "CreateMovie",
    "DeleteMovie",
    "Envelope",
    "EnvelopeError",
    "InvalidPayload",
    "MalformedEnvelope",
    "MovieCommand",
    "RetryAborted",
    "RetryPolicy",
    "decode",
    "encode",
    "parse_command",
]
