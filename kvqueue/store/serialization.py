"""
Serialization helpers for records stored as strings.

Decoding never raises: a malformed record comes back as a
``DeserializationError`` value carrying the raw text, so a single corrupt
entry cannot abort a scan over many.
"""

import json
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class Ok(Generic[T]):
    """A successfully decoded value."""

    value: T


@dataclass(frozen=True)
class DeserializationError:
    """A stored record that could not be decoded."""

    error: str
    raw: str | None


def serialize(value: Any) -> str:
    """
    Serialize a value for storage.

    Args:
        value: A pydantic model or any JSON-compatible value.

    Returns:
        JSON text.
    """
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    return json.dumps(value, default=str)


def decode_json(raw: str | None) -> Ok[Any] | DeserializationError:
    """Decode JSON text into plain Python values."""
    if raw is None:
        return DeserializationError(error="missing value", raw=None)
    try:
        return Ok(json.loads(raw))
    except (TypeError, ValueError) as e:
        return DeserializationError(error=str(e), raw=raw)


def deserialize(raw: str | None, model: type[M]) -> Ok[M] | DeserializationError:
    """
    Decode JSON text into a pydantic model.

    Args:
        raw: Stored text, or None if the key was missing.
        model: Target model class.

    Returns:
        Ok wrapping the model, or a DeserializationError.
    """
    if raw is None:
        return DeserializationError(error="missing value", raw=None)
    try:
        return Ok(model.model_validate_json(raw))
    except ValidationError as e:
        return DeserializationError(error=str(e), raw=raw)
