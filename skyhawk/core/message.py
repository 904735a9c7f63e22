"""Message and security event models for Skyhawk."""

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_core import PydanticSerializationError

from skyhawk.core.errors import MalformedMessageError

RETRY_SUFFIX = "_retry"
DEAD_LETTER_SUFFIX = "_dead"

SECURITY_EVENT_TYPE = "security_event"


def retry_queue_name(queue_name: str) -> str:
    """Return the retry satellite of a primary queue."""
    return f"{queue_name}{RETRY_SUFFIX}"


def dead_letter_queue_name(queue_name: str) -> str:
    """Return the dead-letter satellite of a primary queue."""
    return f"{queue_name}{DEAD_LETTER_SUFFIX}"


class SecurityEvent(BaseModel):
    """A security event as stored by the HTTP layer.

    Attributes:
        id: Row identifier assigned by the relational store.
        event_id: Public event identifier; becomes the Message id.
        event_type: Kind of event, e.g. ``login`` or ``file_access``.
        severity: Free-form severity label.
        source: System that reported the event.
        description: Human-readable description.
        event_data: Arbitrary event attributes.
        created_at: Creation time (UTC).
        updated_at: Last update time (UTC).
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    severity: str
    source: str
    description: str = ""
    event_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Message(BaseModel):
    """Immutable unit of transport.

    The same ``id`` is kept across every retry of one logical event, and
    ``retry_count`` equals the number of failed processing attempts so far.

    Attributes:
        id: Stable message identifier, auto-generated if not provided.
        type: Discriminator used to select a processing handler.
        payload: The event body.
        created_at: UTC time of original publication.
        retry_count: Number of failed processing attempts, never negative.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    retry_count: int = Field(default=0, ge=0)

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("id must not be empty")
        return v

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        """Reject blank types; the value itself is kept as given."""
        if not v.strip():
            raise ValueError("type must not be empty")
        return v

    @classmethod
    def from_security_event(cls, event: SecurityEvent) -> "Message":
        """Wrap a stored security event for asynchronous processing."""
        return cls(
            id=event.event_id,
            type=SECURITY_EVENT_TYPE,
            payload={"event": event.model_dump(mode="json")},
        )

    def with_retry(self) -> "Message":
        """Return a copy recording one more failed processing attempt."""
        return self.model_copy(update={"retry_count": self.retry_count + 1})

    def to_bytes(self) -> bytes:
        """Encode as compact UTF-8 JSON.

        Raises:
            TypeError: If the payload holds values JSON cannot represent.
        """
        try:
            return self.model_dump_json().encode("utf-8")
        except PydanticSerializationError as e:
            raise TypeError(f"payload is not JSON-serializable: {e}") from e

    @classmethod
    def from_bytes(cls, body: bytes) -> "Message":
        """Decode a transport body.

        Raises:
            MalformedMessageError: If the body is not a valid Message.
        """
        try:
            return cls.model_validate_json(body)
        except (ValidationError, ValueError) as e:
            raise MalformedMessageError(f"failed to decode message: {e}") from e
