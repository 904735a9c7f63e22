"""Message handlers and type-based dispatch for Skyhawk."""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Iterable
from typing import ClassVar

from pydantic import ValidationError

from skyhawk.core.errors import ProcessingError
from skyhawk.core.logging import get_logger
from skyhawk.core.message import SECURITY_EVENT_TYPE, Message, SecurityEvent


class Handler(ABC):
    """Base class for message handlers.

    Each Handler declares which message types it processes via the
    ``handles`` class attribute. Returning normally means success; raising
    any exception counts as a processing failure and triggers the retry
    policy of the consumer loop.

    Handlers must tolerate duplicate message ids: delivery is at-least-once.
    """

    handles: ClassVar[list[str]] = []

    def __init__(self, name: str | None = None) -> None:
        self.name = name or self.__class__.__name__

    @abstractmethod
    def handle(self, message: Message) -> None | Awaitable[None]:
        """Process one message.

        Args:
            message: The decoded message.

        Raises:
            ProcessingError: Or any other exception, when processing failed.
        """
        ...


class NoopHandler(Handler):
    """Fallback for message types without a registered handler.

    Succeeds without doing anything, but logs so unknown types never
    disappear silently.
    """

    def __init__(self, name: str | None = None) -> None:
        super().__init__(name)
        self._log = get_logger("skyhawk.handler")

    def handle(self, message: Message) -> None:
        self._log.warning(
            f"No handler registered for type {message.type!r}, acknowledging as no-op",
            extra={"message_id": message.id, "message_type": message.type},
        )


class SecurityEventHandler(Handler):
    """Processes ``security_event`` messages published by the HTTP layer."""

    handles = [SECURITY_EVENT_TYPE]

    CATEGORIES: ClassVar[dict[str, str]] = {
        "login": "login",
        "data_access": "data access",
        "file_access": "file access",
    }

    def __init__(self, name: str | None = None) -> None:
        super().__init__(name)
        self._log = get_logger("skyhawk.handler")

    def handle(self, message: Message) -> None:
        raw = message.payload.get("event")
        if not isinstance(raw, dict):
            raise ProcessingError("invalid event data in message", message_id=message.id)
        try:
            event = SecurityEvent.model_validate(raw)
        except ValidationError as e:
            raise ProcessingError(f"invalid event data in message: {e}", message_id=message.id) from e

        category = self.CATEGORIES.get(event.event_type, "generic")
        self._log.info(
            f"Processed {category} event {event.event_id}",
            extra={
                "message_id": message.id,
                "message_type": message.type,
                "event_type": event.event_type,
                "severity": event.severity,
                "source": event.source,
            },
        )


class HandlerRegistry:
    """Maps message types to handlers.

    Exactly one handler serves a type. Types without a handler resolve to
    the default handler, a :class:`NoopHandler` unless one is supplied.
    """

    def __init__(
        self,
        handlers: Iterable[Handler] = (),
        default: Handler | None = None,
    ) -> None:
        self._handlers: dict[str, Handler] = {}
        self.default = default or NoopHandler()
        for handler in handlers:
            self.register(handler)

    def register(self, handler: Handler) -> None:
        """Register a handler for every type in its ``handles`` list.

        Raises:
            TypeError: If ``handles`` is not a list of strings.
            ValueError: If a type is already served by another handler.
        """
        if not isinstance(handler.handles, list):
            raise TypeError(
                f"{handler.name}.handles must be a list[str], "
                f"got {type(handler.handles).__name__}"
            )
        for message_type in handler.handles:
            if not isinstance(message_type, str):
                raise TypeError(
                    f"{handler.name}.handles must contain only strings, "
                    f"found {type(message_type).__name__}: {message_type!r}"
                )
            existing = self._handlers.get(message_type)
            if existing is not None and existing is not handler:
                raise ValueError(
                    f"type {message_type!r} is already handled by {existing.name}"
                )
        for message_type in handler.handles:
            self._handlers[message_type] = handler

    def resolve(self, message_type: str) -> Handler:
        return self._handlers.get(message_type, self.default)

    def __contains__(self, message_type: str) -> bool:
        return message_type in self._handlers

    @classmethod
    def default_registry(cls) -> "HandlerRegistry":
        """Registry used by the worker process."""
        return cls([SecurityEventHandler()])
