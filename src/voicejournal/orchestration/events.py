"""
Session lifecycle event publishing.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol
from uuid import UUID, uuid4

from voicejournal.shared.logging import get_logger

logger = get_logger(__name__)


class LifecycleEventType(str, Enum):
    """Types of session lifecycle events."""

    SESSION_STARTED = "session.started"
    PROMPT_ANSWERED = "prompt.answered"
    SESSION_COMPLETED = "session.completed"
    SESSION_ABANDONED = "session.abandoned"


@dataclass
class LifecycleEvent:
    """Event data for session lifecycle events."""

    id: UUID = field(default_factory=uuid4)
    event_type: LifecycleEventType = LifecycleEventType.SESSION_STARTED
    session_id: str = ""
    attempt_id: str = ""
    user_id: str = ""
    provider_call_id: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "event_type": self.event_type.value,
            "session_id": self.session_id,
            "attempt_id": self.attempt_id,
            "user_id": self.user_id,
            "provider_call_id": self.provider_call_id,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


class EventBusProtocol(Protocol):
    """Protocol for event bus integration."""

    async def publish(self, topic: str, message: dict[str, Any]) -> None: ...


class LoggingEventBus:
    """Writes each message to the log and keeps nothing. Used when no broker is wired."""

    async def publish(self, topic: str, message: dict[str, Any]) -> None:
        logger.info(
            "Lifecycle event",
            extra={"topic": topic, "event_type": message.get("event_type"), "session_id": message.get("session_id")},
        )


class InMemoryEventBus:
    """Keeps published messages in a list for inspection."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, topic: str, message: dict[str, Any]) -> None:
        self.messages.append((topic, message))

    def of_type(self, event_type: LifecycleEventType) -> list[dict[str, Any]]:
        return [m for _, m in self.messages if m["event_type"] == event_type.value]


class LifecycleEventPublisher:
    """Publisher for reflection session lifecycle events.

    Publishing failures are logged and never interrupt a live call.
    """

    TOPIC = "reflection.sessions"

    def __init__(self, event_bus: EventBusProtocol) -> None:
        self._bus = event_bus

    async def publish(
        self,
        event_type: LifecycleEventType,
        *,
        session_id: UUID,
        attempt_id: UUID,
        user_id: str,
        provider_call_id: str,
        **payload: Any,
    ) -> LifecycleEvent:
        event = LifecycleEvent(
            event_type=event_type,
            session_id=str(session_id),
            attempt_id=str(attempt_id),
            user_id=user_id,
            provider_call_id=provider_call_id,
            payload=payload,
        )
        try:
            await self._bus.publish(self.TOPIC, event.to_dict())
        except Exception:
            logger.exception(
                "Failed to publish lifecycle event",
                extra={"event_type": event_type.value, "session_id": str(session_id)},
            )
        return event
