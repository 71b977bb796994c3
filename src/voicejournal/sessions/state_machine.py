"""
Reflection session state machine.

NOT_STARTED -> IN_PROGRESS -> {COMPLETED, ABANDONED}

Transitions validate everything before mutating, so a failed transition
leaves the session exactly as it was. Terminal sessions are immutable.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from voicejournal.shared.exceptions import (
    InvalidStateError,
    OperationResult,
    OutOfOrderError,
    ValidationError,
)

RATING_MIN = -2
RATING_MAX = 2


class SessionStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


TERMINAL_SESSION_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.ABANDONED})


@dataclass(frozen=True)
class PromptSnapshot:
    """One prompt as frozen at session start."""

    prompt_id: str
    text: str
    is_rating_prompt: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"prompt_id": self.prompt_id, "text": self.text, "is_rating_prompt": self.is_rating_prompt}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PromptSnapshot":
        return cls(
            prompt_id=str(data["prompt_id"]),
            text=str(data["text"]),
            is_rating_prompt=bool(data.get("is_rating_prompt", False)),
        )


@dataclass(frozen=True)
class SessionResponse:
    prompt_id: str
    prompt_text: str
    answer_text: str
    answered_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt_id": self.prompt_id,
            "prompt_text": self.prompt_text,
            "answer_text": self.answer_text,
            "answered_at": self.answered_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionResponse":
        return cls(
            prompt_id=str(data["prompt_id"]),
            prompt_text=str(data.get("prompt_text", "")),
            answer_text=str(data.get("answer_text", "")),
            answered_at=datetime.fromisoformat(data["answered_at"]),
        )


def order_prompts(prompts: Iterable[PromptSnapshot]) -> tuple[PromptSnapshot, ...]:
    """Keep provider order but move rating prompts after all regular prompts."""
    prompts = list(prompts)
    regular = [p for p in prompts if not p.is_rating_prompt]
    rating = [p for p in prompts if p.is_rating_prompt]
    return tuple(regular + rating)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ReflectionSessionState:
    """In-memory view of one reflection session."""

    id: UUID = field(default_factory=uuid4)
    user_id: str = ""
    attempt_id: UUID | None = None
    status: SessionStatus = SessionStatus.NOT_STARTED
    prompts: tuple[PromptSnapshot, ...] = ()
    current_prompt_index: int = 0
    responses: list[SessionResponse] = field(default_factory=list)
    rating: int | None = None
    abandon_reason: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    @property
    def current_prompt(self) -> PromptSnapshot | None:
        if self.current_prompt_index < len(self.prompts):
            return self.prompts[self.current_prompt_index]
        return None

    @property
    def remaining_prompts(self) -> int:
        return len(self.prompts) - self.current_prompt_index

    @property
    def has_captured_anything(self) -> bool:
        return bool(self.responses) or self.rating is not None

    def start(self, prompt_snapshot: Sequence[PromptSnapshot]) -> OperationResult[None]:
        if self.status != SessionStatus.NOT_STARTED:
            return OperationResult.failure(self._invalid("start"))
        if not prompt_snapshot:
            return OperationResult.failure(
                InvalidStateError(message="Cannot start a session without prompts")
            )

        self.prompts = tuple(prompt_snapshot)
        self.current_prompt_index = 0
        self.status = SessionStatus.IN_PROGRESS
        self.started_at = _now()
        return OperationResult.success()

    def record_response(self, prompt_id: str, answer_text: str) -> OperationResult[None]:
        if self.status != SessionStatus.IN_PROGRESS:
            return OperationResult.failure(self._invalid("record_response"))

        current = self.current_prompt
        if current is None or current.prompt_id != prompt_id:
            return OperationResult.failure(
                OutOfOrderError(
                    message="Response does not match the current prompt",
                    details={
                        "prompt_id": prompt_id,
                        "expected_prompt_id": current.prompt_id if current else None,
                        "current_prompt_index": self.current_prompt_index,
                    },
                )
            )

        self.responses.append(
            SessionResponse(
                prompt_id=prompt_id,
                prompt_text=current.text,
                answer_text=answer_text,
                answered_at=_now(),
            )
        )
        self.current_prompt_index += 1
        return OperationResult.success()

    def set_rating(self, value: int) -> OperationResult[None]:
        """Store the day rating and move past the rating prompt."""
        if self.status != SessionStatus.IN_PROGRESS:
            return OperationResult.failure(self._invalid("set_rating"))

        current = self.current_prompt
        if current is None or not current.is_rating_prompt:
            return OperationResult.failure(
                OutOfOrderError(
                    message="Current prompt is not a rating prompt",
                    details={"current_prompt_index": self.current_prompt_index},
                )
            )
        # bool is an int subclass; True is not a rating.
        if isinstance(value, bool) or not isinstance(value, int) or not RATING_MIN <= value <= RATING_MAX:
            return OperationResult.failure(
                ValidationError(
                    message=f"Rating must be an integer between {RATING_MIN} and {RATING_MAX}",
                    details={"value": value},
                )
            )

        self.rating = value
        self.current_prompt_index += 1
        return OperationResult.success()

    def complete(self, expected_prompt_count: int) -> OperationResult[None]:
        if self.status != SessionStatus.IN_PROGRESS:
            return OperationResult.failure(self._invalid("complete"))
        if self.current_prompt_index != expected_prompt_count:
            return OperationResult.failure(
                InvalidStateError(
                    message="Cannot complete with unanswered prompts",
                    details={
                        "current_prompt_index": self.current_prompt_index,
                        "expected_prompt_count": expected_prompt_count,
                    },
                )
            )

        self.status = SessionStatus.COMPLETED
        self.ended_at = _now()
        return OperationResult.success()

    def abandon(self, reason: str) -> OperationResult[None]:
        """Abandon a live session. A no-op on terminal sessions."""
        if self.is_terminal:
            return OperationResult.success()

        self.status = SessionStatus.ABANDONED
        self.abandon_reason = reason
        self.ended_at = _now()
        return OperationResult.success()

    def _invalid(self, transition: str) -> InvalidStateError:
        return InvalidStateError(
            message=f"Cannot {transition} a session in state {self.status.value}",
            details={"session_id": str(self.id), "status": self.status.value},
        )
