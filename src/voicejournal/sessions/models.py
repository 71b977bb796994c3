"""
SQLAlchemy model for reflection sessions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, Enum as SQLEnum, ForeignKey, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from voicejournal.sessions.state_machine import (
    PromptSnapshot,
    ReflectionSessionState,
    SessionResponse,
    SessionStatus,
)
from voicejournal.shared.database import Base, as_utc


class ReflectionSession(Base):
    """Persisted reflection session. ``version`` guards concurrent writers."""

    __tablename__ = "reflection_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    attempt_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("call_attempts.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[SessionStatus] = mapped_column(
        SQLEnum(SessionStatus, name="reflection_session_status"),
        nullable=False,
        default=SessionStatus.NOT_STARTED,
    )
    prompt_snapshot: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    current_prompt_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    responses: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    abandon_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def to_state(self) -> ReflectionSessionState:
        return ReflectionSessionState(
            id=self.id,
            user_id=self.user_id,
            attempt_id=self.attempt_id,
            status=SessionStatus(self.status),
            prompts=tuple(PromptSnapshot.from_dict(p) for p in self.prompt_snapshot or []),
            current_prompt_index=self.current_prompt_index,
            responses=[SessionResponse.from_dict(r) for r in self.responses or []],
            rating=self.rating,
            abandon_reason=self.abandon_reason,
            started_at=as_utc(self.started_at),
            ended_at=as_utc(self.ended_at),
        )

    def __repr__(self) -> str:
        return (
            f"<ReflectionSession(id={self.id}, status={self.status}, "
            f"index={self.current_prompt_index}, version={self.version})>"
        )


def state_values(state: ReflectionSessionState) -> dict[str, Any]:
    """Column values for writing a state back."""
    return {
        "status": state.status,
        "prompt_snapshot": [p.to_dict() for p in state.prompts],
        "current_prompt_index": state.current_prompt_index,
        "responses": [r.to_dict() for r in state.responses],
        "rating": state.rating,
        "abandon_reason": state.abandon_reason,
        "started_at": state.started_at,
        "ended_at": state.ended_at,
    }
