"""
Pydantic schemas for the operational API.
"""

from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from voicejournal.calls.models import CallAttemptStatus, CallSource
from voicejournal.sessions.state_machine import ReflectionSessionState, SessionStatus


class CallAttemptResponse(BaseModel):
    """Schema for a call attempt."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    on_date: date
    source: CallSource
    status: CallAttemptStatus
    attempt_count: int
    last_attempt_at: datetime | None = None
    next_attempt_at: datetime | None = None
    resulting_entry_id: str | None = None
    failure_reason: str | None = None


class QueueResponse(BaseModel):
    length: int
    entries: list[CallAttemptResponse] = Field(default_factory=list)


class ActiveCallResponse(BaseModel):
    provider_call_id: str
    session_id: UUID
    attempt_id: UUID
    user_id: str
    connected: bool
    created_at: datetime


class SessionResponseItem(BaseModel):
    prompt_id: str
    prompt_text: str
    answer_text: str
    answered_at: datetime


class ReflectionSessionResponse(BaseModel):
    """Schema for a reflection session."""

    id: UUID
    user_id: str
    attempt_id: UUID | None = None
    status: SessionStatus
    prompt_count: int
    current_prompt_index: int
    responses: list[SessionResponseItem] = Field(default_factory=list)
    rating: int | None = None
    abandon_reason: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @classmethod
    def from_state(cls, state: ReflectionSessionState) -> "ReflectionSessionResponse":
        data: dict[str, Any] = {
            "id": state.id,
            "user_id": state.user_id,
            "attempt_id": state.attempt_id,
            "status": state.status,
            "prompt_count": len(state.prompts),
            "current_prompt_index": state.current_prompt_index,
            "responses": [r.to_dict() for r in state.responses],
            "rating": state.rating,
            "abandon_reason": state.abandon_reason,
            "started_at": state.started_at,
            "ended_at": state.ended_at,
        }
        return cls.model_validate(data)
