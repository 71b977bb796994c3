"""
API router for operational read queries.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from voicejournal.calls.models import CallAttemptStatus
from voicejournal.calls.repository import CallAttemptRegistry, CallQueue
from voicejournal.ops.schemas import (
    ActiveCallResponse,
    CallAttemptResponse,
    QueueResponse,
    ReflectionSessionResponse,
)
from voicejournal.sessions.repository import ReflectionSessionRepository
from voicejournal.shared.database import get_db_session

router = APIRouter(prefix="/ops", tags=["ops"])


@router.get("/queue", response_model=QueueResponse)
async def get_queue(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> QueueResponse:
    """Queued attempts in dispatch order."""
    registry = CallAttemptRegistry(session)
    entries = []
    for attempt_id in await CallQueue(session).contents():
        attempt = await registry.get_by_id(attempt_id)
        if attempt is not None:
            entries.append(CallAttemptResponse.model_validate(attempt))
    return QueueResponse(length=len(entries), entries=entries)


@router.get("/attempts", response_model=list[CallAttemptResponse])
async def list_attempts(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    attempt_status: Annotated[CallAttemptStatus, Query(alias="status")] = CallAttemptStatus.PENDING,
) -> list[CallAttemptResponse]:
    attempts = await CallAttemptRegistry(session).list_by_status(attempt_status)
    return [CallAttemptResponse.model_validate(a) for a in attempts]


@router.get("/calls", response_model=list[ActiveCallResponse])
async def list_active_calls(request: Request) -> list[ActiveCallResponse]:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        return []
    return [ActiveCallResponse.model_validate(c) for c in orchestrator.active_calls()]


@router.get("/sessions/{session_id}", response_model=ReflectionSessionResponse)
async def get_session(
    session_id: UUID,
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> ReflectionSessionResponse:
    state = await ReflectionSessionRepository(session).get(session_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reflection session not found")
    return ReflectionSessionResponse.from_state(state)
