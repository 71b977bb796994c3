"""
Repository for reflection sessions.

``apply`` is the only write path for transitions: load, run the transition
on the in-memory state, then write back with ``WHERE version = :v``. A lost
race reloads and re-runs the transition against the fresh state.
"""

from collections.abc import Callable, Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from voicejournal.sessions.models import ReflectionSession, state_values
from voicejournal.sessions.state_machine import ReflectionSessionState, SessionStatus
from voicejournal.shared.exceptions import NotFoundError, OperationResult
from voicejournal.shared.logging import get_logger

logger = get_logger(__name__)

Transition = Callable[[ReflectionSessionState], OperationResult[None]]


class ConcurrentUpdateError(RuntimeError):
    """Version check kept failing after the retry budget."""


class ReflectionSessionRepository:
    """Persistence for reflection sessions."""

    MAX_CAS_RETRIES = 3

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, user_id: str, attempt_id: UUID | None = None) -> ReflectionSessionState:
        row = ReflectionSession(
            user_id=user_id,
            attempt_id=attempt_id,
            status=SessionStatus.NOT_STARTED,
            prompt_snapshot=[],
            responses=[],
            current_prompt_index=0,
            version=1,
        )
        self._session.add(row)
        await self._session.flush()
        return row.to_state()

    async def get(self, session_id: UUID) -> ReflectionSessionState | None:
        row = await self._load(session_id)
        return row.to_state() if row is not None else None

    async def get_by_attempt(self, attempt_id: UUID) -> Sequence[ReflectionSessionState]:
        result = await self._session.execute(
            select(ReflectionSession)
            .where(ReflectionSession.attempt_id == attempt_id)
            .order_by(ReflectionSession.created_at)
        )
        return [row.to_state() for row in result.scalars().all()]

    async def list_for_user(self, user_id: str, limit: int = 30) -> Sequence[ReflectionSessionState]:
        result = await self._session.execute(
            select(ReflectionSession)
            .where(ReflectionSession.user_id == user_id)
            .order_by(ReflectionSession.created_at.desc())
            .limit(limit)
        )
        return [row.to_state() for row in result.scalars().all()]

    async def list_stale(self, created_before: datetime) -> Sequence[ReflectionSessionState]:
        """Sessions still NOT_STARTED or IN_PROGRESS that were created before the cutoff."""
        result = await self._session.execute(
            select(ReflectionSession)
            .where(
                ReflectionSession.status.in_((SessionStatus.NOT_STARTED, SessionStatus.IN_PROGRESS)),
                ReflectionSession.created_at < created_before,
            )
            .order_by(ReflectionSession.created_at)
        )
        return [row.to_state() for row in result.scalars().all()]

    async def apply(
        self,
        session_id: UUID,
        transition: Transition,
    ) -> OperationResult[ReflectionSessionState]:
        """Run ``transition`` as a linearizable read-modify-write.

        Args:
            session_id: Session to transition.
            transition: Callable that mutates the state and returns a result.

        Returns:
            The post-transition state, or the transition's error. Failed
            transitions are never written.
        """
        for _ in range(self.MAX_CAS_RETRIES):
            row = await self._load(session_id)
            if row is None:
                return OperationResult.failure(
                    NotFoundError(message="Reflection session not found", details={"session_id": str(session_id)})
                )

            state = row.to_state()
            before = state_values(state)
            outcome = transition(state)
            if not outcome.ok:
                return OperationResult.failure(outcome.error)  # type: ignore[arg-type]

            after = state_values(state)
            if after == before:
                return OperationResult.success(state)

            result = await self._session.execute(
                update(ReflectionSession)
                .where(
                    ReflectionSession.id == session_id,
                    ReflectionSession.version == row.version,
                )
                .values(version=row.version + 1, **after)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return OperationResult.success(state)

            logger.info(
                "Session version conflict; retrying",
                extra={"session_id": str(session_id), "version": row.version},
            )

        raise ConcurrentUpdateError(f"Could not update session {session_id}")

    async def _load(self, session_id: UUID) -> ReflectionSession | None:
        result = await self._session.execute(
            select(ReflectionSession)
            .where(ReflectionSession.id == session_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
