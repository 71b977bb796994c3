"""
Call attempt registry and the durable call queue.

Every write is a conditional UPDATE/DELETE checked through its rowcount, so
concurrent schedulers, dispatchers and webhook handlers never double-dispatch
an attempt or leave a terminal attempt queued.
"""

from collections.abc import Sequence
from datetime import date, datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy import delete, exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from voicejournal.calls.models import (
    CallAttempt,
    CallAttemptStatus,
    CallQueueEntry,
    CallSource,
)
from voicejournal.shared.database import utcnow
from voicejournal.shared.exceptions import (
    AlreadyExistsError,
    InvalidStateError,
    NotFoundError,
    OperationResult,
    PreconditionFailedError,
)
from voicejournal.shared.logging import get_logger

logger = get_logger(__name__)


class CallAttemptRegistryProtocol(Protocol):
    """Protocol for call attempt registry operations."""

    async def create_attempt(
        self, user_id: str, on_date: date, source: CallSource
    ) -> OperationResult[CallAttempt]: ...

    async def get(self, user_id: str, on_date: date) -> CallAttempt | None: ...

    async def get_by_id(self, attempt_id: UUID) -> CallAttempt | None: ...

    async def mark_missed(self, user_id: str, on_date: date) -> OperationResult[CallAttempt]: ...

    async def mark_completed(
        self, user_id: str, on_date: date, entry_id: str
    ) -> OperationResult[CallAttempt]: ...

    async def mark_failed(self, attempt_id: UUID, reason: str) -> OperationResult[CallAttempt]: ...


class CallAttemptRegistry:
    """Owns the one-per-(user, date) CallAttempt records."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize registry with database session.

        Args:
            session: Async database session. The caller owns the transaction.
        """
        self._session = session

    async def create_attempt(
        self,
        user_id: str,
        on_date: date,
        source: CallSource = CallSource.SCHEDULED,
    ) -> OperationResult[CallAttempt]:
        """Create a PENDING attempt with attempt_count 0.

        Args:
            user_id: User to call.
            on_date: Calendar date the attempt belongs to.
            source: MANUAL or SCHEDULED.

        Returns:
            Result carrying the new attempt, or AlreadyExistsError.
        """
        if await self.get(user_id, on_date) is not None:
            return OperationResult.failure(self._already_exists(user_id, on_date))

        attempt = CallAttempt(
            user_id=user_id,
            on_date=on_date,
            source=source,
            status=CallAttemptStatus.PENDING,
            attempt_count=0,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(attempt)
        except IntegrityError:
            # Lost a race against a concurrent creator of the same key.
            return OperationResult.failure(self._already_exists(user_id, on_date))

        logger.info(
            "Call attempt created",
            extra={
                "attempt_id": str(attempt.id),
                "user_id": user_id,
                "on_date": on_date.isoformat(),
                "source": source.value,
            },
        )
        return OperationResult.success(attempt)

    async def delete_attempt(self, user_id: str, on_date: date) -> OperationResult[None]:
        """Delete the attempt and its queue membership, if any."""
        attempt = await self.get(user_id, on_date)
        if attempt is None:
            return OperationResult.failure(self._not_found(user_id, on_date))

        await self._session.execute(
            delete(CallQueueEntry).where(CallQueueEntry.attempt_id == attempt.id)
        )
        await self._session.delete(attempt)
        await self._session.flush()
        logger.info(
            "Call attempt deleted",
            extra={"user_id": user_id, "on_date": on_date.isoformat()},
        )
        return OperationResult.success()

    async def mark_missed(self, user_id: str, on_date: date) -> OperationResult[CallAttempt]:
        """Set MISSED and drop the attempt from the queue.

        Re-marking a MISSED attempt succeeds. COMPLETED and FAILED attempts
        are never downgraded.
        """
        attempt = await self.get(user_id, on_date)
        if attempt is None:
            return OperationResult.failure(self._not_found(user_id, on_date))

        return await self._transition(
            attempt,
            allowed_from=(CallAttemptStatus.PENDING, CallAttemptStatus.MISSED),
            status=CallAttemptStatus.MISSED,
            next_attempt_at=None,
        )

    async def mark_completed(
        self,
        user_id: str,
        on_date: date,
        entry_id: str,
    ) -> OperationResult[CallAttempt]:
        """Set COMPLETED, record the journal entry and drop from the queue."""
        attempt = await self.get(user_id, on_date)
        if attempt is None:
            return OperationResult.failure(self._not_found(user_id, on_date))

        if attempt.status == CallAttemptStatus.COMPLETED and attempt.resulting_entry_id == entry_id:
            await self._dequeue_member(attempt.id)
            return OperationResult.success(attempt)

        return await self._transition(
            attempt,
            allowed_from=(CallAttemptStatus.PENDING, CallAttemptStatus.MISSED),
            status=CallAttemptStatus.COMPLETED,
            resulting_entry_id=entry_id,
            next_attempt_at=None,
        )

    async def mark_failed(self, attempt_id: UUID, reason: str) -> OperationResult[CallAttempt]:
        """Terminal give-up disposition after retries are exhausted."""
        attempt = await self.get_by_id(attempt_id)
        if attempt is None:
            return OperationResult.failure(
                NotFoundError(message="Call attempt not found", details={"attempt_id": str(attempt_id)})
            )

        result = await self._transition(
            attempt,
            allowed_from=(CallAttemptStatus.PENDING, CallAttemptStatus.MISSED),
            status=CallAttemptStatus.FAILED,
            failure_reason=reason,
            next_attempt_at=None,
        )
        if result.ok:
            logger.warning(
                "Call attempt failed permanently",
                extra={
                    "attempt_id": str(attempt_id),
                    "attempt_count": attempt.attempt_count,
                    "reason": reason,
                },
            )
        return result

    async def reset_to_pending(self, attempt_id: UUID) -> OperationResult[CallAttempt]:
        """Put a MISSED attempt back to PENDING so it can be retried."""
        attempt = await self.get_by_id(attempt_id)
        if attempt is None:
            return OperationResult.failure(
                NotFoundError(message="Call attempt not found", details={"attempt_id": str(attempt_id)})
            )
        if attempt.status == CallAttemptStatus.PENDING:
            return OperationResult.success(attempt)
        return await self._transition(
            attempt,
            allowed_from=(CallAttemptStatus.MISSED,),
            status=CallAttemptStatus.PENDING,
        )

    async def schedule_retry(self, attempt_id: UUID, at: datetime) -> OperationResult[CallAttempt]:
        """Record when a PENDING attempt should be re-enqueued."""
        result = await self._session.execute(
            update(CallAttempt)
            .where(
                CallAttempt.id == attempt_id,
                CallAttempt.status == CallAttemptStatus.PENDING,
            )
            .values(next_attempt_at=at, updated_at=utcnow())
        )
        if result.rowcount == 0:
            return OperationResult.failure(
                PreconditionFailedError(
                    message="Only PENDING attempts can be scheduled for retry",
                    details={"attempt_id": str(attempt_id)},
                )
            )
        attempt = await self.get_by_id(attempt_id)
        return OperationResult.success(attempt)

    async def get(self, user_id: str, on_date: date) -> CallAttempt | None:
        stmt = (
            select(CallAttempt)
            .where(CallAttempt.user_id == user_id, CallAttempt.on_date == on_date)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_id(self, attempt_id: UUID) -> CallAttempt | None:
        stmt = (
            select(CallAttempt)
            .where(CallAttempt.id == attempt_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str, limit: int = 30) -> Sequence[CallAttempt]:
        """Most recent attempts for a user, newest date first."""
        stmt = (
            select(CallAttempt)
            .where(CallAttempt.user_id == user_id)
            .order_by(CallAttempt.on_date.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_by_status(self, status: CallAttemptStatus) -> Sequence[CallAttempt]:
        stmt = select(CallAttempt).where(CallAttempt.status == status).order_by(CallAttempt.created_at)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def due_retries(self, now: datetime) -> Sequence[CallAttempt]:
        """PENDING, unqueued attempts whose backoff has elapsed."""
        queued = exists().where(CallQueueEntry.attempt_id == CallAttempt.id)
        stmt = (
            select(CallAttempt)
            .where(
                CallAttempt.status == CallAttemptStatus.PENDING,
                CallAttempt.next_attempt_at.is_not(None),
                CallAttempt.next_attempt_at <= now,
                ~queued,
            )
            .order_by(CallAttempt.next_attempt_at)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def orphaned(self, dispatched_before: datetime) -> Sequence[CallAttempt]:
        """PENDING attempts that were dispatched but are neither queued nor scheduled."""
        queued = exists().where(CallQueueEntry.attempt_id == CallAttempt.id)
        stmt = (
            select(CallAttempt)
            .where(
                CallAttempt.status == CallAttemptStatus.PENDING,
                CallAttempt.next_attempt_at.is_(None),
                CallAttempt.last_attempt_at.is_not(None),
                CallAttempt.last_attempt_at < dispatched_before,
                ~queued,
            )
            .order_by(CallAttempt.last_attempt_at)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def _transition(
        self,
        attempt: CallAttempt,
        allowed_from: tuple[CallAttemptStatus, ...],
        status: CallAttemptStatus,
        **values: object,
    ) -> OperationResult[CallAttempt]:
        """Compare-and-update the status, then drop any queue membership."""
        result = await self._session.execute(
            update(CallAttempt)
            .where(CallAttempt.id == attempt.id, CallAttempt.status.in_(allowed_from))
            .values(status=status, updated_at=utcnow(), **values)
        )
        if result.rowcount == 0:
            current = await self.get_by_id(attempt.id)
            return OperationResult.failure(
                InvalidStateError(
                    message=f"Cannot move call attempt to {status.value}",
                    details={
                        "attempt_id": str(attempt.id),
                        "current_status": current.status.value if current else None,
                    },
                )
            )

        if status != CallAttemptStatus.PENDING:
            await self._dequeue_member(attempt.id)

        refreshed = await self.get_by_id(attempt.id)
        logger.info(
            "Call attempt status changed",
            extra={"attempt_id": str(attempt.id), "status": status.value},
        )
        return OperationResult.success(refreshed)

    async def _dequeue_member(self, attempt_id: UUID) -> None:
        await self._session.execute(
            delete(CallQueueEntry).where(CallQueueEntry.attempt_id == attempt_id)
        )

    @staticmethod
    def _already_exists(user_id: str, on_date: date) -> AlreadyExistsError:
        return AlreadyExistsError(
            message="A call attempt already exists for this user and date",
            details={"user_id": user_id, "on_date": on_date.isoformat()},
        )

    @staticmethod
    def _not_found(user_id: str, on_date: date) -> NotFoundError:
        return NotFoundError(
            message="Call attempt not found",
            details={"user_id": user_id, "on_date": on_date.isoformat()},
        )


class CallQueue:
    """FIFO of PENDING attempt ids awaiting dispatch.

    Ordering comes from the autoincrement ``seq`` column. Membership is
    unique per attempt.
    """

    MAX_DEQUEUE_RACES = 5

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def enqueue(self, attempt_id: UUID) -> OperationResult[CallAttempt]:
        """Append a PENDING, unqueued attempt to the tail.

        Increments attempt_count and stamps last_attempt_at as part of the
        same compare-and-update.
        """
        now = utcnow()
        queued = exists().where(CallQueueEntry.attempt_id == attempt_id)
        result = await self._session.execute(
            update(CallAttempt)
            .where(
                CallAttempt.id == attempt_id,
                CallAttempt.status == CallAttemptStatus.PENDING,
                ~queued,
            )
            .values(
                attempt_count=CallAttempt.attempt_count + 1,
                last_attempt_at=now,
                next_attempt_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return OperationResult.failure(await self._enqueue_precondition(attempt_id))

        self._session.add(CallQueueEntry(attempt_id=attempt_id, enqueued_at=now))
        await self._session.flush()

        attempt = await self._load_attempt(attempt_id)
        logger.info(
            "Call attempt enqueued",
            extra={
                "attempt_id": str(attempt_id),
                "attempt_count": attempt.attempt_count if attempt else None,
            },
        )
        return OperationResult.success(attempt)

    async def dequeue(self) -> UUID | None:
        """Pop the head of the queue. Returns None when empty."""
        for _ in range(self.MAX_DEQUEUE_RACES):
            head = await self._head()
            if head is None:
                return None

            seq, attempt_id = head
            removed = await self._session.execute(
                delete(CallQueueEntry)
                .where(CallQueueEntry.seq == seq)
                .execution_options(synchronize_session=False)
            )
            if removed.rowcount == 1:
                return attempt_id

            logger.debug("Lost dequeue race; retrying", extra={"seq": seq})
        return None

    async def remove(self, attempt_id: UUID) -> bool:
        """Remove a specific member. Returns False if it was not queued."""
        result = await self._session.execute(
            delete(CallQueueEntry)
            .where(CallQueueEntry.attempt_id == attempt_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def contains(self, attempt_id: UUID) -> bool:
        result = await self._session.execute(
            select(CallQueueEntry.seq).where(CallQueueEntry.attempt_id == attempt_id)
        )
        return result.first() is not None

    async def contents(self) -> list[UUID]:
        """Queued attempt ids, head first."""
        result = await self._session.execute(
            select(CallQueueEntry.attempt_id).order_by(CallQueueEntry.seq)
        )
        return list(result.scalars().all())

    async def length(self) -> int:
        return len(await self.contents())

    async def _head(self) -> tuple[int, UUID] | None:
        result = await self._session.execute(
            select(CallQueueEntry.seq, CallQueueEntry.attempt_id)
            .order_by(CallQueueEntry.seq)
            .limit(1)
        )
        row = result.first()
        return (row.seq, row.attempt_id) if row is not None else None

    async def _load_attempt(self, attempt_id: UUID) -> CallAttempt | None:
        result = await self._session.execute(
            select(CallAttempt)
            .where(CallAttempt.id == attempt_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _enqueue_precondition(self, attempt_id: UUID) -> PreconditionFailedError:
        attempt = await self._load_attempt(attempt_id)
        details = {"attempt_id": str(attempt_id)}
        if attempt is None:
            return PreconditionFailedError(message="Call attempt does not exist", details=details)
        if attempt.status != CallAttemptStatus.PENDING:
            details["status"] = attempt.status.value
            return PreconditionFailedError(message="Only PENDING attempts can be queued", details=details)
        return PreconditionFailedError(message="Call attempt is already queued", details=details)
