"""
Retry policy for failed call dispatches.

The queue is mechanical and never gives up on its own. This layer decides,
per failure, whether an attempt is retried after a backoff delay or moved to
the FAILED terminal state.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from voicejournal.calls.models import CallAttempt, CallAttemptStatus
from voicejournal.calls.repository import CallAttemptRegistry, CallQueue
from voicejournal.config import Settings
from voicejournal.shared.database import utcnow
from voicejournal.shared.exceptions import InvalidStateError, NotFoundError, OperationResult
from voicejournal.shared.logging import get_logger

logger = get_logger(__name__)


class BackoffPolicy(Protocol):
    """Delay before retry number ``retry_index`` (0 for the first retry)."""

    def delay(self, retry_index: int) -> timedelta: ...


@dataclass(frozen=True)
class FixedBackoff:
    seconds: float = 300.0

    def delay(self, retry_index: int) -> timedelta:
        return timedelta(seconds=self.seconds)


@dataclass(frozen=True)
class ExponentialBackoff:
    base_seconds: float = 60.0
    factor: float = 2.0
    max_seconds: float = 3600.0

    def delay(self, retry_index: int) -> timedelta:
        seconds = self.base_seconds * (self.factor ** max(retry_index, 0))
        return timedelta(seconds=min(seconds, self.max_seconds))


def backoff_from_settings(settings: Settings) -> BackoffPolicy:
    if settings.backoff_strategy == "exponential":
        return ExponentialBackoff(
            base_seconds=settings.backoff_base_seconds,
            factor=settings.backoff_factor,
            max_seconds=settings.backoff_max_seconds,
        )
    return FixedBackoff(seconds=settings.backoff_base_seconds)


class RetryAction(str, Enum):
    REQUEUED = "requeued"
    SCHEDULED = "scheduled"
    ALREADY_QUEUED = "already_queued"
    GAVE_UP = "gave_up"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    attempt: CallAttempt
    retry_at: datetime | None = None


class RetryScheduler:
    """Applies the retry bound and backoff to failed dispatches.

    An attempt dispatched ``attempt_count`` times has used
    ``attempt_count - 1`` retries. With ``max_retries = N`` the attempt is
    dispatched at most N + 1 times.
    """

    def __init__(
        self,
        session: AsyncSession,
        max_retries: int = 3,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = CallAttemptRegistry(session)
        self._queue = CallQueue(session)
        self._max_retries = max_retries
        self._backoff = backoff or FixedBackoff()
        self._clock = clock

    @classmethod
    def from_settings(cls, session: AsyncSession, settings: Settings) -> "RetryScheduler":
        return cls(
            session,
            max_retries=settings.max_retries,
            backoff=backoff_from_settings(settings),
        )

    async def handle_dispatch_failure(
        self,
        attempt_id: UUID,
        reason: str,
    ) -> OperationResult[RetryDecision]:
        """Retry or give up on an attempt whose dispatch just failed.

        Args:
            attempt_id: Attempt that failed (provider error, no-answer, busy).
            reason: Human readable failure reason, kept on FAILED attempts.

        Returns:
            The decision taken, or NotFound / InvalidState errors.
        """
        attempt = await self._registry.get_by_id(attempt_id)
        if attempt is None:
            return OperationResult.failure(
                NotFoundError(message="Call attempt not found", details={"attempt_id": str(attempt_id)})
            )
        if attempt.status in (CallAttemptStatus.COMPLETED, CallAttemptStatus.FAILED):
            return OperationResult.failure(
                InvalidStateError(
                    message="Attempt is already terminal",
                    details={"attempt_id": str(attempt_id), "status": attempt.status.value},
                )
            )

        retries_used = max(attempt.attempt_count - 1, 0)
        if retries_used >= self._max_retries:
            failed = await self._registry.mark_failed(
                attempt_id,
                f"{reason} (gave up after {attempt.attempt_count} attempts)",
            )
            if not failed.ok:
                return OperationResult.failure(failed.error)  # type: ignore[arg-type]
            return OperationResult.success(RetryDecision(RetryAction.GAVE_UP, failed.unwrap()))

        if attempt.status != CallAttemptStatus.PENDING:
            reset = await self._registry.reset_to_pending(attempt_id)
            if not reset.ok:
                return OperationResult.failure(reset.error)  # type: ignore[arg-type]

        if await self._queue.contains(attempt_id):
            current = await self._registry.get_by_id(attempt_id)
            return OperationResult.success(RetryDecision(RetryAction.ALREADY_QUEUED, current))  # type: ignore[arg-type]

        delay = self._backoff.delay(retries_used)
        if delay <= timedelta(0):
            enqueued = await self._queue.enqueue(attempt_id)
            if not enqueued.ok:
                return OperationResult.failure(enqueued.error)  # type: ignore[arg-type]
            logger.info(
                "Retry enqueued immediately",
                extra={"attempt_id": str(attempt_id), "reason": reason, "retries_used": retries_used},
            )
            return OperationResult.success(RetryDecision(RetryAction.REQUEUED, enqueued.unwrap()))

        retry_at = self._clock() + delay
        scheduled = await self._registry.schedule_retry(attempt_id, retry_at)
        if not scheduled.ok:
            return OperationResult.failure(scheduled.error)  # type: ignore[arg-type]

        logger.info(
            "Retry scheduled",
            extra={
                "attempt_id": str(attempt_id),
                "reason": reason,
                "retries_used": retries_used,
                "retry_at": retry_at.isoformat(),
            },
        )
        return OperationResult.success(RetryDecision(RetryAction.SCHEDULED, scheduled.unwrap(), retry_at))

    async def give_up(self, attempt_id: UUID, reason: str) -> OperationResult[RetryDecision]:
        """Fail an attempt immediately, regardless of retries left."""
        failed = await self._registry.mark_failed(attempt_id, reason)
        if not failed.ok:
            return OperationResult.failure(failed.error)  # type: ignore[arg-type]
        logger.warning("Attempt failed permanently", extra={"attempt_id": str(attempt_id), "reason": reason})
        return OperationResult.success(RetryDecision(RetryAction.GAVE_UP, failed.unwrap()))

    async def requeue_due(self, now: datetime | None = None) -> int:
        """Enqueue every attempt whose backoff has elapsed. Returns the count."""
        now = now or self._clock()
        requeued = 0
        for attempt in await self._registry.due_retries(now):
            result = await self._queue.enqueue(attempt.id)
            if result.ok:
                requeued += 1
            else:
                logger.warning(
                    "Due retry could not be enqueued",
                    extra={"attempt_id": str(attempt.id), "error": str(result.error)},
                )
        return requeued
