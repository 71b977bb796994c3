"""
Window scheduler.

Every tick: enqueue retries whose backoff elapsed, then for each user whose
resolved call window for today contains "now", create today's SCHEDULED
attempt (if none exists yet) and put it on the queue.
"""

import asyncio
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from voicejournal.calls.models import CallSource
from voicejournal.calls.repository import CallAttemptRegistry, CallQueue
from voicejournal.calls.retry import RetryScheduler
from voicejournal.config import Settings
from voicejournal.shared.database import utcnow
from voicejournal.shared.exceptions import AlreadyExistsError
from voicejournal.shared.logging import get_logger
from voicejournal.windows.repository import CallWindowRepository
from voicejournal.windows.resolver import CallWindowResolver

logger = get_logger(__name__)


@dataclass
class CallSchedulerConfig:
    """Configuration for the window scheduler."""

    interval_seconds: int = 300
    timezone: str = "UTC"

    @classmethod
    def from_settings(cls, settings: Settings) -> "CallSchedulerConfig":
        return cls(
            interval_seconds=settings.scheduler_interval_seconds,
            timezone=settings.scheduler_timezone,
        )


class CallScheduler:
    """Creates and enqueues today's attempts for users inside a call window."""

    def __init__(
        self,
        session_scope: Callable[[], AbstractAsyncContextManager[AsyncSession]],
        retry_factory: Callable[[AsyncSession], RetryScheduler],
        config: CallSchedulerConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_scope = session_scope
        self._retry_factory = retry_factory
        self._config = config or CallSchedulerConfig()
        self._tz = ZoneInfo(self._config.timezone)
        self._clock = clock

        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("Call scheduler already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Call scheduler started", extra={"interval_seconds": self._config.interval_seconds})

    async def stop(self) -> None:
        """Stop the scheduler background task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Call scheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduler iteration failed")
            await asyncio.sleep(self._config.interval_seconds)

    async def run_once(self) -> int:
        """Run a single scheduler iteration.

        Returns:
            Number of attempts put on the queue (retries included).
        """
        now = self._clock()
        async with self._session_scope() as session:
            enqueued = await self._retry_factory(session).requeue_due(now)
            users = await CallWindowRepository(session).list_users_with_windows()

        local_now = now.astimezone(self._tz)
        today, moment = local_now.date(), local_now.time().replace(tzinfo=None)

        for user_id in users:
            try:
                if await self._schedule_user(user_id, today, moment):
                    enqueued += 1
            except Exception:
                logger.exception("Scheduling failed for user", extra={"user_id": user_id})

        logger.info(
            "Scheduler iteration finished",
            extra={"users": len(users), "enqueued": enqueued, "date": today.isoformat()},
        )
        return enqueued

    async def _schedule_user(self, user_id: str, today, moment) -> bool:
        async with self._session_scope() as session:
            windows = await CallWindowResolver(CallWindowRepository(session)).resolve_windows(user_id, today)
            if not windows.contains(moment):
                return False

            registry = CallAttemptRegistry(session)
            if await registry.get(user_id, today) is not None:
                return False

            created = await registry.create_attempt(user_id, today, source=CallSource.SCHEDULED)
            if not created.ok:
                if isinstance(created.error, AlreadyExistsError):
                    return False
                logger.warning("Attempt creation failed", extra={"user_id": user_id, "error": str(created.error)})
                return False

            attempt = created.unwrap()
            enqueued = await CallQueue(session).enqueue(attempt.id)
            if not enqueued.ok:
                logger.warning(
                    "New attempt could not be enqueued",
                    extra={"attempt_id": str(attempt.id), "error": str(enqueued.error)},
                )
                return False

        logger.info(
            "Scheduled reflection call",
            extra={"user_id": user_id, "attempt_id": str(attempt.id), "window_mode": windows.mode.value},
        )
        return True
