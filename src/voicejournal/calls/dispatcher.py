"""
Call dispatcher: drains the queue into live calls.
"""

import asyncio
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from voicejournal.calls.models import CallAttemptStatus
from voicejournal.calls.repository import CallAttemptRegistry, CallQueue
from voicejournal.calls.retry import RetryScheduler
from voicejournal.shared.exceptions import FatalError, TransientError
from voicejournal.shared.logging import get_logger

logger = get_logger(__name__)


class CallPlacerProtocol(Protocol):
    @property
    def active_count(self) -> int: ...

    async def place_call(self, attempt_id: UUID) -> object: ...


@dataclass
class DispatchReport:
    placed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0


class CallDispatcher:
    """Places calls for queued attempts up to the concurrency limit.

    Placement errors are routed to the retry scheduler: transient ones count
    against the retry bound, fatal ones fail the attempt at once.
    """

    def __init__(
        self,
        session_scope: Callable[[], AbstractAsyncContextManager[AsyncSession]],
        placer: CallPlacerProtocol,
        retry_factory: Callable[[AsyncSession], RetryScheduler],
        max_concurrent_calls: int = 10,
        interval_seconds: int = 5,
    ) -> None:
        self._session_scope = session_scope
        self._placer = placer
        self._retry_factory = retry_factory
        self._max_concurrent_calls = max_concurrent_calls
        self._interval_seconds = interval_seconds

        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._running:
            logger.warning("Call dispatcher already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Call dispatcher started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Call dispatcher stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.dispatch_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Dispatch iteration failed")
            await asyncio.sleep(self._interval_seconds)

    async def dispatch_once(self) -> DispatchReport:
        """Dequeue and place calls until the queue is empty or capacity is hit."""
        report = DispatchReport()
        while self._placer.active_count < self._max_concurrent_calls:
            async with self._session_scope() as session:
                attempt_id = await CallQueue(session).dequeue()
                if attempt_id is None:
                    break
                attempt = await CallAttemptRegistry(session).get_by_id(attempt_id)
                dispatchable = attempt is not None and attempt.status == CallAttemptStatus.PENDING

            if not dispatchable:
                report.skipped += 1
                logger.info("Skipping non-dispatchable attempt", extra={"attempt_id": str(attempt_id)})
                continue

            try:
                await self._placer.place_call(attempt_id)
            except TransientError as e:
                await self._route_failure(attempt_id, str(e), fatal=False)
                report.retried += 1
            except FatalError as e:
                await self._route_failure(attempt_id, str(e), fatal=True)
                report.failed += 1
            else:
                report.placed += 1

        if report.placed or report.retried or report.failed:
            logger.info(
                "Dispatch iteration finished",
                extra={
                    "placed": report.placed,
                    "retried": report.retried,
                    "failed": report.failed,
                    "skipped": report.skipped,
                },
            )
        return report

    async def _route_failure(self, attempt_id: UUID, reason: str, fatal: bool) -> None:
        async with self._session_scope() as session:
            retry = self._retry_factory(session)
            if fatal:
                decision = await retry.give_up(attempt_id, reason)
            else:
                decision = await retry.handle_dispatch_failure(attempt_id, reason)
        if not decision.ok:
            logger.warning(
                "Dispatch failure could not be recorded",
                extra={"attempt_id": str(attempt_id), "error": str(decision.error)},
            )
