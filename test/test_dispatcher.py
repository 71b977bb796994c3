"""Tests for the queue dispatcher."""

from uuid import UUID

from voicejournal.calls.dispatcher import CallDispatcher
from voicejournal.calls.models import CallAttemptStatus
from voicejournal.calls.repository import CallAttemptRegistry, CallQueue
from voicejournal.calls.retry import FixedBackoff, RetryScheduler
from voicejournal.shared.database import DatabaseManager
from voicejournal.shared.exceptions import FatalError, TransientError

from conftest import TODAY, create_pending_attempt


class StubPlacer:
    def __init__(self, errors: dict[UUID, Exception] | None = None) -> None:
        self.errors = errors or {}
        self.placed: list[UUID] = []

    @property
    def active_count(self) -> int:
        return len(self.placed)

    async def place_call(self, attempt_id: UUID) -> object:
        if attempt_id in self.errors:
            raise self.errors[attempt_id]
        self.placed.append(attempt_id)
        return attempt_id


def dispatcher_for(db: DatabaseManager, placer: StubPlacer, max_concurrent_calls: int = 10) -> CallDispatcher:
    return CallDispatcher(
        db.session,
        placer,
        lambda s: RetryScheduler(s, max_retries=3, backoff=FixedBackoff(600)),
        max_concurrent_calls=max_concurrent_calls,
    )


class TestCallDispatcher:
    async def test_places_queued_attempts_in_order(self, db: DatabaseManager) -> None:
        first = await create_pending_attempt(db, "alice", enqueue=True)
        second = await create_pending_attempt(db, "bob", enqueue=True)
        placer = StubPlacer()

        report = await dispatcher_for(db, placer).dispatch_once()

        assert report.placed == 2
        assert placer.placed == [first, second]

    async def test_respects_concurrency_limit(self, db: DatabaseManager) -> None:
        for user_id in ("alice", "bob", "carol"):
            await create_pending_attempt(db, user_id, enqueue=True)
        placer = StubPlacer()

        report = await dispatcher_for(db, placer, max_concurrent_calls=2).dispatch_once()

        assert report.placed == 2
        async with db.session() as session:
            assert await CallQueue(session).length() == 1

    async def test_transient_error_goes_to_retry(self, db: DatabaseManager) -> None:
        attempt_id = await create_pending_attempt(db, enqueue=True)
        placer = StubPlacer({attempt_id: TransientError(message="carrier timeout")})

        report = await dispatcher_for(db, placer).dispatch_once()

        assert report.retried == 1
        async with db.session() as session:
            attempt = await CallAttemptRegistry(session).get_by_id(attempt_id)
            assert attempt.status == CallAttemptStatus.PENDING
            assert attempt.next_attempt_at is not None
            assert not await CallQueue(session).contains(attempt_id)

    async def test_fatal_error_fails_attempt(self, db: DatabaseManager) -> None:
        attempt_id = await create_pending_attempt(db, enqueue=True)
        placer = StubPlacer({attempt_id: FatalError(message="invalid number")})

        report = await dispatcher_for(db, placer).dispatch_once()

        assert report.failed == 1
        async with db.session() as session:
            attempt = await CallAttemptRegistry(session).get("user-1", TODAY)
            assert attempt.status == CallAttemptStatus.FAILED
            assert attempt.failure_reason == "invalid number"

    async def test_skips_attempts_no_longer_pending(self, db: DatabaseManager) -> None:
        await create_pending_attempt(db, enqueue=True)
        async with db.session() as session:
            (await CallAttemptRegistry(session).mark_completed("user-1", TODAY, "entry-1")).unwrap()
        placer = StubPlacer()

        report = await dispatcher_for(db, placer).dispatch_once()

        assert report.placed == 0
        assert placer.placed == []

    async def test_empty_queue(self, db: DatabaseManager) -> None:
        report = await dispatcher_for(db, StubPlacer()).dispatch_once()

        assert (report.placed, report.retried, report.failed, report.skipped) == (0, 0, 0, 0)
