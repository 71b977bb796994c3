"""Tests for status callback routing."""

from datetime import datetime, timezone
from uuid import UUID

import pytest

from voicejournal.calls.models import CallAttemptStatus
from voicejournal.calls.repository import CallAttemptRegistry, CallQueue
from voicejournal.calls.retry import FixedBackoff, RetryScheduler
from voicejournal.orchestration.orchestrator import CallEndKind, CallEndOutcome
from voicejournal.shared.database import DatabaseManager
from voicejournal.telephony.events import TelephonyEventHandler
from voicejournal.telephony.interface import CallStatus, TelephonyEvent, TelephonyEventType

from conftest import create_pending_attempt


class RecordingCalls:
    def __init__(self, outcome: CallEndOutcome | None = None) -> None:
        self.outcome = outcome or CallEndOutcome(CallEndKind.UNKNOWN)
        self.connected: list[str] = []
        self.ended: list[tuple[str, str]] = []

    def mark_connected(self, provider_call_id: str) -> bool:
        self.connected.append(provider_call_id)
        return True

    async def handle_call_ended(self, provider_call_id: str, reason: str) -> CallEndOutcome:
        self.ended.append((provider_call_id, reason))
        return self.outcome


def event(
    event_type: TelephonyEventType,
    attempt_id: UUID | None = None,
    provider_call_id: str = "CA1",
    **kwargs,
) -> TelephonyEvent:
    return TelephonyEvent(
        event_type=event_type,
        provider_call_id=provider_call_id,
        status=CallStatus.IN_PROGRESS,
        timestamp=datetime.now(timezone.utc),
        attempt_id=attempt_id,
        **kwargs,
    )


def handler_for(db: DatabaseManager, calls: RecordingCalls, **kwargs) -> TelephonyEventHandler:
    return TelephonyEventHandler(calls, db.session, lambda s: RetryScheduler(s, backoff=FixedBackoff(0)), **kwargs)


async def queued(db: DatabaseManager) -> list[UUID]:
    async with db.session() as session:
        return await CallQueue(session).contents()


class TestTelephonyEventHandler:
    async def test_connected_then_completed_is_a_disconnect(self, db: DatabaseManager) -> None:
        attempt_id = await create_pending_attempt(db)
        calls = RecordingCalls(CallEndOutcome(CallEndKind.DISCONNECTED))
        handler = handler_for(db, calls)

        await handler.handle_event(event(TelephonyEventType.RINGING))
        await handler.handle_event(event(TelephonyEventType.CONNECTED))
        await handler.handle_event(event(TelephonyEventType.COMPLETED, attempt_id=attempt_id))

        assert calls.connected == ["CA1"]
        assert calls.ended == [("CA1", "user hung up")]
        assert await queued(db) == []

    async def test_completed_before_connected_callback_is_not_retried(self, db: DatabaseManager) -> None:
        attempt_id = await create_pending_attempt(db)
        calls = RecordingCalls(CallEndOutcome(CallEndKind.DISCONNECTED))

        await handler_for(db, calls).handle_event(event(TelephonyEventType.COMPLETED, attempt_id=attempt_id))

        assert calls.connected == []
        assert calls.ended == [("CA1", "user hung up")]
        assert await queued(db) == []

    async def test_duplicate_events_are_skipped(self, db: DatabaseManager) -> None:
        calls = RecordingCalls(CallEndOutcome(CallEndKind.DISCONNECTED))
        handler = handler_for(db, calls)
        await handler.handle_event(event(TelephonyEventType.CONNECTED))

        assert await handler.handle_event(event(TelephonyEventType.COMPLETED))
        assert not await handler.handle_event(event(TelephonyEventType.COMPLETED))
        assert len(calls.ended) == 1

    async def test_tracked_events_are_bounded(self, db: DatabaseManager) -> None:
        handler = handler_for(db, RecordingCalls(), max_tracked_events=2)

        for pid in ("CA1", "CA2", "CA3"):
            await handler.handle_event(event(TelephonyEventType.RINGING, provider_call_id=pid))

        assert handler.tracked_event_count == 2
        assert not await handler.handle_event(event(TelephonyEventType.RINGING, provider_call_id="CA3"))

    @pytest.mark.parametrize(
        "event_type,reason",
        [
            (TelephonyEventType.NO_ANSWER, "no answer"),
            (TelephonyEventType.BUSY, "busy"),
        ],
    )
    async def test_unanswered_call_goes_to_retry(
        self, db: DatabaseManager, event_type: TelephonyEventType, reason: str
    ) -> None:
        attempt_id = await create_pending_attempt(db)
        calls = RecordingCalls(CallEndOutcome(CallEndKind.UNANSWERED, attempt_id))

        await handler_for(db, calls).handle_event(event(event_type))

        assert calls.ended == [("CA1", reason)]
        assert await queued(db) == [attempt_id]

    async def test_failed_unknown_call_uses_callback_attempt_id(self, db: DatabaseManager) -> None:
        attempt_id = await create_pending_attempt(db)
        calls = RecordingCalls()

        await handler_for(db, calls).handle_event(
            event(TelephonyEventType.FAILED, attempt_id=attempt_id, error_message="carrier rejected")
        )

        assert calls.ended == [("CA1", "provider error: carrier rejected")]
        async with db.session() as session:
            attempt = await CallAttemptRegistry(session).get_by_id(attempt_id)
            assert attempt.status == CallAttemptStatus.PENDING
            assert await CallQueue(session).contains(attempt_id)

    async def test_completed_unknown_call_is_not_retried(self, db: DatabaseManager) -> None:
        attempt_id = await create_pending_attempt(db)

        assert await handler_for(db, RecordingCalls()).handle_event(
            event(TelephonyEventType.COMPLETED, attempt_id=attempt_id)
        )
        assert await queued(db) == []

    async def test_ended_call_without_attempt_is_ignored(self, db: DatabaseManager) -> None:
        calls = RecordingCalls()

        assert await handler_for(db, calls).handle_event(event(TelephonyEventType.NO_ANSWER))
        assert await queued(db) == []
