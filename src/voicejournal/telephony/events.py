"""
Status callback handling.

Routes parsed provider events to the live call orchestrator and, for calls
that never connected, to the retry scheduler.
"""

from collections import OrderedDict
from collections.abc import Callable
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from voicejournal.calls.retry import RetryScheduler
from voicejournal.orchestration.orchestrator import CallEndKind, CallEndOutcome
from voicejournal.shared.logging import get_logger
from voicejournal.telephony.interface import TelephonyEvent, TelephonyEventType

logger = get_logger(__name__)

# Statuses the provider only reports for calls nobody picked up.
_NEVER_ANSWERED = frozenset(
    {TelephonyEventType.NO_ANSWER, TelephonyEventType.BUSY, TelephonyEventType.FAILED}
)


class CallLifecycleProtocol(Protocol):
    """The parts of the orchestrator the handler drives."""

    def mark_connected(self, provider_call_id: str) -> bool: ...

    async def handle_call_ended(self, provider_call_id: str, reason: str) -> CallEndOutcome: ...


class TelephonyEventHandler:
    """Handler for provider status callbacks.

    Providers may deliver the same callback more than once; each
    ``provider_call_id``/event type pair is processed at most once. The
    most recent ``max_tracked_events`` pairs are remembered.
    """

    def __init__(
        self,
        calls: CallLifecycleProtocol,
        session_scope: Callable,
        retry_factory: Callable[[AsyncSession], RetryScheduler],
        max_tracked_events: int = 10_000,
    ) -> None:
        self._calls = calls
        self._session_scope = session_scope
        self._retry_factory = retry_factory
        self._max_tracked_events = max_tracked_events
        self._processed_events: OrderedDict[str, None] = OrderedDict()

    @property
    def tracked_event_count(self) -> int:
        return len(self._processed_events)

    async def handle_event(self, event: TelephonyEvent) -> bool:
        """Handle one status callback.

        Returns:
            True if the event was processed, False if it was a duplicate.
        """
        idempotency_key = f"{event.provider_call_id}:{event.event_type.value}"
        if idempotency_key in self._processed_events:
            self._processed_events.move_to_end(idempotency_key)
            logger.info(
                "Duplicate event skipped",
                extra={"provider_call_id": event.provider_call_id, "event_type": event.event_type.value},
            )
            return False
        self._remember(idempotency_key)

        logger.info(
            "Processing telephony event",
            extra={
                "provider_call_id": event.provider_call_id,
                "event_type": event.event_type.value,
                "status": event.status.value,
            },
        )

        match event.event_type:
            case TelephonyEventType.INITIATED | TelephonyEventType.RINGING:
                pass
            case TelephonyEventType.CONNECTED:
                self._calls.mark_connected(event.provider_call_id)
            case TelephonyEventType.COMPLETED:
                await self._handle_ended(event, "user hung up")
            case TelephonyEventType.NO_ANSWER:
                await self._handle_ended(event, "no answer")
            case TelephonyEventType.BUSY:
                await self._handle_ended(event, "busy")
            case TelephonyEventType.FAILED:
                await self._handle_ended(event, f"provider error: {event.error_message or event.error_code or 'unknown'}")

        return True

    def _remember(self, key: str) -> None:
        self._processed_events[key] = None
        while len(self._processed_events) > self._max_tracked_events:
            self._processed_events.popitem(last=False)

    async def _handle_ended(self, event: TelephonyEvent, reason: str) -> None:
        pid = event.provider_call_id
        outcome = await self._calls.handle_call_ended(pid, reason)

        match outcome.kind:
            case CallEndKind.DISCONNECTED:
                return
            case CallEndKind.UNANSWERED:
                attempt_id = outcome.attempt_id
            case CallEndKind.UNKNOWN:
                # No live record: only a status that proves nobody answered
                # may fall back to the attempt id echoed in the callback.
                attempt_id = event.attempt_id if event.event_type in _NEVER_ANSWERED else None

        if attempt_id is None:
            logger.warning(
                "Ended call has no attempt to retry",
                extra={"provider_call_id": pid, "outcome": outcome.kind.value},
            )
            return

        async with self._session_scope() as session:
            decision = await self._retry_factory(session).handle_dispatch_failure(attempt_id, reason)
        if decision.ok:
            logger.info(
                "Unanswered call routed to retry",
                extra={"attempt_id": str(attempt_id), "action": decision.unwrap().action.value},
            )
        else:
            logger.warning(
                "Retry handling failed",
                extra={"attempt_id": str(attempt_id), "error": str(decision.error)},
            )
