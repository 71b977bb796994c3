"""
Mock telephony provider adapter for tests and local runs.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from voicejournal.shared.logging import get_logger
from voicejournal.telephony.interface import (
    CallPlacementError,
    CallStatus,
    PlaceCallRequest,
    PlaceCallResponse,
    StatusCallbackParseError,
    TelephonyEvent,
    TelephonyEventType,
    TelephonyProvider,
)

logger = get_logger(__name__)


class MockTelephonyAdapter(TelephonyProvider):
    """Records every command instead of talking to a carrier."""

    def __init__(self) -> None:
        self._calls: list[PlaceCallRequest] = []
        self._spoken: list[tuple[str, str]] = []
        self._hangups: list[str] = []
        self._next_call_id: int = 1
        self._should_fail: bool = False
        self._fail_error: str = "Mock failure"
        self._fail_code: str = "MOCK_ERROR"
        self._fail_retryable: bool = True

    def reset(self) -> None:
        self._calls.clear()
        self._spoken.clear()
        self._hangups.clear()
        self._next_call_id = 1
        self.configure_failure(should_fail=False)

    def configure_failure(
        self,
        should_fail: bool = True,
        error_message: str = "Mock failure",
        error_code: str = "MOCK_ERROR",
        retryable: bool = True,
    ) -> None:
        self._should_fail = should_fail
        self._fail_error = error_message
        self._fail_code = error_code
        self._fail_retryable = retryable

    @property
    def calls(self) -> list[PlaceCallRequest]:
        return self._calls.copy()

    @property
    def spoken(self) -> list[tuple[str, str]]:
        return self._spoken.copy()

    @property
    def hangups(self) -> list[str]:
        return self._hangups.copy()

    def get_last_call(self) -> PlaceCallRequest | None:
        return self._calls[-1] if self._calls else None

    def place_call_sync(self, request: PlaceCallRequest) -> PlaceCallResponse:
        logger.info(
            "Mock: placing call",
            extra={"to": request.to, "attempt_id": str(request.attempt_id)},
        )

        if self._should_fail:
            raise CallPlacementError(
                message=self._fail_error,
                error_code=self._fail_code,
                retryable=self._fail_retryable,
            )

        self._calls.append(request)
        provider_call_id = f"MOCK_CALL_{self._next_call_id:06d}"
        self._next_call_id += 1

        return PlaceCallResponse(
            provider_call_id=provider_call_id,
            status=CallStatus.QUEUED,
            created_at=datetime.now(timezone.utc),
            raw_response={"mock": True, "provider_call_id": provider_call_id},
        )

    def play_text_sync(self, provider_call_id: str, text: str) -> None:
        self._spoken.append((provider_call_id, text))

    def hangup_sync(self, provider_call_id: str) -> None:
        self._hangups.append(provider_call_id)

    def parse_status_callback(self, payload: dict[str, Any]) -> TelephonyEvent:
        """Accepts ``{"provider_call_id", "event_type"}`` with optional extras."""
        if "provider_call_id" not in payload:
            raise StatusCallbackParseError(
                message="Missing provider_call_id in payload",
                error_code="MISSING_PROVIDER_CALL_ID",
                provider_response=payload,
            )
        try:
            event_type = TelephonyEventType(payload.get("event_type"))
        except ValueError as e:
            raise StatusCallbackParseError(
                message=f"Invalid event_type: {payload.get('event_type')}",
                error_code="INVALID_EVENT_TYPE",
                provider_response=payload,
            ) from e

        status_by_event = {
            TelephonyEventType.INITIATED: CallStatus.INITIATED,
            TelephonyEventType.RINGING: CallStatus.RINGING,
            TelephonyEventType.CONNECTED: CallStatus.IN_PROGRESS,
            TelephonyEventType.COMPLETED: CallStatus.COMPLETED,
            TelephonyEventType.NO_ANSWER: CallStatus.NO_ANSWER,
            TelephonyEventType.BUSY: CallStatus.BUSY,
            TelephonyEventType.FAILED: CallStatus.FAILED,
        }

        attempt_id = None
        if payload.get("attempt_id"):
            try:
                attempt_id = UUID(str(payload["attempt_id"]))
            except ValueError:
                pass

        return TelephonyEvent(
            event_type=event_type,
            provider_call_id=str(payload["provider_call_id"]),
            status=status_by_event[event_type],
            timestamp=datetime.now(timezone.utc),
            attempt_id=attempt_id,
            error_code=payload.get("error_code"),
            error_message=payload.get("error_message"),
            raw_payload=payload,
        )

    def validate_signature(self, payload: bytes, signature: str, url: str) -> bool:
        return True
