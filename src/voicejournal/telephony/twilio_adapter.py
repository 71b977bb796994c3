"""
Twilio telephony provider adapter.

Calls are placed with a TwiML ``<Connect><Stream>`` so the answered call
opens the duplex media stream the orchestrator listens on.
"""

import hashlib
import hmac
from base64 import b64encode
from datetime import datetime, timezone
from typing import Any
from urllib.parse import parse_qs, urlencode
from uuid import UUID
from xml.sax.saxutils import escape, quoteattr

import httpx

from voicejournal.shared.logging import get_logger
from voicejournal.telephony.config import TelephonyConfig, get_telephony_config
from voicejournal.telephony.interface import (
    CallPlacementError,
    CallStatus,
    PlaceCallRequest,
    PlaceCallResponse,
    StatusCallbackParseError,
    TelephonyEvent,
    TelephonyEventType,
    TelephonyProvider,
    TelephonyProviderError,
)

logger = get_logger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

TWILIO_STATUS_MAP: dict[str, CallStatus] = {
    "queued": CallStatus.QUEUED,
    "initiated": CallStatus.INITIATED,
    "ringing": CallStatus.RINGING,
    "in-progress": CallStatus.IN_PROGRESS,
    "completed": CallStatus.COMPLETED,
    "busy": CallStatus.BUSY,
    "no-answer": CallStatus.NO_ANSWER,
    "failed": CallStatus.FAILED,
    "canceled": CallStatus.CANCELED,
}

TWILIO_EVENT_MAP: dict[str, TelephonyEventType] = {
    "initiated": TelephonyEventType.INITIATED,
    "ringing": TelephonyEventType.RINGING,
    "in-progress": TelephonyEventType.CONNECTED,
    "completed": TelephonyEventType.COMPLETED,
    "failed": TelephonyEventType.FAILED,
    "canceled": TelephonyEventType.FAILED,
    "no-answer": TelephonyEventType.NO_ANSWER,
    "busy": TelephonyEventType.BUSY,
}

# 4xx from Twilio on call creation means a bad request (invalid number,
# unverified caller id); retrying will not help.
NON_RETRYABLE_STATUS = range(400, 429)


class TwilioAdapter(TelephonyProvider):
    """Twilio telephony provider adapter over the REST API."""

    def __init__(
        self,
        config: TelephonyConfig | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._config = config or get_telephony_config()
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=httpx.Timeout(self._config.http_timeout_seconds))
        return self._http_client

    def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def _get_auth(self) -> tuple[str, str]:
        return (self._config.twilio_account_sid, self._config.twilio_auth_token)

    def _get_api_url(self, endpoint: str) -> str:
        return f"{TWILIO_API_BASE}/Accounts/{self._config.twilio_account_sid}{endpoint}"

    def _stream_twiml(self, say: str | None = None) -> str:
        stream_url = quoteattr(self._config.get_media_stream_url())
        say_xml = f"<Say>{escape(say)}</Say>" if say else ""
        return f"<Response>{say_xml}<Connect><Stream url={stream_url}/></Connect></Response>"

    def place_call_sync(self, request: PlaceCallRequest) -> PlaceCallResponse:
        """Place an outbound call via Twilio."""
        metadata = {
            "attempt_id": str(request.attempt_id),
            "session_id": str(request.session_id),
            **request.metadata,
        }
        payload = {
            "To": request.to,
            "From": request.from_number,
            "Twiml": self._stream_twiml(),
            "StatusCallback": f"{request.callback_url}?{urlencode(metadata)}",
            "StatusCallbackEvent": ["initiated", "ringing", "answered", "completed"],
            "StatusCallbackMethod": "POST",
            "Timeout": self._config.call_timeout_seconds,
        }

        logger.info(
            "Placing Twilio call",
            extra={"to": request.to, "attempt_id": str(request.attempt_id)},
        )

        try:
            response = self._get_client().post(
                self._get_api_url("/Calls.json"),
                data=payload,
                auth=self._get_auth(),
            )
        except httpx.HTTPError as e:
            logger.exception(
                "HTTP error during Twilio call placement",
                extra={"attempt_id": str(request.attempt_id)},
            )
            raise CallPlacementError(message=f"HTTP error: {e!s}", error_code="HTTP_ERROR") from e

        if response.status_code >= 400:
            error_data = response.json() if response.content else {}
            logger.error(
                "Twilio call placement failed",
                extra={
                    "status_code": response.status_code,
                    "error": error_data,
                    "attempt_id": str(request.attempt_id),
                },
            )
            raise CallPlacementError(
                message=error_data.get("message", "Call placement failed"),
                error_code=str(error_data.get("code", response.status_code)),
                provider_response=error_data,
                retryable=response.status_code not in NON_RETRYABLE_STATUS,
            )

        data = response.json()
        created_at = datetime.now(timezone.utc)
        if data.get("date_created"):
            try:
                created_at = datetime.fromisoformat(data["date_created"].replace("Z", "+00:00"))
            except ValueError:
                pass

        return PlaceCallResponse(
            provider_call_id=data["sid"],
            status=TWILIO_STATUS_MAP.get(data.get("status", ""), CallStatus.QUEUED),
            created_at=created_at,
            raw_response=data,
        )

    def play_text_sync(self, provider_call_id: str, text: str) -> None:
        """Speak text, then reconnect the media stream."""
        self._update_call(provider_call_id, {"Twiml": self._stream_twiml(say=text)})

    def hangup_sync(self, provider_call_id: str) -> None:
        self._update_call(provider_call_id, {"Status": "completed"})

    def _update_call(self, provider_call_id: str, data: dict[str, Any]) -> None:
        try:
            response = self._get_client().post(
                self._get_api_url(f"/Calls/{provider_call_id}.json"),
                data=data,
                auth=self._get_auth(),
            )
        except httpx.HTTPError as e:
            raise TelephonyProviderError(message=f"HTTP error: {e!s}", error_code="HTTP_ERROR") from e

        if response.status_code >= 400:
            error_data = response.json() if response.content else {}
            logger.error(
                "Twilio call update failed",
                extra={
                    "status_code": response.status_code,
                    "provider_call_id": provider_call_id,
                    "error": error_data,
                },
            )
            raise TelephonyProviderError(
                message=error_data.get("message", "Call update failed"),
                error_code=str(error_data.get("code", response.status_code)),
                provider_response=error_data,
                retryable=False,
            )

    def parse_status_callback(self, payload: dict[str, Any]) -> TelephonyEvent:
        call_sid = payload.get("CallSid")
        call_status = str(payload.get("CallStatus", "")).lower()

        if not call_sid:
            raise StatusCallbackParseError(
                message="Missing CallSid in status callback",
                error_code="MISSING_CALL_SID",
                provider_response=payload,
            )
        if not call_status:
            raise StatusCallbackParseError(
                message="Missing CallStatus in status callback",
                error_code="MISSING_CALL_STATUS",
                provider_response=payload,
            )

        event_type = TWILIO_EVENT_MAP.get(call_status)
        if event_type is None:
            raise StatusCallbackParseError(
                message=f"Unknown CallStatus: {call_status}",
                error_code="UNKNOWN_CALL_STATUS",
                provider_response=payload,
            )

        attempt_id = None
        if payload.get("attempt_id"):
            try:
                attempt_id = UUID(str(payload["attempt_id"]))
            except ValueError:
                logger.warning(
                    "Ignoring malformed attempt_id in status callback",
                    extra={"provider_call_id": call_sid},
                )

        duration_seconds = None
        if payload.get("CallDuration"):
            try:
                duration_seconds = int(payload["CallDuration"])
            except (TypeError, ValueError):
                pass

        error_code = error_message = None
        if event_type == TelephonyEventType.FAILED:
            error_code = payload.get("ErrorCode")
            error_message = payload.get("ErrorMessage")

        timestamp = datetime.now(timezone.utc)
        if payload.get("Timestamp"):
            try:
                timestamp = datetime.fromisoformat(str(payload["Timestamp"]).replace("Z", "+00:00"))
            except ValueError:
                pass

        return TelephonyEvent(
            event_type=event_type,
            provider_call_id=call_sid,
            status=TWILIO_STATUS_MAP.get(call_status, CallStatus.FAILED),
            timestamp=timestamp,
            attempt_id=attempt_id,
            duration_seconds=duration_seconds,
            error_code=error_code,
            error_message=error_message,
            raw_payload=payload,
        )

    def validate_signature(self, payload: bytes, signature: str, url: str) -> bool:
        """Check the X-Twilio-Signature header (HMAC-SHA1 over url + sorted params)."""
        if not self._config.twilio_auth_token:
            logger.warning("No auth token configured, skipping signature validation")
            return True

        try:
            params = parse_qs(payload.decode("utf-8"), keep_blank_values=True)
        except UnicodeDecodeError:
            return False

        data_str = url
        for key in sorted(params):
            data_str += key + params[key][0]

        computed = hmac.new(
            self._config.twilio_auth_token.encode("utf-8"),
            data_str.encode("utf-8"),
            hashlib.sha1,
        ).digest()
        return hmac.compare_digest(b64encode(computed).decode("utf-8"), signature or "")
