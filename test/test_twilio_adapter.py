"""Tests for the Twilio telephony adapter (sync, no network)."""

import hashlib
import hmac
from base64 import b64encode
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlencode, urlsplit
from uuid import uuid4

import httpx
import pytest

from voicejournal.telephony.config import ProviderType, TelephonyConfig
from voicejournal.telephony.interface import (
    CallPlacementError,
    CallStatus,
    PlaceCallRequest,
    StatusCallbackParseError,
    TelephonyEventType,
    TelephonyProviderError,
)
from voicejournal.telephony.twilio_adapter import TwilioAdapter


@pytest.fixture
def twilio_config() -> TelephonyConfig:
    return TelephonyConfig(
        provider_type=ProviderType.TWILIO,
        twilio_account_sid="AC_TEST_ACCOUNT_SID",
        twilio_auth_token="test_auth_token_12345",
        twilio_from_number="+14155550000",
        webhook_base_url="https://example.com",
        call_timeout_seconds=45,
    )


@pytest.fixture
def call_request() -> PlaceCallRequest:
    return PlaceCallRequest(
        to="+14155551234",
        from_number="+14155550000",
        callback_url="https://example.com/webhooks/telephony/status",
        attempt_id=uuid4(),
        session_id=uuid4(),
    )


def _client(response: httpx.Response | Exception) -> MagicMock:
    client = MagicMock(spec=httpx.Client)
    if isinstance(response, Exception):
        client.post.side_effect = response
    else:
        client.post.return_value = response
    return client


class TestPlaceCall:
    def test_success(self, twilio_config: TelephonyConfig, call_request: PlaceCallRequest) -> None:
        client = _client(
            httpx.Response(
                201,
                json={"sid": "CA_TEST_CALL_SID_123", "status": "queued", "date_created": "2026-03-02T18:00:00Z"},
            )
        )

        response = TwilioAdapter(config=twilio_config, http_client=client).place_call_sync(call_request)

        assert response.provider_call_id == "CA_TEST_CALL_SID_123"
        assert response.status == CallStatus.QUEUED
        assert response.created_at.year == 2026

        url = client.post.call_args.args[0]
        data = client.post.call_args.kwargs["data"]
        assert url.endswith("/Accounts/AC_TEST_ACCOUNT_SID/Calls.json")
        assert data["To"] == "+14155551234"
        assert data["Timeout"] == 45
        assert '<Stream url="wss://example.com/webhooks/telephony/stream"/>' in data["Twiml"]
        assert client.post.call_args.kwargs["auth"] == ("AC_TEST_ACCOUNT_SID", "test_auth_token_12345")

    def test_callback_carries_correlation_ids(
        self, twilio_config: TelephonyConfig, call_request: PlaceCallRequest
    ) -> None:
        client = _client(httpx.Response(201, json={"sid": "CA1", "status": "queued"}))

        TwilioAdapter(config=twilio_config, http_client=client).place_call_sync(call_request)

        callback = urlsplit(client.post.call_args.kwargs["data"]["StatusCallback"])
        query = parse_qs(callback.query)
        assert callback.path == "/webhooks/telephony/status"
        assert query["attempt_id"] == [str(call_request.attempt_id)]
        assert query["session_id"] == [str(call_request.session_id)]

    def test_bad_request_is_not_retryable(
        self, twilio_config: TelephonyConfig, call_request: PlaceCallRequest
    ) -> None:
        client = _client(httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"}))

        with pytest.raises(CallPlacementError) as exc_info:
            TwilioAdapter(config=twilio_config, http_client=client).place_call_sync(call_request)

        assert exc_info.value.error_code == "21211"
        assert not exc_info.value.retryable

    @pytest.mark.parametrize("status_code", [429, 500, 503])
    def test_server_errors_are_retryable(
        self, twilio_config: TelephonyConfig, call_request: PlaceCallRequest, status_code: int
    ) -> None:
        client = _client(httpx.Response(status_code, json={"message": "try later"}))

        with pytest.raises(CallPlacementError) as exc_info:
            TwilioAdapter(config=twilio_config, http_client=client).place_call_sync(call_request)

        assert exc_info.value.retryable

    def test_network_error(self, twilio_config: TelephonyConfig, call_request: PlaceCallRequest) -> None:
        client = _client(httpx.ConnectError("connection refused"))

        with pytest.raises(CallPlacementError) as exc_info:
            TwilioAdapter(config=twilio_config, http_client=client).place_call_sync(call_request)

        assert exc_info.value.error_code == "HTTP_ERROR"
        assert exc_info.value.retryable


class TestCallUpdates:
    def test_play_text_says_then_reconnects_stream(self, twilio_config: TelephonyConfig) -> None:
        client = _client(httpx.Response(200, json={"sid": "CA1"}))

        TwilioAdapter(config=twilio_config, http_client=client).play_text_sync("CA1", "Tom & Jerry")

        url = client.post.call_args.args[0]
        twiml = client.post.call_args.kwargs["data"]["Twiml"]
        assert url.endswith("/Calls/CA1.json")
        assert twiml.startswith("<Response><Say>Tom &amp; Jerry</Say><Connect>")

    def test_hangup(self, twilio_config: TelephonyConfig) -> None:
        client = _client(httpx.Response(200, json={"sid": "CA1"}))

        TwilioAdapter(config=twilio_config, http_client=client).hangup_sync("CA1")

        assert client.post.call_args.kwargs["data"] == {"Status": "completed"}

    def test_update_failure(self, twilio_config: TelephonyConfig) -> None:
        client = _client(httpx.Response(404, json={"code": 20404, "message": "Not found"}))

        with pytest.raises(TelephonyProviderError) as exc_info:
            TwilioAdapter(config=twilio_config, http_client=client).hangup_sync("CA_GONE")

        assert exc_info.value.error_code == "20404"


class TestParseStatusCallback:
    @pytest.mark.parametrize(
        "call_status,event_type",
        [
            ("initiated", TelephonyEventType.INITIATED),
            ("ringing", TelephonyEventType.RINGING),
            ("in-progress", TelephonyEventType.CONNECTED),
            ("completed", TelephonyEventType.COMPLETED),
            ("no-answer", TelephonyEventType.NO_ANSWER),
            ("busy", TelephonyEventType.BUSY),
            ("failed", TelephonyEventType.FAILED),
            ("canceled", TelephonyEventType.FAILED),
        ],
    )
    def test_event_mapping(self, twilio_config: TelephonyConfig, call_status: str, event_type) -> None:
        event = TwilioAdapter(config=twilio_config).parse_status_callback(
            {"CallSid": "CA1", "CallStatus": call_status}
        )

        assert event.event_type == event_type
        assert event.provider_call_id == "CA1"

    def test_extracts_attempt_and_duration(self, twilio_config: TelephonyConfig) -> None:
        attempt_id = uuid4()

        event = TwilioAdapter(config=twilio_config).parse_status_callback(
            {"CallSid": "CA1", "CallStatus": "completed", "CallDuration": "95", "attempt_id": str(attempt_id)}
        )

        assert event.attempt_id == attempt_id
        assert event.duration_seconds == 95

    def test_failed_carries_error(self, twilio_config: TelephonyConfig) -> None:
        event = TwilioAdapter(config=twilio_config).parse_status_callback(
            {"CallSid": "CA1", "CallStatus": "failed", "ErrorCode": "31005", "ErrorMessage": "Connection error"}
        )

        assert event.error_code == "31005"
        assert event.error_message == "Connection error"

    def test_malformed_attempt_id_is_ignored(self, twilio_config: TelephonyConfig) -> None:
        event = TwilioAdapter(config=twilio_config).parse_status_callback(
            {"CallSid": "CA1", "CallStatus": "ringing", "attempt_id": "not-a-uuid"}
        )

        assert event.attempt_id is None

    @pytest.mark.parametrize(
        "payload,code",
        [
            ({"CallStatus": "ringing"}, "MISSING_CALL_SID"),
            ({"CallSid": "CA1"}, "MISSING_CALL_STATUS"),
            ({"CallSid": "CA1", "CallStatus": "teleported"}, "UNKNOWN_CALL_STATUS"),
        ],
    )
    def test_invalid_payloads(self, twilio_config: TelephonyConfig, payload: dict, code: str) -> None:
        with pytest.raises(StatusCallbackParseError) as exc_info:
            TwilioAdapter(config=twilio_config).parse_status_callback(payload)

        assert exc_info.value.error_code == code


class TestValidateSignature:
    def _sign(self, token: str, url: str, params: dict[str, str]) -> str:
        data = url + "".join(k + params[k] for k in sorted(params))
        return b64encode(hmac.new(token.encode(), data.encode(), hashlib.sha1).digest()).decode()

    def test_valid_and_invalid(self, twilio_config: TelephonyConfig) -> None:
        adapter = TwilioAdapter(config=twilio_config)
        url = "https://example.com/webhooks/telephony/status"
        params = {"CallSid": "CA1", "CallStatus": "ringing"}
        body = urlencode(params).encode()

        signature = self._sign("test_auth_token_12345", url, params)

        assert adapter.validate_signature(body, signature, url)
        assert not adapter.validate_signature(body, "bogus", url)
        assert not adapter.validate_signature(body, signature, url + "?x=1")

    def test_skipped_without_token(self) -> None:
        adapter = TwilioAdapter(config=TelephonyConfig(twilio_auth_token=""))

        assert adapter.validate_signature(b"", "", "https://example.com")
