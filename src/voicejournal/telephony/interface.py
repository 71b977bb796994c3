"""
Telephony provider interface definition.

Outbound commands are place call, play text and hang up. Inbound is a status
callback per call state change plus a duplex media channel (see
``voicejournal.orchestration.collaborators.AudioChannel``).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

import anyio


class CallStatus(str, Enum):
    """Call status values."""

    QUEUED = "queued"
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no_answer"
    FAILED = "failed"
    CANCELED = "canceled"


class TelephonyEventType(str, Enum):
    """Status callback event types from the telephony provider."""

    INITIATED = "call.initiated"
    RINGING = "call.ringing"
    CONNECTED = "call.connected"
    COMPLETED = "call.completed"
    NO_ANSWER = "call.no_answer"
    BUSY = "call.busy"
    FAILED = "call.failed"


@dataclass(frozen=True)
class PlaceCallRequest:
    """Request to place an outbound reflection call."""

    to: str
    from_number: str
    callback_url: str
    attempt_id: UUID
    session_id: UUID
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PlaceCallResponse:
    """Response from call placement."""

    provider_call_id: str
    status: CallStatus
    created_at: datetime
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TelephonyEvent:
    """Parsed status callback from the telephony provider."""

    event_type: TelephonyEventType
    provider_call_id: str
    status: CallStatus
    timestamp: datetime
    attempt_id: UUID | None = None
    duration_seconds: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


class TelephonyProviderError(Exception):
    """Base exception for telephony provider errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_response: dict[str, Any] | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.provider_response = provider_response or {}
        self.retryable = retryable


class CallPlacementError(TelephonyProviderError):
    """Error while placing a call."""


class StatusCallbackParseError(TelephonyProviderError):
    """Error parsing a status callback payload."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_response: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, error_code, provider_response, retryable=False)


class TelephonyProvider(ABC):
    """Abstract interface for telephony providers.

    Adapters implement blocking ``*_sync`` methods. The async entrypoints
    run them in a worker thread so the event loop never blocks on HTTP.
    """

    async def place_call(self, request: PlaceCallRequest) -> PlaceCallResponse:
        return await anyio.to_thread.run_sync(self.place_call_sync, request)

    async def play_text(self, provider_call_id: str, text: str) -> None:
        await anyio.to_thread.run_sync(self.play_text_sync, provider_call_id, text)

    async def hangup(self, provider_call_id: str) -> None:
        await anyio.to_thread.run_sync(self.hangup_sync, provider_call_id)

    @abstractmethod
    def place_call_sync(self, request: PlaceCallRequest) -> PlaceCallResponse:
        """Place an outbound call."""
        ...

    @abstractmethod
    def play_text_sync(self, provider_call_id: str, text: str) -> None:
        """Have the provider speak ``text`` on a live call."""
        ...

    @abstractmethod
    def hangup_sync(self, provider_call_id: str) -> None:
        """End a live call."""
        ...

    @abstractmethod
    def parse_status_callback(self, payload: dict[str, Any]) -> TelephonyEvent:
        """Parse a status callback from the provider."""
        ...

    @abstractmethod
    def validate_signature(self, payload: bytes, signature: str, url: str) -> bool:
        """Validate a callback signature for authenticity."""
        ...
