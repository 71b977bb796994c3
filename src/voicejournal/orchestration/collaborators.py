"""
Contracts the live call orchestrator depends on.

Speech, transcription, completeness and journal storage are external
services. Implementations raise ``TransientError`` for retryable hiccups and
``FatalError`` for anything that will not succeed on retry.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from voicejournal.dialogue.messages import DEFAULT_PROMPTS
from voicejournal.sessions.state_machine import PromptSnapshot, ReflectionSessionState


class ChannelEventKind(str, Enum):
    MEDIA = "media"
    STOP = "stop"
    CLOSED = "closed"


@dataclass(frozen=True)
class ChannelEvent:
    """One inbound item from the duplex call channel."""

    kind: ChannelEventKind
    payload: bytes = b""


class AudioChannel(Protocol):
    """Duplex audio for one live call.

    Inbound audio is 8 kHz mu-law. ``receive`` yields MEDIA frames, STOP when
    the caller signals the end of an answer and CLOSED once the stream ends.
    """

    async def receive(self) -> ChannelEvent: ...

    async def play(self, audio: bytes) -> None:
        """Play audio to the caller and return once playback finished."""
        ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class UserContact:
    phone_number: str
    display_name: str
    name_pronunciation: str | None = None
    timezone: str | None = None


class UserDirectory(Protocol):
    async def get_contact(self, user_id: str) -> UserContact | None: ...


class PromptTemplateProvider(Protocol):
    async def get_active_prompts(self, user_id: str) -> list[PromptSnapshot]:
        """Active prompts in a stable order."""
        ...


class TranscriptionService(Protocol):
    async def transcribe(self, audio: bytes) -> str: ...


class SpeechSynthesisService(Protocol):
    async def synthesize(self, text: str, pronunciation_hint: str | None = None) -> bytes: ...


class CompletenessChecker(Protocol):
    async def is_substantive(self, prompt_text: str, transcript: str) -> bool: ...


class JournalMaterializer(Protocol):
    async def materialize(self, session: ReflectionSessionState) -> str:
        """Persist a journal entry for a completed session; return its id."""
        ...


class PartialSessionPolicy(Protocol):
    async def handle_partial(self, session: ReflectionSessionState) -> None:
        """Decide what happens to an abandoned session with some answers."""
        ...


class DefaultPromptProvider:
    """Serves the stock prompt set to every user."""

    async def get_active_prompts(self, user_id: str) -> list[PromptSnapshot]:
        return list(DEFAULT_PROMPTS)


class KeepPendingPartialPolicy:
    """Leave the attempt PENDING and unqueued for an operator to review."""

    async def handle_partial(self, session: ReflectionSessionState) -> None:
        return None
