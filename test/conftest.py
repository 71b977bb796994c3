"""
Pytest configuration and shared fixtures.

Database tests run against one in-memory aiosqlite engine per test; the
StaticPool keeps every session on the same connection so the schema and
data survive across sessions.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from datetime import date
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

import voicejournal.calls.models  # noqa: F401
import voicejournal.sessions.models  # noqa: F401
import voicejournal.windows.models  # noqa: F401
from voicejournal.calls.models import CallSource
from voicejournal.calls.repository import CallAttemptRegistry, CallQueue
from voicejournal.orchestration.collaborators import ChannelEvent, ChannelEventKind, UserContact
from voicejournal.sessions.state_machine import PromptSnapshot, ReflectionSessionState
from voicejournal.shared.database import Base, DatabaseManager
from voicejournal.shared.exceptions import TransientError

TODAY = date(2026, 3, 2)  # a Monday

SILENT = object()
HANGUP = object()


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine: AsyncEngine) -> DatabaseManager:
    return DatabaseManager("sqlite+aiosqlite:///:memory:", engine=engine)


@pytest_asyncio.fixture
async def db_session(db: DatabaseManager) -> AsyncGenerator[AsyncSession, None]:
    async with db.session_factory() as session:
        yield session


async def create_pending_attempt(
    db: DatabaseManager,
    user_id: str = "user-1",
    on_date: date = TODAY,
    enqueue: bool = False,
) -> UUID:
    async with db.session() as session:
        attempt = (await CallAttemptRegistry(session).create_attempt(user_id, on_date, CallSource.SCHEDULED)).unwrap()
        if enqueue:
            (await CallQueue(session).enqueue(attempt.id)).unwrap()
        return attempt.id


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeChannel:
    """Scripted caller.

    Every played prompt pops the next scripted answer: a string is spoken
    and followed by a stop, ``None`` is an empty answer, ``SILENT`` sends
    nothing and ``HANGUP`` closes the stream.
    """

    def __init__(self, answers: list[object] | None = None) -> None:
        self.answers = list(answers or [])
        self.events: asyncio.Queue[ChannelEvent] = asyncio.Queue()
        self.played: list[bytes] = []
        self.closed = False

    async def receive(self) -> ChannelEvent:
        return await self.events.get()

    async def play(self, audio: bytes) -> None:
        self.played.append(audio)
        if not self.answers:
            return
        answer = self.answers.pop(0)
        if answer is SILENT:
            return
        if answer is HANGUP:
            self.events.put_nowait(ChannelEvent(ChannelEventKind.CLOSED))
            return
        if answer is not None:
            self.events.put_nowait(ChannelEvent(ChannelEventKind.MEDIA, str(answer).encode()))
        self.events.put_nowait(ChannelEvent(ChannelEventKind.STOP))

    async def close(self) -> None:
        self.closed = True

    @property
    def played_text(self) -> list[str]:
        return [a.decode() for a in self.played]


class FakeUsers:
    def __init__(self, contact: UserContact | None = None) -> None:
        self.contact = contact or UserContact(phone_number="+15551230000", display_name="Sam", timezone="UTC")

    async def get_contact(self, user_id: str) -> UserContact | None:
        return self.contact


class FakePrompts:
    def __init__(self, prompts: list[PromptSnapshot]) -> None:
        self.prompts = prompts

    async def get_active_prompts(self, user_id: str) -> list[PromptSnapshot]:
        return list(self.prompts)


class FakeTranscription:
    """Audio produced by FakeChannel is the utf-8 transcript itself."""

    def __init__(self) -> None:
        self.fail_next = 0

    async def transcribe(self, audio: bytes) -> str:
        if self.fail_next:
            self.fail_next -= 1
            raise TransientError(message="stt unavailable")
        return audio.decode()


class FakeSynthesis:
    def __init__(self) -> None:
        self.requests: list[str] = []
        self.unavailable = False

    async def synthesize(self, text: str, pronunciation_hint: str | None = None) -> bytes:
        self.requests.append(text)
        if self.unavailable:
            raise TransientError(message="tts unavailable")
        return text.encode()


class FakeJournal:
    def __init__(self) -> None:
        self.sessions: list[ReflectionSessionState] = []

    async def materialize(self, session: ReflectionSessionState) -> str:
        self.sessions.append(session)
        return f"entry-{len(self.sessions)}"


@pytest.fixture
def prompts() -> list[PromptSnapshot]:
    return [
        PromptSnapshot("rating", "How would you rate your day?", is_rating_prompt=True),
        PromptSnapshot("p1", "What are you grateful for today?"),
        PromptSnapshot("p2", "What did you do today?"),
    ]
