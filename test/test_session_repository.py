"""Tests for reflection session persistence."""

from uuid import uuid4

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from voicejournal.calls.repository import CallAttemptRegistry
from voicejournal.sessions.models import ReflectionSession
from voicejournal.sessions.repository import ConcurrentUpdateError, ReflectionSessionRepository
from voicejournal.sessions.state_machine import PromptSnapshot, SessionStatus
from voicejournal.shared.database import DatabaseManager
from voicejournal.shared.exceptions import InvalidStateError, NotFoundError, OutOfOrderError

from conftest import TODAY

PROMPTS = (
    PromptSnapshot("p1", "What are you grateful for today?"),
    PromptSnapshot("rating", "Rate your day.", is_rating_prompt=True),
)


class RacingRepository(ReflectionSessionRepository):
    """Lets a competing writer commit right after each of the first ``races`` loads."""

    def __init__(self, session: AsyncSession, competitor, races: int = 1) -> None:
        super().__init__(session)
        self._competitor = competitor
        self._races = races

    async def _load(self, session_id):
        row = await super()._load(session_id)
        if self._races:
            self._races -= 1
            await self._competitor()
        return row


async def _version(session: AsyncSession, session_id) -> int:
    result = await session.execute(
        select(ReflectionSession.version)
        .where(ReflectionSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


class TestReflectionSessionRepository:
    async def test_create_not_started(self, db_session: AsyncSession) -> None:
        repo = ReflectionSessionRepository(db_session)

        state = await repo.create("user-1")

        loaded = await repo.get(state.id)
        assert loaded.status == SessionStatus.NOT_STARTED
        assert loaded.prompts == ()

    async def test_apply_persists_transition(self, db_session: AsyncSession) -> None:
        repo = ReflectionSessionRepository(db_session)
        state = await repo.create("user-1")

        await repo.apply(state.id, lambda s: s.start(PROMPTS))
        await repo.apply(state.id, lambda s: s.record_response("p1", "Sunshine"))
        result = await repo.apply(state.id, lambda s: s.set_rating(2))

        assert result.ok
        loaded = await repo.get(state.id)
        assert loaded.status == SessionStatus.IN_PROGRESS
        assert loaded.prompts == PROMPTS
        assert [r.answer_text for r in loaded.responses] == ["Sunshine"]
        assert loaded.rating == 2
        assert await _version(db_session, state.id) == 4

    async def test_failed_transition_is_not_written(self, db_session: AsyncSession) -> None:
        repo = ReflectionSessionRepository(db_session)
        state = await repo.create("user-1")
        await repo.apply(state.id, lambda s: s.start(PROMPTS))

        result = await repo.apply(state.id, lambda s: s.record_response("rating", "two"))

        assert isinstance(result.error, OutOfOrderError)
        assert (await repo.get(state.id)).responses == []
        assert await _version(db_session, state.id) == 2

    async def test_noop_transition_skips_write(self, db_session: AsyncSession) -> None:
        repo = ReflectionSessionRepository(db_session)
        state = await repo.create("user-1")
        await repo.apply(state.id, lambda s: s.abandon("no answer"))

        result = await repo.apply(state.id, lambda s: s.abandon("duplicate callback"))

        assert result.unwrap().abandon_reason == "no answer"
        assert await _version(db_session, state.id) == 2

    async def test_completed_session_survives_late_abandon(self, db_session: AsyncSession) -> None:
        repo = ReflectionSessionRepository(db_session)
        state = await repo.create("user-1")
        await repo.apply(state.id, lambda s: s.start(PROMPTS[:1]))
        await repo.apply(state.id, lambda s: s.record_response("p1", "Sunshine"))
        await repo.apply(state.id, lambda s: s.complete(1))

        result = await repo.apply(state.id, lambda s: s.abandon("user hung up"))

        assert result.unwrap().status == SessionStatus.COMPLETED
        assert (await repo.get(state.id)).abandon_reason is None

    async def test_apply_unknown_session(self, db_session: AsyncSession) -> None:
        result = await ReflectionSessionRepository(db_session).apply(uuid4(), lambda s: s.abandon("x"))

        assert isinstance(result.error, NotFoundError)

    async def test_list_for_user(self, db_session: AsyncSession) -> None:
        repo = ReflectionSessionRepository(db_session)
        await repo.create("user-1")
        await repo.create("user-1")
        await repo.create("user-2")

        assert len(await repo.list_for_user("user-1")) == 2

    async def test_get_by_attempt(self, db_session: AsyncSession) -> None:
        attempt_id = (await CallAttemptRegistry(db_session).create_attempt("user-1", TODAY)).unwrap().id
        repo = ReflectionSessionRepository(db_session)
        first = await repo.create("user-1", attempt_id)
        await repo.apply(first.id, lambda s: s.abandon("no answer"))
        second = await repo.create("user-1", attempt_id)

        sessions = await repo.get_by_attempt(attempt_id)

        assert {s.id for s in sessions} == {first.id, second.id}


class TestConcurrentWriters:
    async def _started(self, db: DatabaseManager):
        async with db.session() as session:
            repo = ReflectionSessionRepository(session)
            state = await repo.create("user-1")
            await repo.apply(state.id, lambda s: s.start(PROMPTS))
            return state.id

    async def test_lost_race_reruns_against_fresh_state(self, db: DatabaseManager) -> None:
        session_id = await self._started(db)

        async def hang_up() -> None:
            async with db.session() as other:
                await ReflectionSessionRepository(other).apply(session_id, lambda s: s.abandon("user hung up"))

        async with db.session() as session:
            result = await RacingRepository(session, hang_up).apply(
                session_id, lambda s: s.record_response("p1", "Sunshine")
            )

        assert isinstance(result.error, InvalidStateError)
        async with db.session() as session:
            loaded = await ReflectionSessionRepository(session).get(session_id)
            assert loaded.status == SessionStatus.ABANDONED
            assert loaded.responses == []
            assert await _version(session, session_id) == 3

    async def test_same_prompt_answered_once(self, db: DatabaseManager) -> None:
        session_id = await self._started(db)

        async def answer_first() -> None:
            async with db.session() as other:
                await ReflectionSessionRepository(other).apply(
                    session_id, lambda s: s.record_response("p1", "Sunshine")
                )

        async with db.session() as session:
            result = await RacingRepository(session, answer_first).apply(
                session_id, lambda s: s.record_response("p1", "Rain")
            )

        assert isinstance(result.error, OutOfOrderError)
        async with db.session() as session:
            loaded = await ReflectionSessionRepository(session).get(session_id)
            assert [r.answer_text for r in loaded.responses] == ["Sunshine"]

    async def test_retry_succeeds_after_unrelated_write(self, db: DatabaseManager) -> None:
        session_id = await self._started(db)

        async with db.session() as session:
            result = await RacingRepository(session, lambda: _bump_version(db, session_id)).apply(
                session_id, lambda s: s.record_response("p1", "Sunshine")
            )

        assert [r.answer_text for r in result.unwrap().responses] == ["Sunshine"]
        async with db.session() as session:
            assert await _version(session, session_id) == 4

    async def test_gives_up_after_repeated_conflicts(self, db: DatabaseManager) -> None:
        session_id = await self._started(db)

        async with db.session() as session:
            repo = RacingRepository(
                session,
                lambda: _bump_version(db, session_id),
                races=ReflectionSessionRepository.MAX_CAS_RETRIES,
            )
            with pytest.raises(ConcurrentUpdateError):
                await repo.apply(session_id, lambda s: s.record_response("p1", "Sunshine"))

        async with db.session() as session:
            assert (await ReflectionSessionRepository(session).get(session_id)).responses == []


async def _bump_version(db: DatabaseManager, session_id) -> None:
    async with db.session() as other:
        await other.execute(
            update(ReflectionSession)
            .where(ReflectionSession.id == session_id)
            .values(version=ReflectionSession.version + 1)
        )
