"""Tests for the reflection session state machine (pure, sync)."""

import pytest

from voicejournal.sessions.state_machine import (
    PromptSnapshot,
    ReflectionSessionState,
    SessionStatus,
    order_prompts,
)
from voicejournal.shared.exceptions import InvalidStateError, OutOfOrderError, ValidationError

P1 = PromptSnapshot("p1", "What are you grateful for today?")
P2 = PromptSnapshot("p2", "What did you do today?")
P3 = PromptSnapshot("p3", "What do you want to do tomorrow?")
RATING = PromptSnapshot("rating", "Rate your day.", is_rating_prompt=True)


def started(*prompts: PromptSnapshot) -> ReflectionSessionState:
    state = ReflectionSessionState(user_id="user-1")
    state.start(prompts).unwrap()
    return state


class TestStart:
    def test_start_freezes_prompts(self) -> None:
        prompts = [P1, P2]
        state = ReflectionSessionState(user_id="user-1")

        assert state.start(prompts).ok
        prompts.append(P3)

        assert state.status == SessionStatus.IN_PROGRESS
        assert state.prompts == (P1, P2)
        assert state.current_prompt == P1
        assert state.started_at is not None

    def test_start_requires_prompts(self) -> None:
        result = ReflectionSessionState().start([])

        assert isinstance(result.error, InvalidStateError)

    def test_start_twice(self) -> None:
        state = started(P1)

        assert isinstance(state.start([P2]).error, InvalidStateError)
        assert state.prompts == (P1,)

    def test_rating_prompts_go_last(self) -> None:
        assert order_prompts([RATING, P1, P2]) == (P1, P2, RATING)


class TestRecordResponse:
    def test_advances_cursor(self) -> None:
        state = started(P1, P2)

        assert state.record_response("p1", "My family").ok

        assert state.current_prompt_index == 1
        assert state.responses[0].answer_text == "My family"
        assert state.responses[0].prompt_text == P1.text

    def test_scenario_b_out_of_order(self) -> None:
        state = started(P1, P2, P3)
        state.record_response("p1", "first").unwrap()

        result = state.record_response("p3", "skipped ahead")

        assert isinstance(result.error, OutOfOrderError)
        assert state.current_prompt_index == 1
        assert len(state.responses) == 1

    def test_not_started(self) -> None:
        result = ReflectionSessionState().record_response("p1", "x")

        assert isinstance(result.error, InvalidStateError)


class TestSetRating:
    def test_sets_rating_without_text_response(self) -> None:
        state = started(P1, RATING)
        state.record_response("p1", "answer").unwrap()

        assert state.set_rating(-2).ok

        assert state.rating == -2
        assert len(state.responses) == 1
        assert state.current_prompt is None

    @pytest.mark.parametrize("value", [3, -3, True, 1.5, "1"])
    def test_rejects_invalid_values(self, value: object) -> None:
        state = started(RATING)

        result = state.set_rating(value)  # type: ignore[arg-type]

        assert isinstance(result.error, ValidationError)
        assert state.rating is None
        assert state.current_prompt_index == 0

    def test_requires_rating_prompt(self) -> None:
        state = started(P1, RATING)

        assert isinstance(state.set_rating(1).error, OutOfOrderError)


class TestComplete:
    def test_complete_after_all_prompts(self) -> None:
        state = started(P1, RATING)
        state.record_response("p1", "answer").unwrap()
        state.set_rating(0).unwrap()

        assert state.complete(2).ok
        assert state.status == SessionStatus.COMPLETED
        assert state.ended_at is not None

    def test_complete_with_unanswered_prompts(self) -> None:
        state = started(P1, P2)
        state.record_response("p1", "answer").unwrap()

        assert isinstance(state.complete(2).error, InvalidStateError)
        assert state.status == SessionStatus.IN_PROGRESS

    def test_completed_session_is_immutable(self) -> None:
        state = started(P1)
        state.record_response("p1", "answer").unwrap()
        state.complete(1).unwrap()

        assert state.abandon("late hangup").ok
        assert state.status == SessionStatus.COMPLETED
        assert state.abandon_reason is None
        assert isinstance(state.record_response("p1", "again").error, InvalidStateError)


class TestAbandon:
    def test_scenario_c_abandon_during_rating(self) -> None:
        state = started(P1, P2, RATING)
        state.record_response("p1", "one").unwrap()
        state.record_response("p2", "two").unwrap()

        assert state.abandon("hangup").ok

        assert state.status == SessionStatus.ABANDONED
        assert len(state.responses) == 2
        assert state.rating is None
        assert state.abandon_reason == "hangup"

    def test_abandon_is_idempotent(self) -> None:
        state = started(P1)
        state.abandon("hangup").unwrap()
        ended_at = state.ended_at

        assert state.abandon("second hangup").ok
        assert state.abandon_reason == "hangup"
        assert state.ended_at == ended_at
        assert isinstance(state.complete(1).error, InvalidStateError)

    def test_abandon_not_started(self) -> None:
        state = ReflectionSessionState()

        assert state.abandon("no answer").ok
        assert state.status == SessionStatus.ABANDONED
        assert not state.has_captured_anything
