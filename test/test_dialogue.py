"""Tests for rating parsing, answer completeness and spoken messages."""

from datetime import datetime, timezone

import pytest

from voicejournal.dialogue.completeness import HeuristicCompletenessChecker
from voicejournal.dialogue.messages import DEFAULT_PROMPTS, closing_message, greeting, time_of_day
from voicejournal.dialogue.rating import parse_rating


class TestParseRating:
    @pytest.mark.parametrize(
        "transcript,expected",
        [
            ("two", 2),
            ("I'd give it a one", 1),
            ("minus two", -2),
            ("negative one I guess", -1),
            ("-1", -1),
            ("+2", 2),
            ("Zero.", 0),
            ("plus 1", 1),
        ],
    )
    def test_parses(self, transcript: str, expected: int) -> None:
        assert parse_rating(transcript) == expected

    @pytest.mark.parametrize("transcript", ["", "pretty good", "five", "1.5", "3", "minus 3"])
    def test_rejects(self, transcript: str) -> None:
        assert parse_rating(transcript) is None


class TestCompleteness:
    @pytest.mark.parametrize(
        "transcript,expected",
        [
            ("", False),
            ("   ", False),
            ("meh", False),
            ("ok", False),
            ("My family.", True),
            ("Went climbing with friends", True),
        ],
    )
    async def test_heuristic(self, transcript: str, expected: bool) -> None:
        checker = HeuristicCompletenessChecker()

        assert await checker.is_substantive("What did you do today?", transcript) is expected


class TestMessages:
    def test_greeting_prefers_pronunciation(self) -> None:
        assert greeting("Siobhan") == "Hi Siobhan, it's time for your daily journal entry!"
        assert greeting("Siobhan", "shiv-AWN").startswith("Hi shiv-AWN,")

    @pytest.mark.parametrize("hour,label", [(6, "morning"), (13, "afternoon"), (18, "evening"), (23, "night"), (2, "night")])
    def test_time_of_day(self, hour: int, label: str) -> None:
        assert time_of_day(hour) == label

    def test_closing_uses_local_time(self) -> None:
        now = datetime(2026, 3, 2, 20, 0, tzinfo=timezone.utc)

        assert closing_message("Asia/Tokyo", now).endswith("wonderful morning!")
        assert closing_message(None, now).endswith("wonderful evening!")

    def test_closing_with_unknown_timezone(self) -> None:
        assert closing_message("Mars/Olympus") == "Thank you for taking the time to reflect. Have a wonderful day!"

    def test_default_prompts_end_with_rating(self) -> None:
        assert DEFAULT_PROMPTS[-1].is_rating_prompt
        assert not any(p.is_rating_prompt for p in DEFAULT_PROMPTS[:-1])
