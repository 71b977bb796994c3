"""
Spoken text the orchestrator adds around the user's prompts.
"""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from voicejournal.sessions.state_machine import PromptSnapshot

REPROMPT_PREFIX = "Sorry, I didn't catch that."

DEFAULT_PROMPTS: tuple[PromptSnapshot, ...] = (
    PromptSnapshot("default-1", "What are you grateful for today?"),
    PromptSnapshot("default-2", "What did you do today?"),
    PromptSnapshot("default-3", "What are you proud of today?"),
    PromptSnapshot("default-4", "What do you want to do tomorrow?"),
    PromptSnapshot(
        "default-rating",
        "On a scale from negative 2 to positive 2, using whole numbers only, how would you rate your day?",
        is_rating_prompt=True,
    ),
)


def greeting(display_name: str, name_pronunciation: str | None = None) -> str:
    name = name_pronunciation or display_name
    return f"Hi {name}, it's time for your daily journal entry!"


def time_of_day(hour: int) -> str:
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


def closing_message(tz_name: str | None = None, now: datetime | None = None) -> str:
    """Thank-you line matched to the user's local time of day."""
    now = now or datetime.now(timezone.utc)
    try:
        local = now.astimezone(ZoneInfo(tz_name)) if tz_name else now
    except (ZoneInfoNotFoundError, ValueError):
        return "Thank you for taking the time to reflect. Have a wonderful day!"
    return f"Thank you for taking the time to reflect. Have a wonderful {time_of_day(local.hour)}!"
