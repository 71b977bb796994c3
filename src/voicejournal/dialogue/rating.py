"""
Rating extraction from a transcribed answer to the rating prompt.

Callers say things like "minus one", "I'd give it a two" or "-2". Only
whole numbers between -2 and 2 count.
"""

import re

from voicejournal.sessions.state_machine import RATING_MAX, RATING_MIN

_NUMBER_WORDS = {
    "zero": 0,
    "neutral": 0,
    "one": 1,
    "two": 2,
}
_NEGATIVE = {"minus", "negative"}
_POSITIVE = {"plus", "positive"}

_TOKEN_RE = re.compile(r"[-+]?\d+(?:\.\d+)?|[a-z]+")


def parse_rating(transcript: str) -> int | None:
    """Return the first rating mentioned in ``transcript``.

    Returns:
        An integer in [-2, 2], or None if no usable rating was said.
    """
    sign = 1
    for token in _TOKEN_RE.findall(transcript.lower()):
        if token in _NEGATIVE:
            sign = -1
            continue
        if token in _POSITIVE:
            sign = 1
            continue

        if token[0] in "+-" or token[0].isdigit():
            if "." in token:
                return None
            rating = int(token) if token[0] in "+-" else sign * int(token)
        elif token in _NUMBER_WORDS:
            rating = sign * _NUMBER_WORDS[token]
        else:
            continue

        if RATING_MIN <= rating <= RATING_MAX:
            return rating
        return None
    return None
