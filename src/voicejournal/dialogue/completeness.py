"""
Heuristic completeness checker used when no semantic checker is configured.
"""

import re

_SENTENCE_END = re.compile(r"[.!?]$")


class HeuristicCompletenessChecker:
    """Cheap stand-in for a semantic "is this a real answer" classifier.

    An answer counts as substantive when it has more than ``min_chars``
    characters, or ends like a finished sentence.
    """

    def __init__(self, min_chars: int = 10) -> None:
        self._min_chars = min_chars

    async def is_substantive(self, prompt_text: str, transcript: str) -> bool:
        text = transcript.strip()
        if not text:
            return False
        if len(text) > self._min_chars:
            return True
        return bool(_SENTENCE_END.search(text)) and len(text.split()) >= 2
