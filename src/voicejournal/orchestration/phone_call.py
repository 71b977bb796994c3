"""
Per-call scratch state owned by the orchestrator.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from uuid import UUID

from voicejournal.orchestration.collaborators import AudioChannel, UserContact
from voicejournal.sessions.state_machine import PromptSnapshot


@dataclass
class CallRef:
    """Identifies a session and the attempt it settles."""

    provider_call_id: str
    session_id: UUID
    attempt_id: UUID
    user_id: str
    on_date: date


@dataclass
class PhoneCallRecord(CallRef):
    """Correlates one provider call with its reflection session."""

    contact: UserContact
    prompts: tuple[PromptSnapshot, ...]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    audio_cache: dict[str, bytes] = field(default_factory=dict)
    channel: AudioChannel | None = None
    task: asyncio.Task[None] | None = None
    connected: bool = False
    disconnect_reason: str | None = None

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def was_answered(self) -> bool:
        return self.connected or self.task is not None


class PhoneCallRegistry:
    """In-memory index of live calls by provider call id."""

    def __init__(self) -> None:
        self._records: dict[str, PhoneCallRecord] = {}

    def register(self, record: PhoneCallRecord) -> None:
        self._records[record.provider_call_id] = record

    def get(self, provider_call_id: str) -> PhoneCallRecord | None:
        return self._records.get(provider_call_id)

    def pop(self, provider_call_id: str) -> PhoneCallRecord | None:
        return self._records.pop(provider_call_id, None)

    def all(self) -> list[PhoneCallRecord]:
        return list(self._records.values())

    def older_than(self, now: datetime, max_age: timedelta) -> list[PhoneCallRecord]:
        return [r for r in self._records.values() if now - r.created_at > max_age]

    def session_ids(self) -> set[UUID]:
        return {r.session_id for r in self._records.values()}

    def attempt_ids(self) -> set[UUID]:
        return {r.attempt_id for r in self._records.values()}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, provider_call_id: object) -> bool:
        return provider_call_id in self._records
