"""
Live call orchestrator.

Drives one connected call through its frozen prompt list, one turn at a
time: play the prompt, capture the answer, transcribe, maybe re-ask once,
then record it on the reflection session. Each connected call runs in its
own asyncio task. A disconnect cancels that task and finalization runs
against the current session state, so a late "call ended" can never
overwrite a completed session.
"""

import asyncio
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from voicejournal.calls.models import CallAttemptStatus
from voicejournal.calls.repository import CallAttemptRegistry
from voicejournal.calls.retry import RetryScheduler
from voicejournal.config import Settings
from voicejournal.dialogue.messages import REPROMPT_PREFIX, closing_message, greeting
from voicejournal.dialogue.rating import parse_rating
from voicejournal.orchestration.capture import CaptureWindow
from voicejournal.orchestration.collaborators import (
    AudioChannel,
    CompletenessChecker,
    JournalMaterializer,
    KeepPendingPartialPolicy,
    PartialSessionPolicy,
    PromptTemplateProvider,
    SpeechSynthesisService,
    TranscriptionService,
    UserDirectory,
)
from voicejournal.orchestration.events import (
    LifecycleEventPublisher,
    LifecycleEventType,
    LoggingEventBus,
)
from voicejournal.orchestration.phone_call import CallRef, PhoneCallRecord, PhoneCallRegistry
from voicejournal.sessions.repository import ReflectionSessionRepository, Transition
from voicejournal.sessions.state_machine import (
    PromptSnapshot,
    ReflectionSessionState,
    SessionStatus,
    order_prompts,
)
from voicejournal.shared.exceptions import FatalError, OperationResult, TransientError
from voicejournal.shared.logging import correlation_id_var, get_logger
from voicejournal.telephony.interface import (
    PlaceCallRequest,
    TelephonyProvider,
    TelephonyProviderError,
)

logger = get_logger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager[AsyncSession]]
RetryFactory = Callable[[AsyncSession], RetryScheduler]


@dataclass
class OrchestratorConfig:
    """Timing and turn policy for live calls."""

    capture_timeout_seconds: float = 30.0
    silence_threshold_seconds: float = 3.0
    idle_timeout_seconds: float = 90.0
    max_call_duration_seconds: float = 1800.0
    voice_energy_threshold: int = 500
    max_reprompts_per_prompt: int = 1

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrchestratorConfig":
        return cls(
            capture_timeout_seconds=settings.capture_timeout_seconds,
            silence_threshold_seconds=settings.silence_threshold_seconds,
            idle_timeout_seconds=settings.idle_timeout_seconds,
            max_call_duration_seconds=settings.max_call_duration_seconds,
            voice_energy_threshold=settings.voice_energy_threshold,
            max_reprompts_per_prompt=settings.max_reprompts_per_prompt,
        )


class CallEndKind(str, Enum):
    UNANSWERED = "unanswered"
    DISCONNECTED = "disconnected"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CallEndOutcome:
    """What an ended call meant. Only UNANSWERED carries an attempt to retry."""

    kind: CallEndKind
    attempt_id: UUID | None = None


class CallDisconnected(Exception):
    """The live call ended before the session completed."""

    def __init__(self, reason: str, hang_up: bool = False) -> None:
        super().__init__(reason)
        self.reason = reason
        self.hang_up = hang_up


class LiveCallOrchestrator:
    """Places reflection calls and runs them to a terminal session state."""

    def __init__(
        self,
        session_scope: SessionScope,
        telephony: TelephonyProvider,
        users: UserDirectory,
        prompts: PromptTemplateProvider,
        transcription: TranscriptionService,
        synthesis: SpeechSynthesisService,
        journal: JournalMaterializer,
        *,
        from_number: str,
        status_callback_url: str,
        completeness: CompletenessChecker | None = None,
        partial_policy: PartialSessionPolicy | None = None,
        publisher: LifecycleEventPublisher | None = None,
        config: OrchestratorConfig | None = None,
        calls: PhoneCallRegistry | None = None,
        retry_factory: RetryFactory | None = None,
    ) -> None:
        self._session_scope = session_scope
        self._telephony = telephony
        self._users = users
        self._prompts = prompts
        self._transcription = transcription
        self._synthesis = synthesis
        self._journal = journal
        self._from_number = from_number
        self._status_callback_url = status_callback_url
        self._completeness = completeness
        self._partial_policy = partial_policy or KeepPendingPartialPolicy()
        self._publisher = publisher or LifecycleEventPublisher(LoggingEventBus())
        self._config = config or OrchestratorConfig()
        self._calls = calls or PhoneCallRegistry()
        self._retry_factory = retry_factory

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def active_count(self) -> int:
        return len(self._calls)

    def get_call(self, provider_call_id: str) -> PhoneCallRecord | None:
        return self._calls.get(provider_call_id)

    def active_calls(self) -> list[dict[str, Any]]:
        return [
            {
                "provider_call_id": r.provider_call_id,
                "session_id": str(r.session_id),
                "attempt_id": str(r.attempt_id),
                "user_id": r.user_id,
                "connected": r.connected,
                "created_at": r.created_at.isoformat(),
            }
            for r in self._calls.all()
        ]

    async def session_status(self, session_id: UUID) -> ReflectionSessionState | None:
        async with self._session_scope() as db:
            return await ReflectionSessionRepository(db).get(session_id)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def place_call(self, attempt_id: UUID) -> PhoneCallRecord:
        """Snapshot prompts, create the session and dial the user.

        Raises:
            TransientError: The provider failed in a way worth retrying.
            FatalError: The call cannot be placed (no contact, no prompts,
                provider rejected the request).
        """
        async with self._session_scope() as db:
            attempt = await CallAttemptRegistry(db).get_by_id(attempt_id)
            if attempt is None or attempt.status != CallAttemptStatus.PENDING:
                raise FatalError(
                    message="Attempt is not dispatchable",
                    details={"attempt_id": str(attempt_id)},
                )
            user_id, on_date = attempt.user_id, attempt.on_date

        contact = await self._users.get_contact(user_id)
        if contact is None:
            raise FatalError(message="No contact details for user", details={"user_id": user_id})

        prompts = order_prompts(await self._prompts.get_active_prompts(user_id))
        if not prompts:
            raise FatalError(message="User has no active prompts", details={"user_id": user_id})

        async with self._session_scope() as db:
            state = await ReflectionSessionRepository(db).create(user_id, attempt_id)

        request = PlaceCallRequest(
            to=contact.phone_number,
            from_number=self._from_number,
            callback_url=self._status_callback_url,
            attempt_id=attempt_id,
            session_id=state.id,
        )
        try:
            response = await self._telephony.place_call(request)
        except TelephonyProviderError as e:
            await self._apply(state.id, lambda s: s.abandon(f"call placement failed: {e}"))
            details = {"attempt_id": str(attempt_id), "error_code": e.error_code}
            if e.retryable:
                raise TransientError(message=str(e), details=details) from e
            raise FatalError(message=str(e), details=details) from e

        record = PhoneCallRecord(
            provider_call_id=response.provider_call_id,
            session_id=state.id,
            attempt_id=attempt_id,
            user_id=user_id,
            on_date=on_date,
            contact=contact,
            prompts=prompts,
        )
        self._calls.register(record)
        logger.info(
            "Reflection call placed",
            extra={
                "provider_call_id": record.provider_call_id,
                "attempt_id": str(attempt_id),
                "session_id": str(state.id),
                "prompt_count": len(prompts),
            },
        )
        return record

    # ------------------------------------------------------------------
    # Provider signals
    # ------------------------------------------------------------------

    def mark_connected(self, provider_call_id: str) -> bool:
        record = self._calls.get(provider_call_id)
        if record is None:
            return False
        record.connected = True
        return True

    async def handle_connected(self, provider_call_id: str, channel: AudioChannel) -> bool:
        """Attach the media channel and start the turn loop.

        A second channel for a call that is already running replaces the
        first (the provider reconnects the stream after text playback).
        """
        record = self._calls.get(provider_call_id)
        if record is None:
            logger.warning("Media channel for unknown call", extra={"provider_call_id": provider_call_id})
            await channel.close()
            return False

        if record.is_running:
            previous, record.channel = record.channel, channel
            if previous is not None and previous is not channel:
                await previous.close()
            return True

        if record.task is not None:
            await channel.close()
            return False

        record.channel = channel
        record.connected = True
        record.task = asyncio.create_task(self._run_call(record), name=f"call-{provider_call_id}")
        return True

    async def handle_disconnect(self, provider_call_id: str, reason: str) -> bool:
        """Provider says the call ended. Cancels any in-flight turn."""
        record = self._calls.get(provider_call_id)
        if record is None:
            return False

        if record.disconnect_reason is None:
            record.disconnect_reason = reason

        if record.is_running:
            record.task.cancel()  # type: ignore[union-attr]
            return True

        if record.task is None:
            await self._finalize_abandoned(record, record.disconnect_reason)
            await self._release(record)
        return True

    async def handle_call_ended(self, provider_call_id: str, reason: str) -> CallEndOutcome:
        """The provider reports the call is over.

        Whether the user ever answered is decided from this call's record,
        not from the order in which status callbacks arrived. An answered
        call is finalized like any disconnect. A call that never connected
        closes its NOT_STARTED session without touching the attempt, and
        the attempt id is returned for the retry scheduler.
        """
        record = self._calls.get(provider_call_id)
        if record is None:
            return CallEndOutcome(CallEndKind.UNKNOWN)
        if record.was_answered:
            await self.handle_disconnect(provider_call_id, reason)
            return CallEndOutcome(CallEndKind.DISCONNECTED)

        await self._finalize_abandoned(record, reason, settle_attempt=False)
        await self._release(record)
        return CallEndOutcome(CallEndKind.UNANSWERED, record.attempt_id)

    async def sweep_stale(self, now: datetime | None = None) -> int:
        """Release everything a live call should have settled by now.

        Covers live records older than the max call duration, sessions left
        NOT_STARTED or IN_PROGRESS by a previous process, and dispatched
        attempts that nothing will ever retry. Returns the number swept.
        """
        now = now or datetime.now(timezone.utc)
        max_age = timedelta(seconds=self._config.max_call_duration_seconds)
        stale = self._calls.older_than(now, max_age)
        for record in stale:
            logger.warning(
                "Sweeping stale call",
                extra={"provider_call_id": record.provider_call_id, "created_at": record.created_at.isoformat()},
            )
            await self.handle_disconnect(record.provider_call_id, "stale call sweep")

        cutoff = now - max_age
        swept_sessions = await self._sweep_stale_sessions(cutoff)
        swept_attempts = await self._sweep_orphaned_attempts(cutoff)
        return len(stale) + swept_sessions + swept_attempts

    async def _sweep_stale_sessions(self, cutoff: datetime) -> int:
        live = self._calls.session_ids()
        stale: list[tuple[ReflectionSessionState, CallRef | None]] = []
        async with self._session_scope() as db:
            registry = CallAttemptRegistry(db)
            for state in await ReflectionSessionRepository(db).list_stale(cutoff):
                if state.id in live:
                    continue
                attempt = await registry.get_by_id(state.attempt_id) if state.attempt_id else None
                ref = CallRef("", state.id, attempt.id, attempt.user_id, attempt.on_date) if attempt else None
                stale.append((state, ref))

        for state, ref in stale:
            logger.warning(
                "Sweeping stale session",
                extra={"session_id": str(state.id), "status": state.status.value},
            )
            if ref is None:
                await self._apply(state.id, lambda s: s.abandon("stale call sweep"))
            else:
                await self._finalize_abandoned(ref, "stale call sweep")
        return len(stale)

    async def _sweep_orphaned_attempts(self, cutoff: datetime) -> int:
        """Settle PENDING attempts that were dequeued but never reached a retry path."""
        if self._retry_factory is None:
            return 0

        live = self._calls.attempt_ids()
        swept = 0
        async with self._session_scope() as db:
            for attempt in await CallAttemptRegistry(db).orphaned(cutoff):
                if attempt.id in live:
                    continue
                sessions = await ReflectionSessionRepository(db).get_by_attempt(attempt.id)
                if any(not s.is_terminal for s in sessions):
                    continue
                if any(s.status == SessionStatus.COMPLETED for s in sessions):
                    result = await CallAttemptRegistry(db).mark_failed(
                        attempt.id, "session completed but no journal entry was recorded"
                    )
                elif any(s.has_captured_anything for s in sessions):
                    # Partial answers are left for the partial session policy.
                    continue
                else:
                    result = await self._retry_factory(db).handle_dispatch_failure(
                        attempt.id, "call interrupted before it was answered"
                    )
                swept += 1
                if not result.ok:
                    logger.warning(
                        "Could not settle orphaned attempt",
                        extra={"attempt_id": str(attempt.id), "error": str(result.error)},
                    )
                else:
                    logger.warning("Orphaned attempt settled", extra={"attempt_id": str(attempt.id)})
        return swept

    # ------------------------------------------------------------------
    # Call task
    # ------------------------------------------------------------------

    async def _run_call(self, record: PhoneCallRecord) -> None:
        token = correlation_id_var.set(record.provider_call_id)
        try:
            await self._drive(record)
        except asyncio.CancelledError:
            await self._finalize_abandoned(record, record.disconnect_reason or "call cancelled")
            if record.disconnect_reason is None:
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
        except CallDisconnected as e:
            if record.disconnect_reason is None:
                record.disconnect_reason = e.reason
            await self._finalize_abandoned(record, record.disconnect_reason)
            if e.hang_up:
                await self._hangup(record)
        except FatalError as e:
            logger.error("Upstream failure during call", extra={"error": str(e)})
            await self._finalize_abandoned(record, f"upstream error: {e}")
            await self._hangup(record)
        except Exception:
            logger.exception("Unexpected error during call")
            await self._finalize_abandoned(record, "internal error")
            await self._hangup(record)
        finally:
            await self._release(record)
            correlation_id_var.reset(token)

    async def _drive(self, record: PhoneCallRecord) -> None:
        started = await self._apply(record.session_id, lambda s: s.start(record.prompts))
        if not started.ok:
            raise FatalError(message=f"Session could not start: {started.error}")
        await self._publish(LifecycleEventType.SESSION_STARTED, record, prompt_count=len(record.prompts))

        state = started.unwrap()
        first_turn = True
        while (prompt := state.current_prompt) is not None:
            try:
                state = await asyncio.wait_for(
                    self._run_turn(record, prompt, greet=first_turn),
                    timeout=self._config.idle_timeout_seconds,
                )
            except asyncio.TimeoutError:
                raise CallDisconnected("idle timeout", hang_up=True) from None
            first_turn = False

        await self._complete(record)

    async def _run_turn(
        self,
        record: PhoneCallRecord,
        prompt: PromptSnapshot,
        greet: bool,
    ) -> ReflectionSessionState:
        reprompts = 0
        while True:
            if greet and reprompts == 0:
                key = f"{prompt.prompt_id}:greeting"
                text = f"{greeting(record.contact.display_name, record.contact.name_pronunciation)} {prompt.text}"
            elif reprompts:
                key = f"{prompt.prompt_id}:reprompt"
                text = f"{REPROMPT_PREFIX} {prompt.text}"
            else:
                key, text = prompt.prompt_id, prompt.text

            await self._speak(record, key, text)

            capture = await self._capture_window(record).capture()
            if capture.channel_closed:
                raise CallDisconnected("user hung up")

            transcript = await self._transcribe(capture.audio)
            rating = parse_rating(transcript) if prompt.is_rating_prompt else None
            if rating is not None or await self._is_substantive(prompt, transcript):
                break
            if reprompts >= self._config.max_reprompts_per_prompt:
                break
            reprompts += 1
            logger.info(
                "Answer not substantive; asking again",
                extra={"prompt_id": prompt.prompt_id, "capture_end": capture.end_reason.value},
            )

        if rating is not None:
            result = await self._apply(record.session_id, lambda s: s.set_rating(rating))
        else:
            result = await self._apply(
                record.session_id, lambda s: s.record_response(prompt.prompt_id, transcript)
            )

        if not result.ok:
            current = await self.session_status(record.session_id)
            if current is not None and current.is_terminal:
                raise CallDisconnected("session closed")
            raise FatalError(message=f"Could not record answer: {result.error}")

        state = result.unwrap()
        await self._publish(
            LifecycleEventType.PROMPT_ANSWERED,
            record,
            prompt_id=prompt.prompt_id,
            prompt_index=state.current_prompt_index - 1,
            rating=rating,
        )
        return state

    async def _complete(self, record: PhoneCallRecord) -> None:
        result = await self._apply(record.session_id, lambda s: s.complete(len(record.prompts)))
        if not result.ok:
            current = await self.session_status(record.session_id)
            if current is not None and current.is_terminal:
                logger.info("Session already terminal at completion", extra={"status": current.status.value})
                return
            raise FatalError(message=f"Session could not complete: {result.error}")

        state = result.unwrap()
        # A hangup during the goodbye must not lose the journal entry.
        completion = asyncio.ensure_future(self._record_completion(record, state))
        completion.add_done_callback(_log_completion_failure)
        await asyncio.shield(completion)

        try:
            await self._speak(record, "closing", closing_message(record.contact.timezone))
        except (CallDisconnected, TransientError, FatalError):
            logger.info("Caller left before the closing message")
        await self._hangup(record)

    async def _record_completion(self, record: PhoneCallRecord, state: ReflectionSessionState) -> None:
        await self._publish(
            LifecycleEventType.SESSION_COMPLETED,
            record,
            response_count=len(state.responses),
            rating=state.rating,
        )
        try:
            entry_id = await self._journal.materialize(state)
        except Exception as e:
            logger.exception("Journal materialization failed", extra={"session_id": str(record.session_id)})
            async with self._session_scope() as db:
                failed = await CallAttemptRegistry(db).mark_failed(
                    record.attempt_id, f"journal materialization failed: {e}"
                )
            if not failed.ok:
                logger.error(
                    "Could not mark attempt failed",
                    extra={"attempt_id": str(record.attempt_id), "error": str(failed.error)},
                )
            return

        async with self._session_scope() as db:
            marked = await CallAttemptRegistry(db).mark_completed(record.user_id, record.on_date, entry_id)
        if not marked.ok:
            logger.error(
                "Could not mark attempt completed",
                extra={"attempt_id": str(record.attempt_id), "error": str(marked.error)},
            )
        else:
            logger.info(
                "Reflection session completed",
                extra={"session_id": str(record.session_id), "entry_id": entry_id},
            )

    async def _finalize_abandoned(
        self,
        record: CallRef,
        reason: str,
        settle_attempt: bool = True,
    ) -> None:
        """Abandon the session if it is still live, then settle the attempt."""
        transitioned = False

        def abandon(state: ReflectionSessionState) -> OperationResult[None]:
            nonlocal transitioned
            transitioned = not state.is_terminal
            return state.abandon(reason)

        result = await self._apply(record.session_id, abandon)
        if not result.ok:
            logger.error("Could not abandon session", extra={"error": str(result.error)})
            return

        state = result.unwrap()
        if state.status != SessionStatus.ABANDONED or not transitioned:
            return

        await self._publish(
            LifecycleEventType.SESSION_ABANDONED,
            record,
            reason=reason,
            response_count=len(state.responses),
        )
        logger.info(
            "Reflection session abandoned",
            extra={"session_id": str(record.session_id), "reason": reason, "responses": len(state.responses)},
        )

        if not settle_attempt:
            return
        if state.has_captured_anything:
            await self._partial_policy.handle_partial(state)
            return

        async with self._session_scope() as db:
            missed = await CallAttemptRegistry(db).mark_missed(record.user_id, record.on_date)
        if not missed.ok:
            logger.warning(
                "Could not mark attempt missed",
                extra={"attempt_id": str(record.attempt_id), "error": str(missed.error)},
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _capture_window(self, record: PhoneCallRecord) -> CaptureWindow:
        return CaptureWindow(
            channel_source=lambda: record.channel,
            silence_threshold=self._config.silence_threshold_seconds,
            capture_timeout=self._config.capture_timeout_seconds,
            energy_threshold=self._config.voice_energy_threshold,
        )

    async def _speak(self, record: PhoneCallRecord, key: str, text: str) -> None:
        audio = record.audio_cache.get(key)
        if audio is None:
            try:
                audio = await self._synthesis.synthesize(
                    text, pronunciation_hint=record.contact.name_pronunciation
                )
            except TransientError:
                logger.warning("Speech synthesis unavailable; using provider voice", extra={"key": key})
                try:
                    await self._telephony.play_text(record.provider_call_id, text)
                except TelephonyProviderError as e:
                    raise FatalError(message=f"Text playback failed: {e}") from e
                return
            record.audio_cache[key] = audio

        channel = record.channel
        if channel is None:
            raise CallDisconnected("media channel closed")
        await channel.play(audio)

    async def _transcribe(self, audio: bytes) -> str:
        if not audio:
            return ""
        try:
            return (await self._transcription.transcribe(audio)).strip()
        except TransientError:
            logger.warning("Transcription failed transiently; keeping empty answer")
            return ""

    async def _is_substantive(self, prompt: PromptSnapshot, transcript: str) -> bool:
        if not transcript:
            return False
        if self._completeness is None:
            return True
        try:
            return await self._completeness.is_substantive(prompt.text, transcript)
        except Exception:
            logger.warning("Completeness checker unavailable; accepting answer", exc_info=True)
            return True

    async def _hangup(self, record: PhoneCallRecord) -> None:
        try:
            await self._telephony.hangup(record.provider_call_id)
        except TelephonyProviderError:
            logger.warning("Hangup failed", extra={"provider_call_id": record.provider_call_id})

    async def _release(self, record: PhoneCallRecord) -> None:
        self._calls.pop(record.provider_call_id)
        record.audio_cache.clear()
        channel, record.channel = record.channel, None
        if channel is not None:
            try:
                await channel.close()
            except Exception:
                logger.warning("Error closing media channel", exc_info=True)

    async def _apply(self, session_id: UUID, transition: Transition) -> OperationResult[ReflectionSessionState]:
        async with self._session_scope() as db:
            return await ReflectionSessionRepository(db).apply(session_id, transition)

    async def _publish(self, event_type: LifecycleEventType, record: CallRef, **payload: Any) -> None:
        await self._publisher.publish(
            event_type,
            session_id=record.session_id,
            attempt_id=record.attempt_id,
            user_id=record.user_id,
            provider_call_id=record.provider_call_id,
            **payload,
        )


def _log_completion_failure(task: "asyncio.Future[None]") -> None:
    # The caller may have been cancelled while the shielded bookkeeping ran on.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Completion bookkeeping failed", exc_info=exc)
