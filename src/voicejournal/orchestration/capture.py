"""
Answer capture window.

Reads frames from the live channel until the caller stops talking (trailing
silence after speech), sends an explicit stop, the stream closes, or the
hard capture timeout expires.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from voicejournal.orchestration.audio import frame_duration, is_voiced
from voicejournal.orchestration.collaborators import AudioChannel, ChannelEventKind


class CaptureEndReason(str, Enum):
    SILENCE = "silence"
    STOP = "stop"
    TIMEOUT = "timeout"
    CLOSED = "closed"


@dataclass(frozen=True)
class CaptureResult:
    audio: bytes
    heard_speech: bool
    end_reason: CaptureEndReason

    @property
    def channel_closed(self) -> bool:
        return self.end_reason == CaptureEndReason.CLOSED


class CaptureWindow:
    """One bounded listen on the call channel.

    ``channel_source`` is consulted again when a channel closes, so a stream
    replaced mid-call (provider reconnect) does not count as a hangup.
    """

    def __init__(
        self,
        channel_source: Callable[[], AudioChannel | None],
        silence_threshold: float = 3.0,
        capture_timeout: float = 30.0,
        energy_threshold: int = 500,
    ) -> None:
        self._channel_source = channel_source
        self._silence_threshold = silence_threshold
        self._capture_timeout = capture_timeout
        self._energy_threshold = energy_threshold

    async def capture(self) -> CaptureResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._capture_timeout
        buffer = bytearray()
        heard_speech = False
        trailing_silence = 0.0

        channel = self._channel_source()
        while True:
            if channel is None:
                return CaptureResult(bytes(buffer), heard_speech, CaptureEndReason.CLOSED)

            remaining = deadline - loop.time()
            if remaining <= 0:
                return CaptureResult(bytes(buffer), heard_speech, CaptureEndReason.TIMEOUT)

            try:
                event = await asyncio.wait_for(channel.receive(), timeout=remaining)
            except asyncio.TimeoutError:
                return CaptureResult(bytes(buffer), heard_speech, CaptureEndReason.TIMEOUT)

            if event.kind == ChannelEventKind.MEDIA:
                buffer.extend(event.payload)
                if is_voiced(event.payload, self._energy_threshold):
                    heard_speech = True
                    trailing_silence = 0.0
                elif heard_speech:
                    trailing_silence += frame_duration(event.payload)
                    if trailing_silence >= self._silence_threshold:
                        return CaptureResult(bytes(buffer), heard_speech, CaptureEndReason.SILENCE)
            elif event.kind == ChannelEventKind.STOP:
                return CaptureResult(bytes(buffer), heard_speech, CaptureEndReason.STOP)
            else:
                replacement = self._channel_source()
                if replacement is not None and replacement is not channel:
                    channel = replacement
                    continue
                return CaptureResult(bytes(buffer), heard_speech, CaptureEndReason.CLOSED)
