"""
Twilio Media Streams as an ``AudioChannel``.

A reader task decodes the provider's JSON frames into channel events. Played
audio is followed by a ``mark`` message; ``play`` returns once Twilio echoes
the mark back, i.e. once the caller has heard everything.
"""

import asyncio
import base64
import json
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from voicejournal.orchestration.collaborators import ChannelEvent, ChannelEventKind
from voicejournal.shared.logging import get_logger

logger = get_logger(__name__)

# 20 ms of 8 kHz mu-law
FRAME_BYTES = 160

# DTMF key that ends an answer early
STOP_DIGIT = "#"


class TwilioMediaStreamChannel:
    """Duplex audio channel over one Twilio media stream websocket."""

    def __init__(self, websocket: WebSocket, frame_bytes: int = FRAME_BYTES) -> None:
        self._ws = websocket
        self._frame_bytes = frame_bytes
        self._events: asyncio.Queue[ChannelEvent] = asyncio.Queue()
        self._marks: dict[str, asyncio.Future[None]] = {}
        self._mark_seq = 0
        self._started = asyncio.Event()
        self._closed = asyncio.Event()
        self.stream_sid: str | None = None
        self.call_sid: str | None = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def run(self) -> None:
        """Read provider frames until the stream stops or the socket drops."""
        try:
            while not self._closed.is_set():
                raw = await self._ws.receive_text()
                self.handle_message(json.loads(raw))
        except WebSocketDisconnect:
            logger.info("Media stream socket disconnected", extra={"call_sid": self.call_sid})
        finally:
            self._finish()

    async def wait_started(self, timeout: float) -> str | None:
        await asyncio.wait_for(self._started.wait(), timeout=timeout)
        return self.call_sid

    def handle_message(self, message: dict[str, Any]) -> None:
        match message.get("event"):
            case "start":
                start = message.get("start") or {}
                self.stream_sid = message.get("streamSid") or start.get("streamSid")
                self.call_sid = start.get("callSid")
                self._started.set()
                logger.info(
                    "Media stream started",
                    extra={"call_sid": self.call_sid, "stream_sid": self.stream_sid},
                )
            case "media":
                payload = (message.get("media") or {}).get("payload") or ""
                self._events.put_nowait(ChannelEvent(ChannelEventKind.MEDIA, base64.b64decode(payload)))
            case "dtmf":
                if (message.get("dtmf") or {}).get("digit") == STOP_DIGIT:
                    self._events.put_nowait(ChannelEvent(ChannelEventKind.STOP))
            case "mark":
                name = (message.get("mark") or {}).get("name")
                future = self._marks.pop(name, None)
                if future is not None and not future.done():
                    future.set_result(None)
            case "stop":
                self._finish()

    async def receive(self) -> ChannelEvent:
        if self._closed.is_set() and self._events.empty():
            return ChannelEvent(ChannelEventKind.CLOSED)
        return await self._events.get()

    async def play(self, audio: bytes) -> None:
        if self._closed.is_set():
            return

        for offset in range(0, len(audio), self._frame_bytes):
            chunk = audio[offset : offset + self._frame_bytes]
            await self._send(
                {
                    "event": "media",
                    "streamSid": self.stream_sid,
                    "media": {"payload": base64.b64encode(chunk).decode("ascii")},
                }
            )

        self._mark_seq += 1
        name = f"play-{self._mark_seq}"
        done = asyncio.get_running_loop().create_future()
        self._marks[name] = done
        await self._send({"event": "mark", "streamSid": self.stream_sid, "mark": {"name": name}})
        await done

        # Audio that arrived while the prompt played is not part of the answer.
        self._discard_inbound_media()

    async def close(self) -> None:
        already_closed = self._closed.is_set()
        self._finish()
        if already_closed:
            return
        try:
            await self._ws.close()
        except RuntimeError:
            logger.debug("Media stream socket already closed", extra={"call_sid": self.call_sid})

    async def _send(self, message: dict[str, Any]) -> None:
        if self._closed.is_set():
            return
        try:
            await self._ws.send_text(json.dumps(message))
        except (WebSocketDisconnect, RuntimeError):
            self._finish()

    def _discard_inbound_media(self) -> None:
        kept: list[ChannelEvent] = []
        while not self._events.empty():
            event = self._events.get_nowait()
            if event.kind != ChannelEventKind.MEDIA:
                kept.append(event)
        for event in kept:
            self._events.put_nowait(event)

    def _finish(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._started.set()
        self._events.put_nowait(ChannelEvent(ChannelEventKind.CLOSED))
        for future in self._marks.values():
            if not future.done():
                future.set_result(None)
        self._marks.clear()
