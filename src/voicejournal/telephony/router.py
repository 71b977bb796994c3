"""
FastAPI router for telephony webhooks.

Status callbacks are always ACKed with 200 so the provider never retries a
callback because our processing failed. The media stream websocket hands
the live channel to the orchestrator.
"""

import asyncio
from typing import Any

from fastapi import APIRouter, Request, WebSocket, status
from fastapi.responses import JSONResponse

from voicejournal.shared.logging import get_logger
from voicejournal.telephony.interface import TelephonyProviderError
from voicejournal.telephony.media_stream import TwilioMediaStreamChannel

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks/telephony", tags=["webhooks"])

STREAM_START_TIMEOUT_SECONDS = 10.0


@router.post("/status", status_code=status.HTTP_200_OK)
async def receive_status_callback(request: Request) -> Any:
    provider = request.app.state.telephony
    handler = getattr(request.app.state, "event_handler", None)
    if handler is None:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"ok": False})

    body = await request.body()
    signature = request.headers.get("X-Twilio-Signature", "")
    if not provider.validate_signature(body, signature, str(request.url)):
        logger.warning("Rejected status callback with bad signature")
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"ok": False})

    if request.headers.get("content-type", "").startswith("application/json"):
        payload: dict[str, Any] = await request.json()
    else:
        payload = dict(await request.form())
    payload.update(dict(request.query_params))

    try:
        event = provider.parse_status_callback(payload)
    except TelephonyProviderError as e:
        logger.warning("Unparseable status callback", extra={"error": str(e), "error_code": e.error_code})
        return {"ok": False}

    try:
        processed = await handler.handle_event(event)
    except Exception:
        logger.exception("Failed to process status callback (ACKing 200)")
        return {"ok": False}

    return {"ok": True, "processed": processed}


@router.websocket("/stream")
async def media_stream(websocket: WebSocket) -> None:
    await websocket.accept()
    channel = TwilioMediaStreamChannel(websocket)
    reader = asyncio.create_task(channel.run(), name="media-stream-reader")

    try:
        call_sid = await channel.wait_started(timeout=STREAM_START_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Media stream never sent a start frame")
        await channel.close()
        reader.cancel()
        return

    orchestrator = getattr(websocket.app.state, "orchestrator", None)
    if orchestrator is None or not call_sid:
        await channel.close()
    else:
        await orchestrator.handle_connected(call_sid, channel)

    await reader
