"""Twilio Voice integration.

This module provides:
- TwiML webhook connecting an answered call to the media stream.
- Status callback mapping Twilio call progress onto call records.
- The Media Streams websocket (the telephony leg of the session bridge).
"""

from __future__ import annotations

import logging
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, Request, Response, WebSocket, WebSocketDisconnect

from api.dependencies import get_call_controller, get_session_manager
from bridge.legs import WebSocketLeg
from bridge.manager import SessionManager
from calls.controller import CallController
from calls.errors import SessionCapacityError
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])


def _twiml_response(xml: str) -> Response:
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def _twiml_connect_stream(*, stream_url: str) -> str:
    stream = escape(stream_url, {'"': "&quot;"})
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        "<Connect>"
        f"<Stream url=\"{stream}\" />"
        "</Connect>"
        "</Response>"
    )


def _media_stream_url(request: Request) -> str:
    settings = get_settings()
    if settings.public_base_url:
        return _to_ws_url(f"{settings.public_base_url}/api/twilio/media")
    # Fallback to request host. This may not work behind proxies; prefer PUBLIC_BASE_URL.
    return _to_ws_url(str(request.base_url).rstrip("/") + "/api/twilio/media")


@router.api_route("/twiml", methods=["GET", "POST"])
async def twilio_twiml(request: Request) -> Response:
    return _twiml_response(_twiml_connect_stream(stream_url=_media_stream_url(request)))


@router.post("/status", status_code=204)
async def twilio_status_callback(
    request: Request,
    controller: CallController = Depends(get_call_controller),
) -> Response:
    form = await request.form()
    call_sid = str(form.get("CallSid") or "").strip()
    call_status = str(form.get("CallStatus") or "").strip() or None
    answered_by = str(form.get("AnsweredBy") or "").strip() or None

    if call_sid:
        new_state = await controller.update_from_provider_webhook(
            call_sid, call_status, answered_by=answered_by
        )
        LOGGER.info(
            "Twilio status %s (answered by %s) for %s -> %s",
            call_status,
            answered_by,
            call_sid,
            new_state.value if new_state else "unchanged",
        )
    return Response(status_code=204)


@router.websocket("/media")
async def twilio_media_stream(
    websocket: WebSocket,
    manager: SessionManager = Depends(get_session_manager),
) -> None:
    await websocket.accept()
    try:
        bridge = await manager.for_telephony()
    except SessionCapacityError as exc:
        LOGGER.warning("Rejecting media stream: %s", exc.detail)
        await websocket.close(code=1013)
        return

    leg = WebSocketLeg(websocket, name="telephony")
    await bridge.attach_telephony(leg)
    try:
        while leg.is_open:
            message = await websocket.receive_text()
            await bridge.handle_telephony_message(message)
    except WebSocketDisconnect:
        LOGGER.info("Media stream disconnected")
    finally:
        await bridge.telephony_closed(leg)
