"""FastAPI routes for placing and inspecting calls, plus the observer stream."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from api.dependencies import get_call_controller, get_call_store, get_session_manager
from api.schemas import (
    CallStatusResponse,
    CallSummary,
    CancelCallResponse,
    PlaceCallRequest,
    PlaceCallResponse,
    TranscriptResponse,
)
from bridge.legs import WebSocketLeg
from bridge.manager import SessionManager
from calls.controller import CallController
from calls.errors import CallNotFoundError, SessionCapacityError
from calls.models import CallState
from calls.store import CallStore

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.post("/calls", response_model=PlaceCallResponse, status_code=201)
async def place_call(
    payload: PlaceCallRequest,
    controller: CallController = Depends(get_call_controller),
) -> PlaceCallResponse:
    call_id = await controller.place_call(
        to=payload.to,
        from_=payload.from_,
        goal=payload.goal,
        context=payload.context,
        instructions=payload.instructions,
        timeout_seconds=payload.timeout_seconds,
    )
    return PlaceCallResponse(call_id=call_id)


@router.get("/calls", response_model=list[CallSummary])
async def list_calls(
    state: CallState | None = None,
    store: CallStore = Depends(get_call_store),
) -> list[CallSummary]:
    records = await store.list_calls(state)
    return [
        CallSummary(call_id=record.id, state=record.state.value, to=record.to, goal=record.goal)
        for record in records
    ]


@router.get("/calls/{call_id}", response_model=CallStatusResponse)
async def get_call_status(
    call_id: str,
    controller: CallController = Depends(get_call_controller),
) -> dict:
    status = await controller.get_status(call_id)
    if status is None:
        raise CallNotFoundError()
    return status


@router.post("/calls/{call_id}/cancel", response_model=CancelCallResponse)
async def cancel_call(
    call_id: str,
    controller: CallController = Depends(get_call_controller),
) -> CancelCallResponse:
    result = await controller.cancel_call(call_id)
    return CancelCallResponse(success=result.success, message=result.message)


@router.get("/calls/{call_id}/transcript", response_model=TranscriptResponse)
async def get_call_transcript(
    call_id: str,
    controller: CallController = Depends(get_call_controller),
) -> dict:
    transcript = await controller.get_transcript(call_id)
    if transcript is None:
        raise CallNotFoundError()
    return transcript


@router.websocket("/logs")
async def observer_stream(
    websocket: WebSocket,
    manager: SessionManager = Depends(get_session_manager),
) -> None:
    await websocket.accept()
    try:
        bridge = await manager.for_observer(websocket.query_params.get("callId"))
    except SessionCapacityError as exc:
        LOGGER.warning("Rejecting observer: %s", exc.detail)
        await websocket.close(code=1013)
        return
    except CallNotFoundError as exc:
        LOGGER.warning("Rejecting observer: %s", exc.detail)
        await websocket.close(code=1008)
        return

    leg = WebSocketLeg(websocket, name="observer")
    await bridge.attach_observer(leg)
    try:
        while leg.is_open:
            message = await websocket.receive_text()
            await bridge.handle_observer_message(message)
    except WebSocketDisconnect:
        LOGGER.info("Observer disconnected")
    finally:
        await bridge.observer_closed(leg)
