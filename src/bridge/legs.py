"""Connection handles the session bridge relays between."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

LOGGER = logging.getLogger(__name__)


class Leg(Protocol):
    name: str

    @property
    def is_open(self) -> bool: ...

    async def send_json(self, data: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class ModelLeg(Leg, Protocol):
    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


class WebSocketLeg:
    """Server-side leg over an accepted FastAPI websocket.

    The route that accepted the socket owns the receive loop; the bridge only
    sends and closes.
    """

    def __init__(self, websocket: WebSocket, name: str) -> None:
        self.name = name
        self._websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self._websocket.application_state == WebSocketState.CONNECTED
            and self._websocket.client_state == WebSocketState.CONNECTED
        )

    async def send_json(self, data: dict[str, Any]) -> None:
        if not self.is_open:
            return
        try:
            await self._websocket.send_text(json.dumps(data))
        except (WebSocketDisconnect, RuntimeError) as exc:
            # The receive loop sees the disconnect and tears the leg down.
            LOGGER.debug("Send on %s leg failed: %s", self.name, exc)

    async def close(self) -> None:
        if not self.is_open:
            return
        try:
            await self._websocket.close()
        except RuntimeError as exc:
            LOGGER.debug("Close on %s leg failed: %s", self.name, exc)
