"""Client side of the model leg: the OpenAI Realtime websocket."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException
from websockets.protocol import State

from calls.errors import ConfigurationError, ProviderError
from config.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)


class RealtimeLeg:
    name = "model"

    def __init__(self, connection: ClientConnection) -> None:
        self._connection = connection

    @property
    def is_open(self) -> bool:
        return self._connection.state is State.OPEN

    async def send_json(self, data: dict[str, Any]) -> None:
        try:
            await self._connection.send(json.dumps(data))
        except ConnectionClosed as exc:
            LOGGER.debug("Send on model leg after close: %s", exc)

    async def close(self) -> None:
        await self._connection.close()

    def __aiter__(self) -> AsyncIterator[str | bytes]:
        return self._messages()

    async def _messages(self) -> AsyncIterator[str | bytes]:
        try:
            async for message in self._connection:
                yield message
        except ConnectionClosedError as exc:
            LOGGER.warning("Model leg closed with error: %s", exc)


async def connect_realtime(settings: Settings | None = None) -> RealtimeLeg:
    settings = settings or get_settings()
    if not settings.openai_api_key:
        raise ConfigurationError("OPENAI_API_KEY is not configured")

    try:
        connection = await connect(
            settings.realtime_url,
            additional_headers={
                "Authorization": f"Bearer {settings.openai_api_key}",
                "OpenAI-Beta": "realtime=v1",
            },
            ping_interval=20,
            ping_timeout=20,
        )
    except (OSError, TimeoutError, WebSocketException) as exc:
        raise ProviderError(f"Realtime model connection failed: {exc}") from exc

    LOGGER.info("Model leg connected to %s", settings.realtime_url)
    return RealtimeLeg(connection)
