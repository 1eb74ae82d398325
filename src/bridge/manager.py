"""Owns the session bridges of the process, keyed by call id."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from bridge.functions import FunctionRegistry
from bridge.session import ModelConnector, SessionBridge
from calls.errors import CallNotFoundError, SessionCapacityError
from calls.store import CallStore

LOGGER = logging.getLogger(__name__)


class SessionManager:
    """Hands out session bridges, at most ``max_sessions`` at a time.

    A bridge with no call yet (an observer waiting for the next call) sits in
    the idle slot under the key ``None``; the next telephony leg adopts it.
    A bridge whose call ended before any media stream arrived still holds its
    key, so stale keys are reclaimed before a new slot is refused.
    """

    def __init__(
        self,
        store: CallStore,
        functions: FunctionRegistry,
        model_connector: ModelConnector,
        *,
        max_sessions: int = 1,
        **bridge_options: Any,
    ) -> None:
        self._store = store
        self._functions = functions
        self._model_connector = model_connector
        self._max_sessions = max_sessions
        self._bridge_options = bridge_options
        self._bridges: dict[str | None, SessionBridge] = {}
        self._lock = asyncio.Lock()

    @property
    def bridges(self) -> dict[str | None, SessionBridge]:
        return dict(self._bridges)

    def get(self, call_id: str | None) -> SessionBridge | None:
        return self._bridges.get(call_id)

    async def for_telephony(self) -> SessionBridge:
        active = await self._store.get_active_call()
        return await self._acquire(active.id if active else None)

    async def for_observer(self, call_id: str | None = None) -> SessionBridge:
        if call_id is None:
            active = await self._store.get_active_call()
            call_id = active.id if active else None
        else:
            record = await self._store.get(call_id)
            if record is None or record.is_terminal:
                raise CallNotFoundError(f"No live call {call_id}")
        return await self._acquire(call_id)

    async def _acquire(self, key: str | None) -> SessionBridge:
        async with self._lock:
            bridge = self._bridges.get(key)
            if bridge is not None:
                return bridge
            await self._reclaim_stale()
            return self._adopt_or_open(key)

    def _adopt_or_open(self, key: str | None) -> SessionBridge:
        if key is not None and None in self._bridges:
            bridge = self._bridges.pop(None)
            self._bridges[key] = bridge
            return bridge

        if len(self._bridges) >= self._max_sessions:
            raise SessionCapacityError(
                f"All {self._max_sessions} session slot(s) are in use"
            )

        bridge = SessionBridge(
            self._store,
            self._functions,
            self._model_connector,
            on_release=self._release,
            **self._bridge_options,
        )
        self._bridges[key] = bridge
        LOGGER.info("Opened session for call %s", key or "(idle)")
        return bridge

    async def _reclaim_stale(self) -> None:
        for key, bridge in list(self._bridges.items()):
            if key is None or bridge.session.telephony is not None:
                continue
            record = await self._store.get(key)
            if record is not None and not record.is_terminal:
                continue
            if self._bridges.get(key) is not bridge:
                continue

            del self._bridges[key]
            if bridge.session.observer is not None and None not in self._bridges:
                self._bridges[None] = bridge
                LOGGER.info("Call %s ended before its media stream; session is idle again", key)
            else:
                LOGGER.info("Reclaimed session of ended call %s", key)

    def _release(self, bridge: SessionBridge) -> None:
        for key, candidate in list(self._bridges.items()):
            if candidate is bridge:
                del self._bridges[key]
                LOGGER.info("Released session for call %s", key or "(idle)")

        if bridge.session.observer is not None and None not in self._bridges:
            self._bridges[None] = bridge
