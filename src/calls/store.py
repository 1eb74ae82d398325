"""In-memory registry of call records."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from calls.errors import CallFrozenError, CallNotFoundError, IllegalTransitionError
from calls.models import CallRecord, CallResult, CallState, Role, TranscriptEntry, can_transition

LOGGER = logging.getLogger(__name__)

_UPDATABLE_FIELDS = frozenset({"error"})
_TRANSITION_FIELDS = frozenset({"error", "result"})


class CallStore:
    """In-memory store for call records.

    Note: This is a single-process store and nothing survives a restart.
    Every mutation runs under one lock, so read-modify-write on a record
    never interleaves with another mutation.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._calls: dict[str, CallRecord] = {}
        self._by_provider_id: dict[str, str] = {}
        self._active_call_id: str | None = None
        self._last_tick: datetime | None = None

    def _now(self) -> datetime:
        # Timestamps handed out by the store are strictly increasing.
        now = datetime.now(timezone.utc)
        if self._last_tick is not None and now <= self._last_tick:
            now = self._last_tick + timedelta(microseconds=1)
        self._last_tick = now
        return now

    def _require(self, call_id: str) -> CallRecord:
        record = self._calls.get(call_id)
        if record is None:
            raise CallNotFoundError(f"Call {call_id} not found")
        return record

    async def create(
        self,
        *,
        to: str,
        from_: str,
        goal: str,
        context: dict[str, Any] | None = None,
        instructions: str | None = None,
    ) -> str:
        async with self._lock:
            call_id = str(uuid.uuid4())
            self._calls[call_id] = CallRecord(
                id=call_id,
                to=to,
                from_=from_,
                goal=goal,
                context=context,
                instructions=instructions,
                started_at=self._now(),
            )
            return call_id

    async def get(self, call_id: str) -> CallRecord | None:
        async with self._lock:
            record = self._calls.get(call_id)
            return record.model_copy(deep=True) if record else None

    async def list_calls(self, state: CallState | None = None) -> list[CallRecord]:
        async with self._lock:
            return [
                record.model_copy(deep=True)
                for record in self._calls.values()
                if state is None or record.state == state
            ]

    async def update(self, call_id: str, **changes: Any) -> CallRecord:
        """Merge non-state fields into a live record.

        State changes go through :meth:`transition`.
        """

        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated directly: {sorted(unknown)}")
        async with self._lock:
            record = self._require(call_id)
            if record.is_terminal:
                raise CallFrozenError(f"Call {call_id} is {record.state.value}")
            for name, value in changes.items():
                setattr(record, name, value)
            return record.model_copy(deep=True)

    async def transition(self, call_id: str, state: CallState, **fields: Any) -> bool:
        """Move a call to ``state``, enforcing the lifecycle table.

        Returns False when the call is already in ``state``.
        """

        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be set on transition: {sorted(unknown)}")
        async with self._lock:
            record = self._require(call_id)
            if record.state == state:
                return False
            if not can_transition(record.state, state):
                raise IllegalTransitionError(
                    f"Call {call_id} cannot move from {record.state.value} to {state.value}"
                )
            result = fields.get("result")
            if result is not None and not state.is_terminal:
                raise IllegalTransitionError("A call result can only be recorded when the call ends")
            if isinstance(result, dict):
                fields["result"] = CallResult.model_validate(result)

            record.state = state
            if state == CallState.CONNECTED:
                record.connected_at = self._now()
            elif state.is_terminal:
                record.ended_at = self._now()
            for name, value in fields.items():
                if value is not None:
                    setattr(record, name, value)
            LOGGER.info("Call %s -> %s", call_id, state.value)
            return True

    async def link_provider_call_id(self, call_id: str, provider_call_id: str) -> None:
        async with self._lock:
            record = self._require(call_id)
            if record.provider_call_id and record.provider_call_id != provider_call_id:
                raise CallFrozenError(f"Call {call_id} is already linked to {record.provider_call_id}")
            record.provider_call_id = provider_call_id
            self._by_provider_id[provider_call_id] = call_id

    async def lookup_by_provider_call_id(self, provider_call_id: str) -> str | None:
        async with self._lock:
            return self._by_provider_id.get(provider_call_id)

    async def append_transcript(self, call_id: str, role: Role, content: str) -> bool:
        async with self._lock:
            record = self._require(call_id)
            if record.is_terminal:
                # Transcription events can race the hang-up.
                LOGGER.warning("Dropping %s transcript for ended call %s", role, call_id)
                return False
            record.transcript.append(
                TranscriptEntry(role=role, content=content, timestamp=self._now())
            )
            return True

    async def set_active_call(self, call_id: str | None) -> None:
        async with self._lock:
            if call_id is not None:
                self._require(call_id)
            self._active_call_id = call_id

    async def release_active_call(self, call_id: str) -> bool:
        """Clear the active-call marker only if it still points at ``call_id``."""

        async with self._lock:
            if self._active_call_id != call_id:
                return False
            self._active_call_id = None
            return True

    async def get_active_call(self) -> CallRecord | None:
        async with self._lock:
            if self._active_call_id is None:
                return None
            record = self._calls.get(self._active_call_id)
            return record.model_copy(deep=True) if record else None
