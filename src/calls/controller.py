"""Outbound call lifecycle: origination, auto-cancel, provider status updates."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from calls.errors import ConfigurationError, IllegalTransitionError, ProviderError
from calls.models import CallRecord, CallState
from calls.store import CallStore
from integrations.twilio_client import TelephonyProvider

LOGGER = logging.getLogger(__name__)

PROVIDER_STATUS_MAP: dict[str, CallState] = {
    "initiated": CallState.DIALING,
    "ringing": CallState.DIALING,
    "in-progress": CallState.CONNECTED,
    "completed": CallState.COMPLETED,
    "failed": CallState.FAILED,
    "busy": CallState.NO_ANSWER,
    "no-answer": CallState.NO_ANSWER,
}


def _is_machine(answered_by: str | None) -> bool:
    value = (answered_by or "").strip().lower()
    return value.startswith("machine") or value == "fax"


@dataclass(frozen=True)
class CancelResult:
    success: bool
    message: str


class CallController:
    """Places outbound calls and keeps their records in step with the provider."""

    def __init__(
        self,
        store: CallStore,
        provider: TelephonyProvider,
        *,
        default_from: str | None = None,
        default_timeout_seconds: int = 180,
    ) -> None:
        self._store = store
        self._provider = provider
        self._default_from = default_from
        self._default_timeout = default_timeout_seconds
        self._timers: dict[str, asyncio.Task] = {}

    async def place_call(
        self,
        *,
        to: str,
        goal: str,
        from_: str | None = None,
        context: dict[str, Any] | None = None,
        instructions: str | None = None,
        timeout_seconds: float | None = None,
    ) -> str:
        from_number = from_ or self._default_from
        if not from_number:
            raise ConfigurationError("No caller id given and TWILIO_FROM_NUMBER is not configured")
        timeout = timeout_seconds or self._default_timeout

        call_id = await self._store.create(
            to=to,
            from_=from_number,
            goal=goal,
            context=context,
            instructions=instructions,
        )
        await self._store.set_active_call(call_id)
        await self._store.transition(call_id, CallState.DIALING)

        try:
            provider_call_id = await self._provider.originate(
                to=to, from_=from_number, timeout_seconds=timeout
            )
        except (ConfigurationError, ProviderError) as exc:
            LOGGER.error("Placing call %s failed: %s", call_id, exc.detail)
            await self._fail(call_id, exc.detail)
            raise

        await self._store.link_provider_call_id(call_id, provider_call_id)
        LOGGER.info("Call %s dialing %s (provider id %s)", call_id, to, provider_call_id)

        record = await self._store.get(call_id)
        if record is not None and record.is_terminal:
            # Canceled while the provider request was in flight.
            await self._terminate_quietly(provider_call_id)
            return call_id

        self._schedule_timeout(call_id, timeout)
        return call_id

    async def cancel_call(self, call_id: str) -> CancelResult:
        record = await self._store.get(call_id)
        if record is None:
            return CancelResult(success=False, message="Call not found")
        if record.is_terminal:
            return CancelResult(success=False, message=f"Call already {record.state.value}")

        if record.provider_call_id:
            try:
                await self._provider.terminate(record.provider_call_id)
            except (ConfigurationError, ProviderError) as exc:
                return CancelResult(success=False, message=f"Failed to cancel call: {exc.detail}")
            message = "Call canceled successfully"
        else:
            message = "Call canceled before connecting"

        try:
            await self._store.transition(call_id, CallState.CANCELED)
        except IllegalTransitionError:
            current = await self._store.get(call_id)
            state = current.state.value if current else "gone"
            return CancelResult(success=False, message=f"Call already {state}")

        self._cancel_timer(call_id)
        await self._store.release_active_call(call_id)
        return CancelResult(success=True, message=message)

    async def update_from_provider_webhook(
        self,
        provider_call_id: str,
        status: str | None,
        *,
        answered_by: str | None = None,
    ) -> CallState | None:
        call_id = await self._store.lookup_by_provider_call_id(provider_call_id)
        if call_id is None:
            LOGGER.debug("Status callback for unknown provider call %s", provider_call_id)
            return None

        if _is_machine(answered_by):
            new_state = CallState.VOICEMAIL
        else:
            new_state = PROVIDER_STATUS_MAP.get((status or "").strip().lower())
        if new_state is None:
            return None

        try:
            await self._store.transition(call_id, new_state)
        except IllegalTransitionError as exc:
            LOGGER.info("Ignoring provider status %s for call %s: %s", status, call_id, exc.detail)
            return None

        if new_state.is_terminal:
            self._cancel_timer(call_id)
            await self._store.release_active_call(call_id)
        if new_state == CallState.VOICEMAIL:
            await self._terminate_quietly(provider_call_id)
        return new_state

    async def get_status(self, call_id: str) -> dict[str, Any] | None:
        record = await self._store.get(call_id)
        if record is None:
            return None

        status: dict[str, Any] = {
            "call_id": record.id,
            "state": record.state.value,
            "duration": record.duration_seconds(datetime.now(timezone.utc)),
        }
        if record.is_terminal:
            status["result"] = record.result.model_dump(mode="json") if record.result else None
            status["error"] = record.error
            status["transcript"] = _transcript_payload(record)
        else:
            status["to"] = record.to
            status["from"] = record.from_
        return status

    async def get_transcript(self, call_id: str) -> dict[str, Any] | None:
        record = await self._store.get(call_id)
        if record is None:
            return None
        if not record.transcript:
            return {
                "call_id": record.id,
                "state": record.state.value,
                "error": "No transcript available yet",
            }
        return {
            "call_id": record.id,
            "state": record.state.value,
            "duration": record.duration_seconds(datetime.now(timezone.utc)),
            "transcript": _transcript_payload(record),
            "result": record.result.model_dump(mode="json") if record.result else None,
        }

    async def shutdown(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

    def _schedule_timeout(self, call_id: str, timeout: float) -> None:
        self._cancel_timer(call_id)
        task = asyncio.create_task(self._expire(call_id, timeout), name=f"call-timeout-{call_id}")
        self._timers[call_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._timers.get(call_id) is done:
                del self._timers[call_id]

        task.add_done_callback(_forget)

    def _cancel_timer(self, call_id: str) -> None:
        task = self._timers.pop(call_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _expire(self, call_id: str, timeout: float) -> None:
        await asyncio.sleep(timeout)
        record = await self._store.get(call_id)
        if record is None or record.is_terminal:
            return
        LOGGER.info("Call %s reached its %ss limit; canceling", call_id, timeout)
        result = await self.cancel_call(call_id)
        if not result.success:
            LOGGER.warning("Auto-cancel of call %s failed: %s", call_id, result.message)

    async def _fail(self, call_id: str, error: str) -> None:
        try:
            await self._store.transition(call_id, CallState.FAILED, error=error)
        except IllegalTransitionError:
            LOGGER.info("Call %s ended before its failure could be recorded", call_id)
        await self._store.release_active_call(call_id)

    async def _terminate_quietly(self, provider_call_id: str) -> None:
        try:
            await self._provider.terminate(provider_call_id)
        except (ConfigurationError, ProviderError) as exc:
            LOGGER.warning("Could not hang up provider call %s: %s", provider_call_id, exc.detail)


def _transcript_payload(record: CallRecord) -> list[dict[str, Any]]:
    return [entry.model_dump(mode="json") for entry in record.transcript]
