"""Realtime relay between the telephony, model and observer legs of one call."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from bridge.functions import FunctionContext, FunctionOutcome, FunctionRegistry
from bridge.legs import Leg, ModelLeg
from bridge.protocol import (
    AssistantTranscriptDone,
    AudioDelta,
    FunctionCallOutput,
    InputAudioAppend,
    ItemTruncate,
    OutputItem,
    OutputItemDone,
    ResponseCreate,
    SessionUpdate,
    SpeechStarted,
    TelephonyClearOut,
    TelephonyClose,
    TelephonyDtmf,
    TelephonyMarkOut,
    TelephonyMedia,
    TelephonyMediaOut,
    TelephonyStart,
    UserTranscriptCompleted,
    decode_frame,
    parse_model_event,
    parse_observer_event,
    parse_telephony_event,
)
from calls.errors import CallNotFoundError, CallServiceError, IllegalTransitionError, MalformedMessage
from calls.models import CallResult, CallState, Role
from calls.store import CallStore
from prompts.loader import render_call_prompt

LOGGER = logging.getLogger(__name__)

ModelConnector = Callable[[], Awaitable[ModelLeg]]


@dataclass
class Session:
    """Mutable state of one live session. Reset to a fresh instance when emptied."""

    telephony: Leg | None = None
    model: ModelLeg | None = None
    observer: Leg | None = None
    stream_id: str | None = None
    active_config: dict[str, Any] = field(default_factory=dict)
    last_assistant_item: str | None = None
    response_start_timestamp: int | None = None
    latest_media_timestamp: int = 0
    call_id: str | None = None
    outcome: CallResult | None = None

    def reset_audio_timing(self) -> None:
        self.last_assistant_item = None
        self.response_start_timestamp = None
        self.latest_media_timestamp = 0

    @property
    def model_open(self) -> bool:
        return self.model is not None and self.model.is_open


class SessionBridge:
    """Relays events among the three legs of a session.

    Every handler runs under one lock, so events arriving concurrently on
    different legs never interleave partial updates. Each leg is read by a
    single coroutine, which keeps per-leg ordering.
    """

    def __init__(
        self,
        store: CallStore,
        functions: FunctionRegistry,
        model_connector: ModelConnector,
        *,
        voice: str = "ash",
        transcription_model: str = "whisper-1",
        max_pending_function_calls: int = 4,
        on_release: Callable[[SessionBridge], None] | None = None,
    ) -> None:
        self._store = store
        self._functions = functions
        self._model_connector = model_connector
        self._voice = voice
        self._transcription_model = transcription_model
        self._on_release = on_release
        self._lock = asyncio.Lock()
        self._function_slots = asyncio.Semaphore(max_pending_function_calls)
        self._function_tasks: set[asyncio.Task] = set()
        self._model_reader: asyncio.Task | None = None
        self.session = Session()
        self.function_outcomes: deque[FunctionOutcome] = deque(maxlen=50)

    # Telephony leg

    async def attach_telephony(self, leg: Leg) -> None:
        async with self._lock:
            session = self.session
            previous, session.telephony = session.telephony, leg
            if previous is not None and previous is not leg:
                await previous.close()

            record = await self._store.get_active_call()
            if record is None:
                LOGGER.info("Telephony leg connected with no active call")
                return
            try:
                await self._store.transition(record.id, CallState.CONNECTED)
            except IllegalTransitionError as exc:
                LOGGER.warning("Active call %s cannot take a media stream: %s", record.id, exc.detail)
                return
            session.call_id = record.id

    async def telephony_closed(self, leg: Leg) -> None:
        async with self._lock:
            session = self.session
            if session.telephony is not leg:
                return
            await self._finish_call()
            session.telephony = None
            session.stream_id = None
            session.reset_audio_timing()
            model, session.model = session.model, None
            if session.observer is None:
                self._reset()
            else:
                self._release()
        if model is not None:
            await model.close()

    async def handle_telephony_message(self, raw: str | bytes) -> None:
        try:
            event = parse_telephony_event(decode_frame(raw))
        except MalformedMessage as exc:
            LOGGER.debug("Dropping telephony frame: %s", exc.detail)
            return

        closing: list[Leg] = []
        async with self._lock:
            session = self.session
            if isinstance(event, TelephonyMedia):
                session.latest_media_timestamp = event.media.timestamp
                if session.model_open:
                    await session.model.send_json(InputAudioAppend(audio=event.media.payload).to_wire())
            elif isinstance(event, TelephonyStart):
                session.stream_id = event.start.stream_sid
                session.reset_audio_timing()
                LOGGER.info("Media stream %s started", session.stream_id)
                await self._connect_model()
            elif isinstance(event, TelephonyDtmf):
                LOGGER.info("DTMF digit %s received", event.dtmf.digit if event.dtmf else "?")
            elif isinstance(event, TelephonyClose):
                closing = await self._detach_all()
        for leg in closing:
            await leg.close()

    # Observer leg

    async def attach_observer(self, leg: Leg) -> None:
        async with self._lock:
            previous, self.session.observer = self.session.observer, leg
            if previous is not None and previous is not leg:
                await previous.close()

    async def observer_closed(self, leg: Leg) -> None:
        async with self._lock:
            session = self.session
            if session.observer is not leg:
                return
            session.observer = None
            if session.telephony is None and session.model is None:
                self._reset()

    async def handle_observer_message(self, raw: str | bytes) -> None:
        try:
            data = decode_frame(raw)
            event = parse_observer_event(data)
        except MalformedMessage as exc:
            LOGGER.debug("Dropping observer frame: %s", exc.detail)
            return

        async with self._lock:
            session = self.session
            if session.model_open:
                await session.model.send_json(data)
            if event.is_session_update:
                session.active_config = dict(event.session)

    # Model leg

    async def handle_model_message(self, raw: str | bytes) -> None:
        try:
            data = decode_frame(raw)
        except MalformedMessage as exc:
            LOGGER.debug("Dropping model frame: %s", exc.detail)
            return

        async with self._lock:
            session = self.session
            if session.observer is not None:
                await session.observer.send_json(data)

            try:
                event = parse_model_event(data)
            except MalformedMessage as exc:
                LOGGER.debug("Not acting on model event: %s", exc.detail)
                return

            if isinstance(event, SpeechStarted):
                await self._truncate()
            elif isinstance(event, UserTranscriptCompleted):
                await self._record_transcript("user", event.transcript)
            elif isinstance(event, AssistantTranscriptDone):
                await self._record_transcript("assistant", event.transcript)
            elif isinstance(event, AudioDelta):
                await self._play_audio(event)
            elif isinstance(event, OutputItemDone) and event.is_function_call:
                self._start_function_call(event.item)

    async def model_closed(self, leg: ModelLeg) -> None:
        async with self._lock:
            session = self.session
            if session.model is not leg:
                return
            session.model = None
            if session.telephony is None and session.observer is None:
                self._reset()
        await leg.close()

    async def truncate(self) -> None:
        async with self._lock:
            await self._truncate()

    async def drain_function_calls(self) -> list[FunctionOutcome]:
        """Wait for in-flight function calls and return their outcomes."""

        tasks = list(self._function_tasks)
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    # Internals; callers hold the lock.

    async def _connect_model(self) -> None:
        session = self.session
        if session.telephony is None or session.stream_id is None or session.model_open:
            return

        try:
            leg = await self._model_connector()
        except CallServiceError as exc:
            LOGGER.error("Could not open model leg: %s", exc.detail)
            return

        session.model = leg
        self._model_reader = asyncio.create_task(self._read_model(leg), name="model-leg-reader")
        await leg.send_json(SessionUpdate(session=await self._session_config()).to_wire())

    async def _session_config(self) -> dict[str, Any]:
        session = self.session
        record = await self._store.get(session.call_id) if session.call_id else None
        config: dict[str, Any] = {
            "modalities": ["text", "audio"],
            "turn_detection": {"type": "server_vad"},
            "voice": self._voice,
            "input_audio_transcription": {"model": self._transcription_model},
            "input_audio_format": "g711_ulaw",
            "output_audio_format": "g711_ulaw",
            "instructions": render_call_prompt(record),
        }
        tools = self._functions.schemas()
        if tools:
            config["tools"] = tools
            config["tool_choice"] = "auto"
        config.update(session.active_config)
        return config

    async def _read_model(self, leg: ModelLeg) -> None:
        try:
            async for message in leg:
                if self.session.model is not leg:
                    break
                await self.handle_model_message(message)
        finally:
            await self.model_closed(leg)

    async def _truncate(self) -> None:
        session = self.session
        if not session.last_assistant_item or session.response_start_timestamp is None:
            return

        elapsed = max(0, session.latest_media_timestamp - session.response_start_timestamp)
        if session.model_open:
            await session.model.send_json(
                ItemTruncate(item_id=session.last_assistant_item, audio_end_ms=elapsed).to_wire()
            )
        if session.telephony is not None and session.stream_id:
            await session.telephony.send_json(TelephonyClearOut(stream_sid=session.stream_id).to_wire())

        LOGGER.debug("Truncated %s at %sms", session.last_assistant_item, elapsed)
        session.last_assistant_item = None
        session.response_start_timestamp = None

    async def _play_audio(self, event: AudioDelta) -> None:
        session = self.session
        if session.telephony is None or not session.stream_id:
            return

        if session.response_start_timestamp is None:
            session.response_start_timestamp = session.latest_media_timestamp
        if event.item_id:
            session.last_assistant_item = event.item_id

        await session.telephony.send_json(
            TelephonyMediaOut.for_payload(session.stream_id, event.delta).to_wire()
        )
        await session.telephony.send_json(TelephonyMarkOut(stream_sid=session.stream_id).to_wire())

    async def _record_transcript(self, role: Role, content: str) -> None:
        call_id = self.session.call_id
        if call_id is None or not content:
            return
        try:
            await self._store.append_transcript(call_id, role, content)
        except CallNotFoundError:
            LOGGER.warning("Transcript for unknown call %s dropped", call_id)

    def _start_function_call(self, item: OutputItem) -> None:
        context = FunctionContext(
            call_id=self.session.call_id,
            record_outcome=self._outcome_recorder(self.session.call_id),
        )
        task = asyncio.create_task(self._run_function_call(item, context), name=f"function-{item.name}")
        self._function_tasks.add(task)
        task.add_done_callback(self._function_tasks.discard)

    def _outcome_recorder(self, call_id: str | None) -> Callable[[CallResult], None]:
        def record(result: CallResult) -> None:
            if self.session.call_id != call_id:
                LOGGER.warning("Outcome for call %s arrived after the call ended; dropped", call_id)
                return
            self.session.outcome = result

        return record

    async def _run_function_call(self, item: OutputItem, context: FunctionContext) -> FunctionOutcome:
        async with self._function_slots:
            outcome = await self._functions.dispatch(item, context)
        self.function_outcomes.append(outcome)
        if not outcome.ok:
            LOGGER.warning("Function %s failed: %s", outcome.name, outcome.error)

        async with self._lock:
            model = self.session.model
            if model is None or not model.is_open:
                LOGGER.warning("Model leg closed before %s output could be delivered", outcome.name)
                return outcome
            await model.send_json(FunctionCallOutput.for_call(item.call_id, outcome.output).to_wire())
            await model.send_json(ResponseCreate().to_wire())
        return outcome

    async def _finish_call(self) -> None:
        session = self.session
        call_id, session.call_id = session.call_id, None
        outcome, session.outcome = session.outcome, None
        if call_id is None:
            return

        record = await self._store.get(call_id)
        if record is not None and record.state == CallState.CONNECTED:
            try:
                await self._store.transition(call_id, CallState.COMPLETED, result=outcome)
            except IllegalTransitionError as exc:
                LOGGER.info("Call %s ended elsewhere: %s", call_id, exc.detail)
        await self._store.release_active_call(call_id)

    async def _detach_all(self) -> list[Leg]:
        await self._finish_call()
        session = self.session
        legs = [leg for leg in (session.telephony, session.model, session.observer) if leg is not None]
        self._reset()
        return legs

    def _reset(self) -> None:
        self.session = Session()
        self._release()

    def _release(self) -> None:
        if self._on_release is not None:
            self._on_release(self)
