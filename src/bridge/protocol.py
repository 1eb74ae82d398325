"""Typed messages for the three legs of a session.

Inbound frames are decoded and validated here, at the leg boundary; the
bridge only ever sees the typed events below. Outbound messages are pydantic
models serialized with :meth:`OutboundMessage.to_wire`.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from calls.errors import MalformedMessage


def decode_frame(raw: str | bytes) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedMessage(f"Frame is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedMessage("Frame is not a JSON object")
    return data


class _Inbound(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# Telephony leg (Twilio Media Streams), inbound


class StreamStart(_Inbound):
    stream_sid: str = Field(alias="streamSid")
    call_sid: str | None = Field(default=None, alias="callSid")
    custom_parameters: dict[str, str] = Field(default_factory=dict, alias="customParameters")


class TelephonyStart(_Inbound):
    event: Literal["start"]
    start: StreamStart


class MediaFrame(_Inbound):
    timestamp: int = Field(ge=0)
    payload: str
    track: str | None = None


class TelephonyMedia(_Inbound):
    event: Literal["media"]
    media: MediaFrame


class DtmfDigit(_Inbound):
    digit: str


class TelephonyDtmf(_Inbound):
    event: Literal["dtmf"]
    dtmf: DtmfDigit | None = None


class TelephonyMark(_Inbound):
    event: Literal["mark"]


class TelephonyClose(_Inbound):
    event: Literal["close"]


class TelephonyConnected(_Inbound):
    event: Literal["connected"]


class TelephonyStop(_Inbound):
    event: Literal["stop"]


TelephonyEvent = Annotated[
    Union[
        TelephonyStart,
        TelephonyMedia,
        TelephonyDtmf,
        TelephonyMark,
        TelephonyClose,
        TelephonyConnected,
        TelephonyStop,
    ],
    Field(discriminator="event"),
]

_TELEPHONY_EVENTS: TypeAdapter[TelephonyEvent] = TypeAdapter(TelephonyEvent)


def parse_telephony_event(data: dict[str, Any]) -> TelephonyEvent:
    try:
        return _TELEPHONY_EVENTS.validate_python(data)
    except ValidationError as exc:
        raise MalformedMessage(f"Unrecognised telephony event: {data.get('event')!r}") from exc


# Model leg (OpenAI Realtime), inbound


class ModelEvent(_Inbound):
    """Any model event the bridge only forwards."""

    type: str


class SpeechStarted(ModelEvent):
    pass


class UserTranscriptCompleted(ModelEvent):
    transcript: str = ""


class AssistantTranscriptDone(ModelEvent):
    transcript: str = ""


class AudioDelta(ModelEvent):
    delta: str
    item_id: str | None = None


class OutputItem(_Inbound):
    type: str
    name: str | None = None
    call_id: str | None = None
    arguments: str | None = None


class OutputItemDone(ModelEvent):
    item: OutputItem

    @model_validator(mode="after")
    def _function_call_has_id(self) -> OutputItemDone:
        if self.item.type == "function_call" and not (self.item.call_id and self.item.name):
            raise ValueError("function_call item needs a name and a call_id")
        return self

    @property
    def is_function_call(self) -> bool:
        return self.item.type == "function_call"


_MODEL_EVENTS: dict[str, type[ModelEvent]] = {
    "input_audio_buffer.speech_started": SpeechStarted,
    "conversation.item.input_audio_transcription.completed": UserTranscriptCompleted,
    "response.audio_transcript.done": AssistantTranscriptDone,
    "response.output_audio_transcript.done": AssistantTranscriptDone,
    "response.audio.delta": AudioDelta,
    "response.output_audio.delta": AudioDelta,
    "response.output_item.done": OutputItemDone,
}


def parse_model_event(data: dict[str, Any]) -> ModelEvent:
    event_type = data.get("type")
    if not isinstance(event_type, str):
        raise MalformedMessage("Model event has no type")
    model = _MODEL_EVENTS.get(event_type, ModelEvent)
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise MalformedMessage(f"Invalid {event_type} event") from exc


# Observer leg, inbound


class ObserverEvent(_Inbound):
    type: str
    session: dict[str, Any] | None = None

    @property
    def is_session_update(self) -> bool:
        return self.type == "session.update" and self.session is not None


def parse_observer_event(data: dict[str, Any]) -> ObserverEvent:
    try:
        return ObserverEvent.model_validate(data)
    except ValidationError as exc:
        raise MalformedMessage("Observer event has no type") from exc


# Outbound


class OutboundMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TelephonyMediaOut(OutboundMessage):
    event: Literal["media"] = "media"
    stream_sid: str = Field(alias="streamSid")
    media: dict[str, str]

    @classmethod
    def for_payload(cls, stream_sid: str, payload: str) -> TelephonyMediaOut:
        return cls(stream_sid=stream_sid, media={"payload": payload})


class TelephonyMarkOut(OutboundMessage):
    event: Literal["mark"] = "mark"
    stream_sid: str = Field(alias="streamSid")
    mark: dict[str, str] = Field(default_factory=lambda: {"name": "responsePart"})


class TelephonyClearOut(OutboundMessage):
    event: Literal["clear"] = "clear"
    stream_sid: str = Field(alias="streamSid")


class SessionUpdate(OutboundMessage):
    type: Literal["session.update"] = "session.update"
    session: dict[str, Any]


class InputAudioAppend(OutboundMessage):
    type: Literal["input_audio_buffer.append"] = "input_audio_buffer.append"
    audio: str


class ItemTruncate(OutboundMessage):
    type: Literal["conversation.item.truncate"] = "conversation.item.truncate"
    item_id: str
    content_index: int = 0
    audio_end_ms: int = Field(ge=0)


class FunctionCallOutput(OutboundMessage):
    type: Literal["conversation.item.create"] = "conversation.item.create"
    item: dict[str, Any]

    @classmethod
    def for_call(cls, call_id: str, output: str) -> FunctionCallOutput:
        return cls(item={"type": "function_call_output", "call_id": call_id, "output": output})


class ResponseCreate(OutboundMessage):
    type: Literal["response.create"] = "response.create"
