"""Pydantic models describing a call and its transcript."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant"]


class CallState(str, Enum):
    QUEUED = "queued"
    DIALING = "dialing"
    CONNECTED = "connected"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"
    NO_ANSWER = "no_answer"
    VOICEMAIL = "voicemail"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        CallState.COMPLETED,
        CallState.FAILED,
        CallState.CANCELED,
        CallState.NO_ANSWER,
        CallState.VOICEMAIL,
    }
)

ALLOWED_TRANSITIONS: dict[CallState, frozenset[CallState]] = {
    CallState.QUEUED: frozenset({CallState.DIALING, CallState.CANCELED, CallState.FAILED}),
    CallState.DIALING: frozenset(
        {
            CallState.CONNECTED,
            CallState.COMPLETED,
            CallState.FAILED,
            CallState.NO_ANSWER,
            CallState.VOICEMAIL,
            CallState.CANCELED,
        }
    ),
    CallState.CONNECTED: frozenset(
        {CallState.COMPLETED, CallState.CANCELED, CallState.FAILED, CallState.VOICEMAIL}
    ),
}


def can_transition(current: CallState, target: CallState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class TranscriptEntry(BaseModel):
    """One completed utterance, as heard on the call."""

    role: Role
    content: str
    timestamp: datetime


class CallResult(BaseModel):
    """Terminal summary of a call."""

    status: Literal["confirmed", "failed", "human_escalation", "no_answer", "voicemail"]
    summary: str
    entities: dict[str, Any] = Field(default_factory=dict)


class CallRecord(BaseModel):
    """State, briefing and transcript of one call attempt."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    provider_call_id: str | None = None
    state: CallState = CallState.QUEUED
    to: str
    from_: str = Field(alias="from")
    goal: str
    instructions: str | None = None
    context: dict[str, Any] | None = None
    started_at: datetime
    connected_at: datetime | None = None
    ended_at: datetime | None = None
    transcript: list[TranscriptEntry] = Field(default_factory=list)
    result: CallResult | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def duration_seconds(self, now: datetime) -> int:
        end = self.ended_at or now
        return max(0, round((end - self.started_at).total_seconds()))
