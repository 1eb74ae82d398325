"""API-facing Pydantic models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from calls.models import CallResult, TranscriptEntry


class PlaceCallRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to: str = Field(description="Phone number to call (E.164 format)")
    from_: str | None = Field(
        default=None,
        alias="from",
        description="Caller id (E.164). Defaults to TWILIO_FROM_NUMBER.",
    )
    goal: str = Field(min_length=1, description="The objective of the call")
    context: dict[str, Any] | None = Field(default=None, description="Additional context for the call")
    instructions: str | None = Field(default=None, description="Specific instructions for the AI agent")
    timeout_seconds: int | None = Field(default=None, gt=0, description="Maximum call duration in seconds")


class PlaceCallResponse(BaseModel):
    call_id: str
    state: str = "dialing"


class CancelCallResponse(BaseModel):
    success: bool
    message: str


class CallStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    call_id: str
    state: str
    duration: int
    to: str | None = None
    from_: str | None = Field(default=None, alias="from")
    result: CallResult | None = None
    error: str | None = None
    transcript: list[TranscriptEntry] | None = None


class TranscriptResponse(BaseModel):
    call_id: str
    state: str
    duration: int | None = None
    transcript: list[TranscriptEntry] = Field(default_factory=list)
    result: CallResult | None = None
    error: str | None = None


class CallSummary(BaseModel):
    call_id: str
    state: str
    to: str
    goal: str
