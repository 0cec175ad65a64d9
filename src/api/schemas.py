"""API-facing Pydantic models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from agents.schemas import CallState, TranscriptEntry


class CreateCallRequest(BaseModel):
    phone_number: str = Field(description="E.164 number of the practice to call, e.g. +2547...")
    user_id: str | None = None
    user_name: str | None = None
    reason: str | None = Field(default=None, description="Reason for the appointment.")
    contact: str | None = Field(default=None, description="Contact number shared with the practice.")
    extra_details: str | None = None
    streaming: bool = Field(default=True, description="Prefer the media-stream flow when available.")


class CallResponse(BaseModel):
    call_id: str
    state: CallState
    retries: int
    call_sid: str | None = None
    last_call_status: str | None = None
    proposed_time: datetime | None = None
    final_time: datetime | None = None
    failure_reason: str | None = None
    transcript: list[TranscriptEntry] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str = "ok"
    media_streams: bool
    missing_capabilities: list[str] = Field(default_factory=list)
