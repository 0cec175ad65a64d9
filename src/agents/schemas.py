"""Pydantic schemas for call records and dialog exchange."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

Speaker = Literal["caller", "assistant", "system"]

_TITLE_PREFIX = re.compile(r"^(Dr\.?\s*)", re.IGNORECASE)


class CallState(str, Enum):
    INITIATED = "INITIATED"
    GATHERING_TIME = "GATHERING_TIME"
    CONFIRMING_TIME = "CONFIRMING_TIME"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({CallState.COMPLETED, CallState.FAILED})


class TranscriptEntry(BaseModel):
    """One line of call history."""

    speaker: Speaker
    text: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("text")
    @classmethod
    def clip_text(cls, value: str) -> str:
        # History lines are for audit and prompting, not verbatim archives.
        return value.strip()[:500]


class CallSession(BaseModel):
    """Durable state of one appointment call, as stored by the persistence gateway."""

    id: str
    state: CallState = CallState.INITIATED
    retries: int = Field(default=0, ge=0)
    transcript: list[TranscriptEntry] = Field(default_factory=list)
    proposed_time: datetime | None = None
    final_time: datetime | None = None
    failure_reason: str | None = None

    user_id: str | None = None
    user_name: str | None = None
    reason: str | None = None
    contact: str | None = None
    extra_details: str | None = None
    phone_number: str | None = None
    call_sid: str | None = None
    last_call_status: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def display_name(self) -> str:
        if not self.user_name:
            return "the patient"
        return _TITLE_PREFIX.sub("", self.user_name).strip() or "the patient"

    @property
    def appointment_reason(self) -> str:
        return self.reason or "medical consultation"

    @property
    def contact_info(self) -> str:
        return self.contact or "No contact number on file"


class TurnKind(str, Enum):
    TIME_SUGGESTED = "TIME_SUGGESTED"
    QUESTION = "QUESTION"
    CANNOT_SCHEDULE = "CANNOT_SCHEDULE"
    AMBIGUOUS = "AMBIGUOUS"
    UNCLEAR = "UNCLEAR"


class ConfirmationKind(str, Enum):
    AFFIRMATIVE = "AFFIRMATIVE"
    NEGATIVE = "NEGATIVE"
    UNCLEAR = "UNCLEAR"


class TurnClassification(BaseModel):
    """Tagged result of classifying one caller turn."""

    kind: TurnKind
    text: str | None = None
    proposed_time: datetime | None = None

