"""SQLAlchemy models for appointment calls."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallRecord(Base):
    """One outbound appointment call and its dialog state."""

    __tablename__ = "calls"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    state: Mapped[str] = mapped_column(String(32), index=True)
    retries: Mapped[int] = mapped_column(Integer, default=0)
    proposed_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    final_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text(), nullable=True)

    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    user_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    contact: Mapped[str | None] = mapped_column(String(64), nullable=True)
    extra_details: Mapped[str | None] = mapped_column(Text(), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    call_sid: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    last_call_status: Mapped[str | None] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    transcript: Mapped[list[TranscriptLine]] = relationship(
        back_populates="call",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="TranscriptLine.id",
    )


class TranscriptLine(Base):
    """A caller or assistant line spoken during a call."""

    __tablename__ = "call_transcript"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    call_id: Mapped[str] = mapped_column(ForeignKey("calls.id", ondelete="CASCADE"), index=True)
    speaker: Mapped[str] = mapped_column(String(32))
    text: Mapped[str] = mapped_column(Text())
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    attributes: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    call: Mapped[CallRecord] = relationship(back_populates="transcript")
