"""Repository for call records: partial-field updates and transcript history."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agents.errors import CallNotFoundError, PersistenceError
from agents.schemas import TERMINAL_STATES, CallSession, TranscriptEntry
from db.base import AsyncSessionFactory
from db.models import CallRecord, TranscriptLine

LOGGER = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "state",
        "retries",
        "proposed_time",
        "final_time",
        "failure_reason",
        "call_sid",
        "last_call_status",
    }
)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    # SQLite returns naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _column_values(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not updatable: {sorted(unknown)}")

    values: dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = _as_utc(value)
        values[key] = value
    values["updated_at"] = datetime.now(timezone.utc)
    return values


def _to_session(record: CallRecord) -> CallSession:
    return CallSession(
        id=record.id,
        state=record.state,
        retries=record.retries,
        transcript=[
            TranscriptEntry(
                speaker=line.speaker,
                text=line.text,
                timestamp=_as_utc(line.timestamp),
                attributes=line.attributes or {},
            )
            for line in record.transcript
        ],
        proposed_time=_as_utc(record.proposed_time),
        final_time=_as_utc(record.final_time),
        failure_reason=record.failure_reason,
        user_id=record.user_id,
        user_name=record.user_name,
        reason=record.reason,
        contact=record.contact,
        extra_details=record.extra_details,
        phone_number=record.phone_number,
        call_sid=record.call_sid,
        last_call_status=record.last_call_status,
        created_at=_as_utc(record.created_at),
    )


class CallRepository:
    """Async repository encapsulating call storage operations.

    Records are never overwritten wholesale: every write is an
    ``UPDATE ... SET <given columns>`` so concurrent webhook handlers only
    touch the fields they own.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or AsyncSessionFactory

    async def create(self, call: CallSession) -> CallSession:
        record = CallRecord(
            id=call.id,
            state=call.state.value,
            retries=call.retries,
            user_id=call.user_id,
            user_name=call.user_name,
            reason=call.reason,
            contact=call.contact,
            extra_details=call.extra_details,
            phone_number=call.phone_number,
            call_sid=call.call_sid,
            created_at=_as_utc(call.created_at),
        )
        try:
            async with self._session_factory() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not create call {call.id}: {exc}") from exc
        return await self.get(call.id)

    async def get(self, call_id: str) -> CallSession:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(CallRecord).where(CallRecord.id == call_id))
                record = result.scalar_one_or_none()
                if record is None:
                    raise CallNotFoundError(f"Call {call_id} not found.")
                return _to_session(record)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not load call {call_id}: {exc}") from exc

    async def update(self, call_id: str, fields: dict[str, Any]) -> None:
        """Merge ``fields`` into the stored record."""

        if not fields:
            return
        stmt = update(CallRecord).where(CallRecord.id == call_id).values(**_column_values(fields))
        if await self._execute(call_id, stmt) == 0:
            raise CallNotFoundError(f"Call {call_id} not found.")

    async def update_if_active(self, call_id: str, fields: dict[str, Any]) -> bool:
        """Merge ``fields`` only while the call is not COMPLETED/FAILED.

        Returns False when the record was already terminal (or missing).
        """

        if not fields:
            return True
        stmt = (
            update(CallRecord)
            .where(CallRecord.id == call_id)
            .where(CallRecord.state.not_in([state.value for state in TERMINAL_STATES]))
            .values(**_column_values(fields))
        )
        return await self._execute(call_id, stmt) > 0

    async def append_history(self, call_id: str, entry: TranscriptEntry) -> None:
        line = TranscriptLine(
            call_id=call_id,
            speaker=entry.speaker,
            text=entry.text,
            timestamp=_as_utc(entry.timestamp),
            attributes=entry.attributes,
        )
        try:
            async with self._session_factory() as session:
                session.add(line)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not append history for call {call_id}: {exc}") from exc

    async def _execute(self, call_id: str, stmt) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not update call {call_id}: {exc}") from exc
