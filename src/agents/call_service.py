"""Applies dialog outcomes: load the record, run the step, persist, notify."""

from __future__ import annotations

import logging
from datetime import datetime

from agents.dialog import AppointmentDialog, DialogOutcome, technical_failure
from agents.errors import NotificationError, PersistenceError
from agents.schemas import CallSession
from db.repository import CallRepository
from integrations.notifications import NotificationGateway
from telephony.voice_script import VoiceScript

LOGGER = logging.getLogger(__name__)


class CallService:
    """Glue between the webhook layer and the appointment dialog."""

    def __init__(
        self,
        repository: CallRepository,
        dialog: AppointmentDialog,
        notifier: NotificationGateway,
    ) -> None:
        self._repo = repository
        self._dialog = dialog
        self._notifier = notifier

    @property
    def repository(self) -> CallRepository:
        return self._repo

    @property
    def dialog(self) -> AppointmentDialog:
        return self._dialog

    async def initiate(self, call_id: str) -> VoiceScript:
        session = await self._repo.get(call_id)
        return await self._apply(session, self._dialog.initiate(session))

    async def handle_turn(self, call_id: str, transcript: str | None, *, timed_out: bool = False) -> VoiceScript:
        session = await self._repo.get(call_id)
        outcome = await self._dialog.handle_turn(session, transcript, timed_out=timed_out)
        return await self._apply(session, outcome)

    async def handle_confirmation(
        self,
        call_id: str,
        transcript: str | None,
        *,
        proposed_time: datetime | None,
        timed_out: bool = False,
    ) -> VoiceScript:
        session = await self._repo.get(call_id)
        outcome = await self._dialog.handle_confirmation(
            session, transcript, proposed_time=proposed_time, timed_out=timed_out
        )
        return await self._apply(session, outcome)

    async def handle_status(self, call_id: str, status: str, answered_by: str | None = None) -> None:
        session = await self._repo.get(call_id)
        await self._apply(session, self._dialog.handle_status_event(session, status, answered_by))

    async def fail_call(self, call_id: str, detail: str | None = None) -> VoiceScript:
        """Best-effort FAILED marking after an unexpected webhook error."""

        outcome = technical_failure(detail)
        try:
            await self._repo.update_if_active(call_id, outcome.updates)
        except PersistenceError as exc:
            LOGGER.error("Could not record failure for call %s: %s", call_id, exc.detail)
        return outcome.script

    async def _apply(self, session: CallSession, outcome: DialogOutcome) -> VoiceScript:
        applied = True
        if outcome.updates:
            try:
                # Conditional so COMPLETED/FAILED records are never moved again.
                applied = await self._repo.update_if_active(session.id, outcome.updates)
            except PersistenceError as exc:
                LOGGER.error("Could not persist dialog updates for call %s: %s", session.id, exc.detail)
                applied = False
            if not applied:
                LOGGER.info("Call %s updates not applied: %s", session.id, sorted(outcome.updates))

        for entry in outcome.history:
            try:
                await self._repo.append_history(session.id, entry)
            except PersistenceError as exc:
                LOGGER.error("Transcript line lost for call %s: %s", session.id, exc.detail)

        if outcome.notify is not None and applied:
            note = outcome.notify
            try:
                await self._notifier.send(note.user_id, note.title, note.body, note.data)
            except NotificationError as exc:
                LOGGER.error("Confirmation notification failed for call %s: %s", session.id, exc.detail)

        return outcome.script
