"""Turn-by-turn appointment dialog for the gather/say call flow.

Each handler is a pure step over the persisted ``CallSession``: it returns the
partial-field updates to store, the transcript lines to append, an optional
notification and the voice script for the provider. Nothing here touches
storage; ``agents.call_service`` applies the outcome.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any

from agents.classification import TurnClassifier
from agents.schemas import CallSession, CallState, ConfirmationKind, TranscriptEntry, TurnKind
from telephony.voice_script import Hangup, Speak, VoiceScript, listen_with_timeout

LOGGER = logging.getLogger(__name__)

MAX_RETRIES = 3

ASK_TIME = "What time works best for you?"
GOODBYE = "Thanks for your time. Goodbye."
TECHNICAL_APOLOGY = (
    "I'm sorry, I'm having some technical issues right now. "
    "Someone from our team will reach out to schedule your appointment. Thanks for your patience!"
)
TIMEOUT_APOLOGY = (
    "I haven't been able to hear from you. "
    "Let me have someone from our team call you back to get this scheduled. Take care!"
)
CONFIRMATION_TIMEOUT_APOLOGY = "I didn't hear back. Someone from our team will reach out to finalize this. Thanks!"
PAST_TIME = "Oh, I think that time has already passed. Could you give me a future date and time that works for you?"
QUESTION_FALLBACK = "I can share more details once we get your time sorted out."
FIRST_REPROMPT = "Sorry, I didn't quite catch that. What day and time work best for you?"
FINAL_REPROMPT = (
    "I'm still having trouble hearing you. Could you speak a little louder? When would you like to schedule this?"
)
GIVE_UP = (
    "I'm having a hard time hearing you clearly. Let me have someone from our team call you back "
    "to schedule this appointment. Thanks so much for your patience!"
)
CANNOT_SCHEDULE = "No problem at all. Thanks for letting me know. I'll make sure to pass this along. Goodbye."
CONFIRMED = "Perfect! Your appointment is all set. You'll get a confirmation with all the details shortly. Thanks so much!"
NEGATIVE = "No problem. What other day and time would work for you?"

REASON_TIMEOUT = "timed out awaiting response"
REASON_CONFIRMATION_TIMEOUT = "timed out on confirmation"
REASON_UNCLEAR = "repeated unclear responses"
REASON_VOICEMAIL = "Call answered by voicemail/answering machine."
REASON_ENDED = "Call ended without completing appointment."

_STATUS_REASONS = {
    "busy": "Phone line was busy.",
    "no-answer": "No one answered the phone.",
    "failed": "Call failed to connect.",
    "canceled": "Call was canceled before it connected.",
}


@dataclass(slots=True)
class Notification:
    user_id: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DialogOutcome:
    """Result of one dialog step."""

    script: VoiceScript
    updates: dict[str, Any] = field(default_factory=dict)
    history: list[TranscriptEntry] = field(default_factory=list)
    notify: Notification | None = None


def spoken_time(value: datetime, tz: tzinfo) -> str:
    """Render a datetime the way it should be read aloud, e.g. "Tuesday, March 4 at 2:00 PM"."""

    local = value.astimezone(tz)
    hour = local.strftime("%I").lstrip("0")
    return f"{local:%A, %B} {local.day} at {hour}:{local:%M %p}"


def _say(text: str, *more: str) -> list[Speak]:
    return [Speak(t) for t in (text, *more)]


def _assistant(*texts: str) -> TranscriptEntry:
    return TranscriptEntry(speaker="assistant", text=" ".join(texts))


def _failed(reason: str, message: str, history: list[TranscriptEntry] | None = None) -> DialogOutcome:
    return DialogOutcome(
        script=[*_say(message), Hangup()],
        updates={"state": CallState.FAILED, "failure_reason": reason},
        history=[*(history or []), _assistant(message)],
    )


def goodbye() -> DialogOutcome:
    """Script for turns arriving after the call reached COMPLETED or FAILED."""

    return DialogOutcome(script=[*_say(GOODBYE), Hangup()])


def technical_failure(detail: str | None = None) -> DialogOutcome:
    """Apology and hangup for unexpected errors in the webhook layer."""

    reason = "technical error" + (f": {detail}" if detail else "")
    return _failed(reason[:500], TECHNICAL_APOLOGY)


class AppointmentDialog:
    """State machine driving one appointment call over stateless webhooks."""

    def __init__(
        self,
        classifier: TurnClassifier,
        *,
        tz: tzinfo,
        practice_name: str = "Aiva Health",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._classifier = classifier
        self._tz = tz
        self._practice = practice_name
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def greeting(self, session: CallSession) -> str:
        text = (
            f"Hi there! I'm calling from {self._practice} on behalf of {session.display_name} "
            f"to help schedule an appointment. This is for {session.appointment_reason}."
        )
        if session.extra_details:
            text += f" I also wanted to mention: {session.extra_details}."
        return text

    def initiate(self, session: CallSession) -> DialogOutcome:
        if session.is_terminal:
            return goodbye()

        greeting = self.greeting(session)
        return DialogOutcome(
            script=[*_say(greeting, ASK_TIME), listen_with_timeout("turn")],
            updates={"state": CallState.GATHERING_TIME, "retries": 0},
            history=[_assistant(greeting, ASK_TIME)],
        )

    async def handle_turn(
        self, session: CallSession, transcript: str | None, *, timed_out: bool = False
    ) -> DialogOutcome:
        if session.is_terminal:
            return goodbye()
        if timed_out:
            return _failed(REASON_TIMEOUT, TIMEOUT_APOLOGY)

        utterance = (transcript or "").strip()
        heard = [TranscriptEntry(speaker="caller", text=utterance)] if utterance else []
        if not utterance:
            return self._unclear(session, None, heard)

        now = self._clock()
        result = await self._classifier.classify_turn(session, utterance, now=now)
        LOGGER.info("Call %s turn classified as %s", session.id, result.kind.value)

        if result.kind is TurnKind.TIME_SUGGESTED and result.proposed_time is not None:
            if result.proposed_time <= now:
                return DialogOutcome(
                    script=[*_say(PAST_TIME), listen_with_timeout("turn")],
                    history=[*heard, _assistant(PAST_TIME)],
                )
            return self._confirm(result.proposed_time, heard)

        if result.kind is TurnKind.CANNOT_SCHEDULE:
            return _failed(result.text or "Caller is unable to schedule", CANNOT_SCHEDULE, heard)

        if result.kind is TurnKind.QUESTION:
            answer = await self._classifier.answer_question(session, result.text or utterance)
            answer = answer or QUESTION_FALLBACK
            return DialogOutcome(
                script=[*_say(answer, ASK_TIME), listen_with_timeout("turn")],
                history=[*heard, _assistant(answer, ASK_TIME)],
            )

        clarification = result.text if result.kind is TurnKind.AMBIGUOUS else None
        return self._unclear(session, clarification, heard)

    def _confirm(self, proposed: datetime, heard: list[TranscriptEntry]) -> DialogOutcome:
        question = f"Great! Just to confirm, that's {spoken_time(proposed, self._tz)}. Does that work for you?"
        return DialogOutcome(
            script=[*_say(question), listen_with_timeout("confirmation", proposedTime=proposed.isoformat())],
            updates={"state": CallState.CONFIRMING_TIME, "proposed_time": proposed},
            history=[*heard, _assistant(question)],
        )

    def _unclear(
        self, session: CallSession, clarification: str | None, heard: list[TranscriptEntry]
    ) -> DialogOutcome:
        retries = session.retries + 1
        if retries >= MAX_RETRIES:
            outcome = _failed(REASON_UNCLEAR, GIVE_UP, heard)
            outcome.updates["retries"] = retries
            return outcome

        if retries == MAX_RETRIES - 1:
            prompt = FINAL_REPROMPT
        elif clarification:
            prompt = f"I want to make sure I get this right. Could you be a bit more specific about {clarification}?"
        else:
            prompt = FIRST_REPROMPT

        return DialogOutcome(
            script=[*_say(prompt), listen_with_timeout("turn")],
            updates={"retries": retries},
            history=[*heard, _assistant(prompt)],
        )

    async def handle_confirmation(
        self,
        session: CallSession,
        transcript: str | None,
        *,
        proposed_time: datetime | None,
        timed_out: bool = False,
    ) -> DialogOutcome:
        if session.is_terminal:
            return goodbye()

        utterance = (transcript or "").strip()
        heard = [TranscriptEntry(speaker="caller", text=utterance)] if utterance else []

        if session.state is not CallState.CONFIRMING_TIME:
            # Stale redirect, e.g. after the caller already declined this time.
            LOGGER.warning(
                "Call %s got a confirmation while %s; asking for a time", session.id, session.state.value
            )
            return DialogOutcome(
                script=[*_say(ASK_TIME), listen_with_timeout("turn")],
                updates={"state": CallState.GATHERING_TIME},
                history=[*heard, _assistant(ASK_TIME)],
            )
        if timed_out:
            return _failed(REASON_CONFIRMATION_TIMEOUT, CONFIRMATION_TIMEOUT_APOLOGY)

        proposed = proposed_time or session.proposed_time

        if proposed is None:
            LOGGER.warning("Call %s confirmation without a proposed time; asking again", session.id)
            return DialogOutcome(
                script=[*_say(ASK_TIME), listen_with_timeout("turn")],
                updates={"state": CallState.GATHERING_TIME},
                history=[*heard, _assistant(ASK_TIME)],
            )

        spoken = spoken_time(proposed, self._tz)
        if utterance:
            kind = await self._classifier.classify_confirmation(session, utterance, proposed_time=spoken)
        else:
            kind = ConfirmationKind.UNCLEAR
        LOGGER.info("Call %s confirmation classified as %s", session.id, kind.value)

        if kind is ConfirmationKind.AFFIRMATIVE:
            notify = None
            if session.user_id:
                notify = Notification(
                    user_id=session.user_id,
                    title="Appointment Confirmed",
                    body=f"Your appointment for {session.appointment_reason} is confirmed for {spoken}.",
                    data={
                        "type": "appointment_confirmed",
                        "call_id": session.id,
                        "confirmed_time": proposed.isoformat(),
                    },
                )
            else:
                LOGGER.warning("Call %s has no user_id; skipping confirmation notification", session.id)
            return DialogOutcome(
                script=[*_say(CONFIRMED), Hangup()],
                updates={"state": CallState.COMPLETED, "final_time": proposed},
                history=[*heard, _assistant(CONFIRMED)],
                notify=notify,
            )

        if kind is ConfirmationKind.NEGATIVE:
            return DialogOutcome(
                script=[*_say(NEGATIVE), listen_with_timeout("turn")],
                updates={"state": CallState.GATHERING_TIME, "proposed_time": None},
                history=[*heard, _assistant(NEGATIVE)],
            )

        prompt = f"Sorry, I didn't catch that. Does {spoken} work for you? Please say yes or no."
        return DialogOutcome(
            script=[*_say(prompt), listen_with_timeout("confirmation", proposedTime=proposed.isoformat())],
            history=[*heard, _assistant(prompt)],
        )

    def handle_status_event(
        self, session: CallSession, status: str, answered_by: str | None = None
    ) -> DialogOutcome:
        """Map a carrier status callback onto the record.

        Status callbacks carry no voice turn, so the script is always empty.
        """

        if session.is_terminal:
            return DialogOutcome(script=[])

        status = (status or "").strip().lower()
        answered_by = (answered_by or "").strip().lower()
        updates: dict[str, Any] = {"last_call_status": status or None}

        if answered_by.startswith("machine") or answered_by == "fax":
            reason = REASON_VOICEMAIL
        elif status in _STATUS_REASONS:
            reason = _STATUS_REASONS[status]
        elif status == "completed":
            reason = REASON_ENDED
        else:
            reason = None

        if reason:
            LOGGER.info("Call %s failed on status %s (answered_by=%s)", session.id, status, answered_by or "-")
            updates.update(state=CallState.FAILED, failure_reason=reason)
        return DialogOutcome(script=[], updates=updates)
