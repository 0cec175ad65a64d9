"""LLM-backed classification of caller turns with a single validating parse boundary.

Model output is free text that is supposed to be JSON (turns) or a single label
(confirmations). Everything that does not parse cleanly becomes UNCLEAR; callers
never see a parse exception.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, tzinfo

from agents.errors import ClassificationParseError
from agents.schemas import CallSession, ConfirmationKind, TurnClassification, TurnKind
from llm.base import BaseLLMClient
from prompts.loader import render_history, render_prompt

LOGGER = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_LABEL = re.compile(r"[A-Z]+")


def _load_json_object(raw: str) -> dict:
    cleaned = _CODE_FENCE.sub("", (raw or "").strip()).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ClassificationParseError(f"Invalid JSON: {cleaned[:200]!r}") from exc
    if not isinstance(payload, dict):
        raise ClassificationParseError("Classifier output is not a JSON object")
    return payload


def _parse_time(value: object, default_tz: tzinfo) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise ClassificationParseError("Missing suggested time")
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise ClassificationParseError(f"Unparsable time: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_tz)
    return parsed


def _text_field(payload: dict, *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def parse_turn_classification(raw: str, *, default_tz: tzinfo) -> TurnClassification:
    """Parse the turn classifier's JSON into a tagged result."""

    try:
        payload = _load_json_object(raw)
        status = str(payload.get("status") or "").strip().upper()

        if status == TurnKind.TIME_SUGGESTED.value:
            return TurnClassification(
                kind=TurnKind.TIME_SUGGESTED,
                proposed_time=_parse_time(payload.get("suggested_iso_string"), default_tz),
            )
        if status in {TurnKind.QUESTION.value, "NEED_MORE_INFO"}:
            return TurnClassification(
                kind=TurnKind.QUESTION,
                text=_text_field(payload, "question", "what_they_need"),
            )
        if status == TurnKind.CANNOT_SCHEDULE.value:
            return TurnClassification(
                kind=TurnKind.CANNOT_SCHEDULE,
                text=_text_field(payload, "reason") or "Caller is unable to schedule",
            )
        if status == TurnKind.AMBIGUOUS.value:
            return TurnClassification(
                kind=TurnKind.AMBIGUOUS,
                text=_text_field(payload, "clarification_needed"),
            )
        if status != TurnKind.UNCLEAR.value:
            raise ClassificationParseError(f"Unknown status {status!r}")
    except ClassificationParseError as exc:
        LOGGER.warning("Turn classification unusable, treating as UNCLEAR: %s", exc.detail)

    return TurnClassification(kind=TurnKind.UNCLEAR)


def parse_confirmation(raw: str) -> ConfirmationKind:
    """Map the confirmation classifier's label to a ConfirmationKind."""

    match = _LABEL.search((raw or "").upper())
    if match is None:
        return ConfirmationKind.UNCLEAR
    try:
        return ConfirmationKind(match.group(0))
    except ValueError:
        LOGGER.warning("Unexpected confirmation label %r, treating as UNCLEAR", raw)
        return ConfirmationKind.UNCLEAR


class TurnClassifier:
    """Runs the classification prompts against the language model gateway."""

    def __init__(self, llm_client: BaseLLMClient, *, timezone: tzinfo) -> None:
        self._llm = llm_client
        self._tz = timezone

    async def classify_turn(
        self, session: CallSession, transcript: str, *, now: datetime
    ) -> TurnClassification:
        prompt = render_prompt(
            "turn_classification.txt",
            user_name=session.display_name,
            reason=session.appointment_reason,
            today=now.astimezone(self._tz).strftime("%A, %B %d, %Y"),
            timezone=str(self._tz),
            state=session.state.value,
            history=render_history(session.transcript, limit=3),
            utterance=transcript,
        )
        try:
            raw = await self._llm.classify(prompt)
        except Exception as exc:
            LOGGER.error("Turn classification request failed: %s", exc)
            return TurnClassification(kind=TurnKind.UNCLEAR)
        return parse_turn_classification(raw, default_tz=self._tz)

    async def classify_confirmation(
        self, session: CallSession, transcript: str, *, proposed_time: str
    ) -> ConfirmationKind:
        prompt = render_prompt(
            "confirmation_classification.txt",
            proposed_time=proposed_time,
            utterance=transcript,
            history=render_history(session.transcript, limit=2),
        )
        try:
            raw = await self._llm.classify(prompt)
        except Exception as exc:
            LOGGER.error("Confirmation classification request failed: %s", exc)
            return ConfirmationKind.UNCLEAR
        return parse_confirmation(raw)

    async def answer_question(self, session: CallSession, question: str) -> str | None:
        prompt = render_prompt(
            "question_answer.txt",
            user_name=session.display_name,
            reason=session.appointment_reason,
            contact=session.contact_info,
            question=question,
        )
        try:
            answer = (await self._llm.classify(prompt, temperature=0.3)).strip()
        except Exception as exc:
            LOGGER.error("Question answering failed: %s", exc)
            return None
        return answer or None
