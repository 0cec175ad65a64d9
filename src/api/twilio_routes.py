"""Twilio Voice integration.

This module provides:
- TwiML webhooks for the gather/say appointment dialog.
- The status callback that records carrier outcomes.
- The Media Streams entry point and its WebSocket.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, Response, WebSocket, WebSocketDisconnect

from agents.call_service import CallService
from agents.dialog import technical_failure
from agents.errors import AssistantError, CallNotFoundError
from api.dependencies import get_call_service, get_capabilities, get_media_session_factory
from config.settings import get_settings
from integrations.twilio_client import call_webhook_url, to_ws_url
from integrations.twilio_streaming import parse_twilio_ws_message
from telephony.preflight import Capabilities, can_stream
from telephony.twiml import render_twiml
from telephony.voice_script import ConnectStream, Pause, Redirect, VoiceScript, WebhookAction, ends_call

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])


def _base_url(request: Request) -> str:
    settings = get_settings()
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/")
    # Fallback to request host. This may not work behind proxies; prefer PUBLIC_BASE_URL.
    return str(request.base_url).rstrip("/")


def _twiml_response(xml: str) -> Response:
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")


def _render(request: Request, call_id: str, script: VoiceScript) -> Response:
    settings = get_settings()
    base = _base_url(request)
    xml = render_twiml(
        script,
        resolve=lambda action: call_webhook_url(base, call_id, action.handler, action.params),
        voice=settings.twilio_say_voice,
        language=settings.twilio_say_language,
        gather_timeout=settings.twilio_gather_timeout_seconds,
    )
    if ends_call(script):
        LOGGER.info("Hanging up call %s", call_id)
    return _twiml_response(xml)


async def _form_text(request: Request, key: str) -> str:
    form = await request.form()
    return str(form.get(key) or "").strip()


async def _failure_script(service: CallService, call_id: str, exc: Exception) -> VoiceScript:
    if isinstance(exc, CallNotFoundError):
        LOGGER.error("Webhook for unknown call %s", call_id)
        return technical_failure().script
    LOGGER.exception("Twilio webhook failed for call %s: %s", call_id, exc)
    detail = exc.detail if isinstance(exc, AssistantError) else type(exc).__name__
    return await service.fail_call(call_id, detail)


def _parse_proposed_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        LOGGER.warning("Ignoring unparsable proposedTime %r", value)
        return None


@router.post("/calls/{call_id}/initiate")
async def initiate_call(
    call_id: str,
    request: Request,
    service: CallService = Depends(get_call_service),
) -> Response:
    try:
        script = await service.initiate(call_id)
    except Exception as exc:
        script = await _failure_script(service, call_id, exc)
    return _render(request, call_id, script)


@router.post("/calls/{call_id}/turn")
async def handle_turn(
    call_id: str,
    request: Request,
    timed_out: bool = Query(default=False, alias="timedOut"),
    service: CallService = Depends(get_call_service),
) -> Response:
    try:
        speech = await _form_text(request, "SpeechResult")
        script = await service.handle_turn(call_id, speech, timed_out=timed_out)
    except Exception as exc:
        script = await _failure_script(service, call_id, exc)
    return _render(request, call_id, script)


@router.post("/calls/{call_id}/confirmation")
async def handle_confirmation(
    call_id: str,
    request: Request,
    timed_out: bool = Query(default=False, alias="timedOut"),
    proposed_time: str | None = Query(default=None, alias="proposedTime"),
    service: CallService = Depends(get_call_service),
) -> Response:
    try:
        speech = await _form_text(request, "SpeechResult")
        script = await service.handle_confirmation(
            call_id,
            speech,
            proposed_time=_parse_proposed_time(proposed_time),
            timed_out=timed_out,
        )
    except Exception as exc:
        script = await _failure_script(service, call_id, exc)
    return _render(request, call_id, script)


@router.post("/calls/{call_id}/status")
async def call_status(
    call_id: str,
    request: Request,
    service: CallService = Depends(get_call_service),
) -> Response:
    status = await _form_text(request, "CallStatus")
    answered_by = await _form_text(request, "AnsweredBy")
    LOGGER.info("Status callback for call %s: %s (answered_by=%s)", call_id, status, answered_by or "-")
    try:
        await service.handle_status(call_id, status, answered_by or None)
    except AssistantError as exc:
        LOGGER.error("Status callback for call %s not recorded: %s", call_id, exc.detail)
    return _render(request, call_id, [])


@router.post("/calls/{call_id}/stream")
async def initiate_stream(
    call_id: str,
    request: Request,
    capabilities: Capabilities = Depends(get_capabilities),
) -> Response:
    settings = get_settings()
    if not settings.twilio_enable_media_streams or not can_stream(capabilities):
        LOGGER.info("Call %s falls back to the gather dialog", call_id)
        return _render(request, call_id, [Redirect(WebhookAction("initiate"))])

    # WebSocket endpoint must be publicly reachable (wss:// recommended).
    stream_url = to_ws_url(f"{_base_url(request)}/api/twilio/media/{call_id}")
    script: VoiceScript = [ConnectStream(stream_url), Pause(settings.twilio_stream_pause_seconds)]
    return _render(request, call_id, script)


@router.websocket("/media/{call_id}")
async def media_stream(
    websocket: WebSocket,
    call_id: str,
    session_factory=Depends(get_media_session_factory),
) -> None:
    await websocket.accept()
    session = session_factory(call_id, websocket.send_text)
    try:
        while True:
            message = await websocket.receive_text()
            try:
                parsed = parse_twilio_ws_message(message)
            except json.JSONDecodeError:
                LOGGER.warning("Dropping malformed media message for call %s", call_id)
                continue
            await session.handle_message(parsed)
            if parsed.get("event") == "stop":
                break
    except WebSocketDisconnect:
        LOGGER.info("Media socket for call %s disconnected", call_id)
    finally:
        await session.close()
