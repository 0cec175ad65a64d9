"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules. Everything that
talks to an external provider is built lazily so the app imports without
credentials and tests can override each piece.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from functools import lru_cache
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from fastapi import Depends, HTTPException

from agents.errors import ConfigurationError
from config.settings import get_settings
from db.repository import CallRepository
from telephony.preflight import Capabilities, detect_capabilities

if TYPE_CHECKING:  # pragma: no cover
    from agents.call_service import CallService
    from llm.base import BaseLLMClient
    from telephony.media_session import MediaStreamSession

MediaSessionFactory = Callable[[str, Callable[[str], Awaitable[None]]], "MediaStreamSession"]


@lru_cache(maxsize=1)
def _repository() -> CallRepository:
    return CallRepository()


def get_repository() -> CallRepository:
    return _repository()


@lru_cache(maxsize=1)
def _llm_client() -> BaseLLMClient:
    from llm.factory import build_llm_client

    return build_llm_client()


@lru_cache(maxsize=1)
def _call_service_factory() -> CallService:
    # Lazy import to avoid importing provider SDKs at module import time.
    from agents.call_service import CallService
    from agents.classification import TurnClassifier
    from agents.dialog import AppointmentDialog
    from integrations.notifications import NotificationGateway

    settings = get_settings()
    tz = ZoneInfo(settings.call_timezone)
    dialog = AppointmentDialog(
        TurnClassifier(_llm_client(), timezone=tz),
        tz=tz,
        practice_name=settings.practice_name,
    )
    return CallService(_repository(), dialog, NotificationGateway())


def get_call_service() -> CallService:
    return _call_service_factory()


def get_capabilities() -> Capabilities:
    return detect_capabilities(get_settings())


@lru_cache(maxsize=1)
def _media_session_factory() -> MediaSessionFactory:
    from speech.recognition import SpeechRecognizer
    from speech.tts import build_synthesizer
    from telephony.media_session import MediaStreamSession
    from telephony.transcoder import build_transcoder

    settings = get_settings()
    recognizer = SpeechRecognizer()
    synthesizer = build_synthesizer()
    transcoder = build_transcoder(settings.elevenlabs_output_format, ffmpeg_path=settings.ffmpeg_path)

    def factory(call_id: str, send_text: Callable[[str], Awaitable[None]]) -> MediaStreamSession:
        return MediaStreamSession(
            call_id,
            send_text,
            repository=_repository(),
            recognizer=recognizer,
            llm=_llm_client(),
            synthesizer=synthesizer,
            transcoder=transcoder,
            chunk_min_length=settings.chunk_min_length,
            assistant_name=settings.assistant_name,
            practice_name=settings.practice_name,
        )

    return factory


def get_media_session_factory() -> MediaSessionFactory:
    return _media_session_factory()


def get_twilio_cfg():
    from integrations.twilio_client import get_twilio_config

    try:
        return get_twilio_config()
    except ConfigurationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc


def get_twilio_client(cfg=Depends(get_twilio_cfg)):
    from twilio.rest import Client

    return Client(cfg.account_sid, cfg.auth_token)
