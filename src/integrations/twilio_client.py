from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import urlencode

from agents.errors import ConfigurationError
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


@dataclass(frozen=True)
class TwilioConfig:
    account_sid: str
    auth_token: str
    from_number: str
    public_base_url: str


def get_twilio_config() -> TwilioConfig:
    settings = get_settings()
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise ConfigurationError("Twilio credentials are not configured")
    if not settings.twilio_from_number:
        raise ConfigurationError("Twilio from-number is not configured")
    if not settings.public_base_url:
        raise ConfigurationError("PUBLIC_BASE_URL is required for Twilio callbacks")

    return TwilioConfig(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from_number,
        public_base_url=settings.public_base_url.rstrip("/"),
    )


def call_webhook_url(base_url: str, call_id: str, handler: str, params: dict[str, str] | None = None) -> str:
    url = f"{base_url.rstrip('/')}/api/twilio/calls/{call_id}/{handler}"
    if params:
        url += "?" + urlencode(params)
    return url


def to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def place_call(client, cfg: TwilioConfig, *, to_number: str, call_id: str, streaming: bool) -> str:
    """Start an outbound call; Twilio fetches TwiML from our webhooks. Returns the CallSid."""

    entry = "stream" if streaming else "initiate"
    call = client.calls.create(
        to=to_number,
        from_=cfg.from_number,
        url=call_webhook_url(cfg.public_base_url, call_id, entry),
        method="POST",
        status_callback=call_webhook_url(cfg.public_base_url, call_id, "status"),
        status_callback_event=STATUS_CALLBACK_EVENTS,
        status_callback_method="POST",
        machine_detection="Enable",
    )
    LOGGER.info("Placed call %s to %s (sid=%s, streaming=%s)", call_id, to_number, call.sid, streaming)
    return str(call.sid)
