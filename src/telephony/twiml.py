"""Render voice scripts as Twilio TwiML."""

from __future__ import annotations

from collections.abc import Callable
from xml.sax.saxutils import escape, quoteattr

from telephony.voice_script import (
    ConnectStream,
    Directive,
    Hangup,
    Listen,
    Pause,
    Redirect,
    Speak,
    VoiceScript,
    WebhookAction,
)

ActionResolver = Callable[[WebhookAction], str]


def _say(text: str, *, voice: str, language: str) -> str:
    return f"<Say voice={quoteattr(voice)} language={quoteattr(language)}>{escape(text)}</Say>"


def _directive(
    directive: Directive,
    *,
    resolve: ActionResolver,
    voice: str,
    language: str,
    gather_timeout: int,
) -> str:
    if isinstance(directive, Speak):
        return _say(directive.text, voice=voice, language=language)
    if isinstance(directive, Listen):
        action = quoteattr(resolve(directive.action))
        timeout_url = escape(resolve(directive.timeout_action))
        return (
            f"<Gather input=\"speech\" action={action} method=\"POST\" "
            f"language={quoteattr(language)} timeout=\"{int(gather_timeout)}\" speechTimeout=\"auto\" />"
            f"<Redirect method=\"POST\">{timeout_url}</Redirect>"
        )
    if isinstance(directive, Redirect):
        return f"<Redirect method=\"POST\">{escape(resolve(directive.action))}</Redirect>"
    if isinstance(directive, Pause):
        return f"<Pause length=\"{max(1, int(directive.seconds))}\" />"
    if isinstance(directive, ConnectStream):
        return f"<Connect><Stream url={quoteattr(directive.url)} /></Connect>"
    if isinstance(directive, Hangup):
        return "<Hangup />"
    raise TypeError(f"Unknown directive: {directive!r}")


def render_twiml(
    script: VoiceScript,
    *,
    resolve: ActionResolver,
    voice: str = "alice",
    language: str = "en-US",
    gather_timeout: int = 5,
) -> str:
    body = "".join(
        _directive(d, resolve=resolve, voice=voice, language=language, gather_timeout=gather_timeout)
        for d in script
    )
    return "<?xml version=\"1.0\" encoding=\"UTF-8\"?>" f"<Response>{body}</Response>"
