"""Provider-neutral voice-script directives returned by the dialog layer.

A script is an ordered list of directives. Webhook actions are logical
(``handler`` plus query parameters); the HTTP layer turns them into URLs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Union

Handler = Literal["initiate", "turn", "confirmation", "stream"]


@dataclass(frozen=True, slots=True)
class WebhookAction:
    handler: Handler
    params: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Speak:
    text: str


@dataclass(frozen=True, slots=True)
class Listen:
    """Gather caller speech, posting it to ``action``.

    When the caller stays silent the provider falls through to ``timeout_action``.
    """

    action: WebhookAction
    timeout_action: WebhookAction


@dataclass(frozen=True, slots=True)
class Redirect:
    action: WebhookAction


@dataclass(frozen=True, slots=True)
class Pause:
    seconds: int


@dataclass(frozen=True, slots=True)
class ConnectStream:
    url: str


@dataclass(frozen=True, slots=True)
class Hangup:
    pass


Directive = Union[Speak, Listen, Redirect, Pause, ConnectStream, Hangup]
VoiceScript = list[Directive]


def listen_with_timeout(handler: Handler, **params: str) -> Listen:
    """Listen directive whose silent fallback re-enters ``handler`` with ``timedOut=true``."""

    return Listen(
        action=WebhookAction(handler, dict(params)),
        timeout_action=WebhookAction(handler, {**params, "timedOut": "true"}),
    )


def ends_call(script: VoiceScript) -> bool:
    return bool(script) and isinstance(script[-1], Hangup)
