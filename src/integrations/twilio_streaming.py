"""Twilio Media Streams message codec.

Inbound events are parsed into small typed records; outbound ``media`` and
``mark`` events are built as JSON text ready for ``websocket.send_text``.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class StreamEvent:
    event: str
    stream_sid: str | None = None
    payload: bytes | None = None
    mark_name: str | None = None
    track: str | None = None


def parse_twilio_ws_message(text: str) -> dict[str, Any]:
    return json.loads(text)


def parse_stream_event(message: dict[str, Any]) -> StreamEvent:
    event = str(message.get("event") or "")
    stream_sid = message.get("streamSid")

    if event == "start":
        start = message.get("start") or {}
        return StreamEvent(event=event, stream_sid=start.get("streamSid") or stream_sid)
    if event == "media":
        media = message.get("media") or {}
        raw = media.get("payload")
        payload = base64.b64decode(raw) if isinstance(raw, str) and raw else b""
        return StreamEvent(event=event, stream_sid=stream_sid, payload=payload, track=media.get("track"))
    if event == "mark":
        mark = message.get("mark") or {}
        return StreamEvent(event=event, stream_sid=stream_sid, mark_name=mark.get("name"))
    return StreamEvent(event=event, stream_sid=stream_sid)


def media_message(stream_sid: str | None, frame: bytes) -> str:
    return json.dumps(
        {
            "event": "media",
            "streamSid": stream_sid,
            "media": {"payload": base64.b64encode(frame).decode("ascii")},
        }
    )


def mark_message(stream_sid: str | None, name: str) -> str:
    return json.dumps({"event": "mark", "streamSid": stream_sid, "mark": {"name": name}})
