from __future__ import annotations

import os
import sys
import tempfile
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

# Must be set before anything imports db.base, which creates the engine at import.
_RUNTIME_DIR = Path(tempfile.mkdtemp(prefix="caller-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{(_RUNTIME_DIR / 'calls_test.db').as_posix()}")
os.environ.setdefault("AUTO_CREATE_DB_SCHEMA", "true")

from agents.errors import CallNotFoundError  # noqa: E402
from agents.schemas import TERMINAL_STATES, CallSession, TranscriptEntry  # noqa: E402
from llm.base import BaseLLMClient  # noqa: E402
from speech.tts import BaseSynthesizer  # noqa: E402


class FakeLLM(BaseLLMClient):
    """Scripted LLM: ``classify`` pops responses, ``stream_chat`` yields tokens."""

    def __init__(
        self,
        responses: list[str] | None = None,
        *,
        tokens: list[str] | None = None,
        fail_classify: bool = False,
        fail_stream: bool = False,
    ) -> None:
        self.responses = list(responses or [])
        self.tokens = list(tokens or [])
        self.fail_classify = fail_classify
        self.fail_stream = fail_stream
        self.prompts: list[str] = []

    async def chat(self, messages, *, temperature: float = 0.1) -> str:
        messages = list(messages)
        self.prompts.append(messages[-1]["content"])
        if self.fail_classify:
            raise RuntimeError("llm down")
        return self.responses.pop(0) if self.responses else ""

    async def stream_chat(self, messages, *, temperature: float = 0.1) -> AsyncIterator[str]:
        self.prompts.append(list(messages)[-1]["content"])
        if self.fail_stream:
            raise RuntimeError("stream down")
        for token in self.tokens:
            yield token


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send(self, user_id: str, title: str, body: str, data: dict | None = None) -> None:
        self.sent.append({"user_id": user_id, "title": title, "body": body, "data": data or {}})


class InMemoryCallRepository:
    """Dict-backed stand-in with the same partial-update semantics as CallRepository."""

    def __init__(self, *calls: CallSession) -> None:
        self.calls: dict[str, CallSession] = {call.id: call for call in calls}
        self.update_calls: list[dict] = []

    async def create(self, call: CallSession) -> CallSession:
        self.calls[call.id] = call
        return call

    async def get(self, call_id: str) -> CallSession:
        if call_id not in self.calls:
            raise CallNotFoundError(f"Call {call_id} not found.")
        return self.calls[call_id].model_copy(deep=True)

    async def update(self, call_id: str, fields: dict) -> None:
        if call_id not in self.calls:
            raise CallNotFoundError(f"Call {call_id} not found.")
        self.update_calls.append(dict(fields))
        self.calls[call_id] = self.calls[call_id].model_copy(update=fields)

    async def update_if_active(self, call_id: str, fields: dict) -> bool:
        call = self.calls.get(call_id)
        if call is None or call.state in TERMINAL_STATES:
            return False
        await self.update(call_id, fields)
        return True

    async def append_history(self, call_id: str, entry: TranscriptEntry) -> None:
        self.calls[call_id].transcript.append(entry)


class FakeSynthesizer(BaseSynthesizer):
    """Returns deterministic bytes per text; ``fail_on`` texts raise mid-stream."""

    output_format = "ulaw_8000"

    def __init__(self, *, fail_on: set[str] | None = None, frame_count: int = 2) -> None:
        self.fail_on = fail_on or set()
        self.frame_count = frame_count
        self.requests: list[str] = []

    async def stream_synthesize(self, text: str) -> AsyncIterator[bytes]:
        from agents.errors import SynthesisError

        self.requests.append(text)
        if text in self.fail_on:
            raise SynthesisError(f"cannot say {text!r}")
        marker = (text[:1] or "x").encode("ascii", "replace")
        for _ in range(self.frame_count):
            yield marker * 160


class FakeRecognitionStream:
    def __init__(self, on_final_transcript, on_error) -> None:
        self.on_final_transcript = on_final_transcript
        self.on_error = on_error
        self.frames: list[bytes] = []
        self.closed = False

    def write(self, frame: bytes) -> None:
        self.frames.append(frame)

    def close(self) -> None:
        self.closed = True


class FakeRecognizer:
    def __init__(self) -> None:
        self.streams: list[FakeRecognitionStream] = []

    def open_stream(self, *, on_final_transcript, on_error) -> FakeRecognitionStream:
        stream = FakeRecognitionStream(on_final_transcript, on_error)
        self.streams.append(stream)
        return stream

    @property
    def current(self) -> FakeRecognitionStream:
        return self.streams[-1]


def make_call(**overrides) -> CallSession:
    fields = {
        "id": "call-1",
        "user_id": "user-1",
        "user_name": "Dr. Jane Doe",
        "reason": "dental checkup",
        "contact": "+254700000000",
        "phone_number": "+254711111111",
        "created_at": datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return CallSession(**fields)


@pytest.fixture(scope="session")
def app():
    import importlib

    # Ensure clean import with the test DB settings.
    for module_name in [
        "config.settings",
        "db.base",
        "db.models",
        "db.repository",
        "api.dependencies",
        "api.twilio_routes",
        "api.routes",
        "main",
    ]:
        sys.modules.pop(module_name, None)

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
