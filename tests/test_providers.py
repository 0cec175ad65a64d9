from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from agents.errors import ConfigurationError, NotificationError, SynthesisError


def _run(coro):
    return asyncio.run(coro)


async def _collect(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


def _patch_async_client(monkeypatch, module, handler) -> list[httpx.Request]:
    """Route every ``httpx.AsyncClient`` built by ``module`` through a mock transport."""

    seen: list[httpx.Request] = []
    real_client = httpx.AsyncClient

    def recording(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    monkeypatch.setattr(
        module.httpx, "AsyncClient", lambda **kwargs: real_client(transport=httpx.MockTransport(recording), **kwargs)
    )
    return seen


def test_elevenlabs_streams_audio(monkeypatch) -> None:
    import speech.tts as tts

    monkeypatch.setattr(tts.get_settings(), "elevenlabs_api_key", "el-key")
    monkeypatch.setattr(tts.get_settings(), "elevenlabs_output_format", "pcm_16000")
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"\x01\x02" * 100)

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await _collect(tts.ElevenLabsSynthesizer(http_client=client).stream_synthesize("Hello there."))

    audio = _run(scenario())

    assert audio == b"\x01\x02" * 100
    request = seen[0]
    assert request.url.path.endswith("/stream")
    assert request.url.params["output_format"] == "pcm_16000"
    assert request.headers["xi-api-key"] == "el-key"
    assert json.loads(request.content)["text"] == "Hello there."


def test_elevenlabs_error_status_raises(monkeypatch) -> None:
    import speech.tts as tts

    monkeypatch.setattr(tts.get_settings(), "elevenlabs_api_key", "el-key")

    async def scenario():
        transport = httpx.MockTransport(lambda request: httpx.Response(401, text="invalid api key"))
        async with httpx.AsyncClient(transport=transport) as client:
            return await _collect(tts.ElevenLabsSynthesizer(http_client=client).stream_synthesize("Hi"))

    with pytest.raises(SynthesisError, match="401"):
        _run(scenario())


def test_elevenlabs_requires_api_key(monkeypatch) -> None:
    import speech.tts as tts

    monkeypatch.setattr(tts.get_settings(), "elevenlabs_api_key", None)
    with pytest.raises(ConfigurationError):
        tts.ElevenLabsSynthesizer()


def test_notification_posts_payload(monkeypatch) -> None:
    from integrations import notifications

    seen = _patch_async_client(monkeypatch, notifications, lambda request: httpx.Response(202))
    gateway = notifications.NotificationGateway(endpoint="https://push.example.com/notify", api_key="push-key")

    _run(gateway.send("user-1", "Appointment Confirmed", "Tuesday at 2", {"call_id": "call-1"}))

    assert seen[0].headers["Authorization"] == "Bearer push-key"
    assert json.loads(seen[0].content) == {
        "user_id": "user-1",
        "title": "Appointment Confirmed",
        "body": "Tuesday at 2",
        "data": {"call_id": "call-1"},
    }


def test_notification_failure_raises(monkeypatch) -> None:
    from integrations import notifications

    _patch_async_client(monkeypatch, notifications, lambda request: httpx.Response(500))
    gateway = notifications.NotificationGateway(endpoint="https://push.example.com/notify")

    with pytest.raises(NotificationError):
        _run(gateway.send("user-1", "t", "b"))


def test_notification_without_endpoint_is_dropped(monkeypatch) -> None:
    from integrations import notifications

    monkeypatch.setattr(notifications.get_settings(), "notification_endpoint", None)
    seen = _patch_async_client(monkeypatch, notifications, lambda request: httpx.Response(200))

    _run(notifications.NotificationGateway().send("user-1", "t", "b"))

    assert seen == []


def test_vllm_stream_parses_server_sent_events(monkeypatch) -> None:
    from llm import vllm_client

    monkeypatch.setattr(vllm_client.get_settings(), "llm_endpoint", "http://vllm.local")
    events = [
        {"choices": [{"delta": {"role": "assistant"}}]},
        {"choices": [{"delta": {"content": "Tuesday "}}]},
        {"choices": [{"delta": {"content": "works."}}]},
    ]
    body = "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: not-json\n\ndata: [DONE]\n\n"
    seen = _patch_async_client(monkeypatch, vllm_client, lambda request: httpx.Response(200, text=body))

    async def collect():
        return [token async for token in vllm_client.VLLMClient().stream_generate("Say something")]

    assert _run(collect()) == ["Tuesday ", "works."]
    payload = json.loads(seen[0].content)
    assert payload["stream"] is True
    assert payload["messages"] == [{"role": "user", "content": "Say something"}]


def test_vllm_classify_returns_message_content(monkeypatch) -> None:
    from llm import vllm_client

    monkeypatch.setattr(vllm_client.get_settings(), "llm_endpoint", "http://vllm.local/")
    reply = {"choices": [{"message": {"content": "AFFIRMATIVE"}}]}
    seen = _patch_async_client(monkeypatch, vllm_client, lambda request: httpx.Response(200, json=reply))

    assert _run(vllm_client.VLLMClient().classify("Yes or no?")) == "AFFIRMATIVE"
    assert str(seen[0].url) == "http://vllm.local/v1/chat/completions"
    assert json.loads(seen[0].content)["temperature"] == 0.0


def test_vllm_http_failure_is_generation_error(monkeypatch) -> None:
    from agents.errors import GenerationError
    from llm import vllm_client

    monkeypatch.setattr(vllm_client.get_settings(), "llm_endpoint", "http://vllm.local")
    _patch_async_client(monkeypatch, vllm_client, lambda request: httpx.Response(503, text="overloaded"))

    async def collect():
        return [token async for token in vllm_client.VLLMClient().stream_generate("Hi")]

    with pytest.raises(GenerationError):
        _run(collect())
