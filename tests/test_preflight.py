from __future__ import annotations

import pytest

from config.settings import Settings
from telephony.preflight import Capabilities, can_stream, detect_capabilities


def _settings(**overrides) -> Settings:
    values = {
        "stt_provider": "openai",
        "stt_api_key": "sk-stt",
        "elevenlabs_api_key": "el-key",
        "elevenlabs_output_format": "pcm_16000",
    }
    values.update(overrides)
    return Settings(**values)


def test_can_stream_requires_every_capability() -> None:
    assert can_stream(Capabilities(recognition=True, synthesis=True, transcoding=True))
    assert not can_stream(Capabilities(recognition=True, synthesis=False, transcoding=True))
    assert not can_stream(Capabilities(recognition=False, synthesis=True, transcoding=True))
    assert not can_stream(Capabilities(recognition=True, synthesis=True, transcoding=False))


def test_missing_lists_unavailable_capabilities() -> None:
    caps = Capabilities(recognition=False, synthesis=True, transcoding=False)
    assert caps.missing == ["recognition", "transcoding"]


def test_pcm_output_needs_no_ffmpeg() -> None:
    caps = detect_capabilities(_settings(ffmpeg_path="definitely-not-ffmpeg-xyz"))
    assert caps == Capabilities(recognition=True, synthesis=True, transcoding=True)


def test_mp3_output_requires_ffmpeg_binary() -> None:
    caps = detect_capabilities(
        _settings(elevenlabs_output_format="mp3_44100_128", ffmpeg_path="definitely-not-ffmpeg-xyz")
    )
    assert caps.transcoding is False
    assert not can_stream(caps)


@pytest.mark.parametrize(
    ("overrides", "missing"),
    [
        ({"elevenlabs_api_key": None}, ["synthesis"]),
        ({"stt_api_key": None, "llm_api_key": None}, ["recognition"]),
    ],
)
def test_missing_credentials_disable_streaming(overrides, missing) -> None:
    caps = detect_capabilities(_settings(**overrides))
    assert caps.missing == missing


def test_hosted_recognition_falls_back_to_llm_key() -> None:
    caps = detect_capabilities(_settings(stt_api_key=None, llm_api_key="sk-llm"))
    assert caps.recognition is True


def test_local_whisper_needs_no_key() -> None:
    caps = detect_capabilities(_settings(stt_provider="local", stt_api_key=None, llm_api_key=None))
    assert caps.recognition is True
