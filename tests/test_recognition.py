from __future__ import annotations

import asyncio
import io
import wave

import numpy as np

from agents.errors import TranscriptionError
from speech.recognition import TRANSCRIBE_RATE, RecognitionStream, SpeechRecognizer
from speech.transcriber import BaseTranscriber, pcm16_to_wav_bytes
from telephony.g711 import ulaw_encode
from telephony.vad import SegmenterConfig, UtteranceSegmenter

VOICE = ulaw_encode(np.full(160, 4000, dtype=np.int16))
SILENCE = ulaw_encode(np.zeros(160, dtype=np.int16))
CONFIG = SegmenterConfig(silence_ms=60, min_speech_ms=40, preroll_ms=20)


class FakeTranscriber(BaseTranscriber):
    def __init__(self, text: str = "Tuesday at two works", error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.received: list[bytes] = []

    async def transcribe(self, wav_bytes: bytes) -> str:
        self.received.append(wav_bytes)
        if self.error is not None:
            raise self.error
        return self.text


def _speak_utterance(stream: RecognitionStream) -> None:
    for frame in [SILENCE, VOICE, VOICE, VOICE, SILENCE, SILENCE, SILENCE]:
        stream.write(frame)


def _run_stream(transcriber: BaseTranscriber, *, close_early: bool = False):
    transcripts: list[str] = []
    errors: list[Exception] = []

    async def on_final(text: str) -> None:
        transcripts.append(text)

    async def on_error(exc: Exception) -> None:
        errors.append(exc)

    async def scenario():
        stream = RecognitionStream(
            transcriber, UtteranceSegmenter(CONFIG), on_final_transcript=on_final, on_error=on_error
        )
        _speak_utterance(stream)
        if close_early:
            stream.close()
        await asyncio.sleep(0.05)

    asyncio.run(scenario())
    return transcripts, errors


def test_finished_utterance_is_transcribed() -> None:
    transcriber = FakeTranscriber()
    transcripts, errors = _run_stream(transcriber)

    assert transcripts == ["Tuesday at two works"]
    assert errors == []
    with wave.open(io.BytesIO(transcriber.received[0]), "rb") as wav:
        assert wav.getframerate() == TRANSCRIBE_RATE
        assert wav.getnchannels() == 1


def test_empty_transcript_is_not_delivered() -> None:
    transcripts, errors = _run_stream(FakeTranscriber(text=""))
    assert transcripts == []
    assert errors == []


def test_transcription_failure_goes_to_error_callback() -> None:
    transcripts, errors = _run_stream(FakeTranscriber(error=TranscriptionError("quota exceeded")))

    assert transcripts == []
    assert len(errors) == 1
    assert errors[0].detail == "quota exceeded"


def test_unexpected_failure_is_wrapped() -> None:
    _, errors = _run_stream(FakeTranscriber(error=RuntimeError("boom")))
    assert isinstance(errors[0], TranscriptionError)


def test_closed_stream_delivers_nothing() -> None:
    transcripts, errors = _run_stream(FakeTranscriber(), close_early=True)
    assert transcripts == []
    assert errors == []


def test_recognizer_opens_independent_streams() -> None:
    recognizer = SpeechRecognizer(transcriber=FakeTranscriber(), segmenter_config=CONFIG)

    async def noop(_value) -> None:
        return None

    first = recognizer.open_stream(on_final_transcript=noop, on_error=noop)
    second = recognizer.open_stream(on_final_transcript=noop, on_error=noop)
    first.close()

    assert first.closed is True
    assert second.closed is False


def test_pcm16_to_wav_bytes_header() -> None:
    wav_bytes = pcm16_to_wav_bytes(np.zeros(160, dtype=np.int16), 8000)
    with wave.open(io.BytesIO(wav_bytes), "rb") as wav:
        assert wav.getnframes() == 160
        assert wav.getsampwidth() == 2
