"""Utterance transcription backends (hosted Whisper API or local faster-whisper)."""

from __future__ import annotations

import asyncio
import io
import logging
import wave
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np
import soundfile as sf

from agents.errors import ConfigurationError, TranscriptionError
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)


@dataclass
class TranscriptionSegment:
    """Structured representation of a Whisper transcription segment."""

    start: float
    end: float
    text: str
    logprob: float


def pcm16_to_wav_bytes(pcm: np.ndarray, sample_rate: int) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm.astype(np.int16).tobytes())
    return buffer.getvalue()


class BaseTranscriber(ABC):
    """Turns one WAV-encoded utterance into text."""

    @abstractmethod
    async def transcribe(self, wav_bytes: bytes) -> str:
        """Return the transcript, or an empty string when nothing was said."""


class OpenAITranscriber(BaseTranscriber):
    """Hosted Whisper transcription through the OpenAI audio API."""

    def __init__(self) -> None:
        from openai import AsyncOpenAI

        settings = get_settings()
        if not settings.transcription_api_key:
            raise ConfigurationError("STT_API_KEY or LLM_API_KEY must be configured for transcription.")

        self._client = AsyncOpenAI(api_key=settings.transcription_api_key)
        self._model = settings.stt_model
        self._language = settings.stt_language

    async def transcribe(self, wav_bytes: bytes) -> str:
        try:
            result = await self._client.audio.transcriptions.create(
                model=self._model,
                file=("utterance.wav", wav_bytes, "audio/wav"),
                language=self._language,
                temperature=0.0,
            )
        except Exception as exc:
            raise TranscriptionError(f"Transcription request failed: {exc}") from exc
        return (getattr(result, "text", "") or "").strip()


class WhisperTranscriber(BaseTranscriber):
    """Local transcription using faster-whisper."""

    def __init__(self) -> None:
        from faster_whisper import WhisperModel

        settings = get_settings()
        self._language = settings.stt_language
        self._model = WhisperModel(
            model_size_or_path=settings.whisper_model_size,
            device=settings.whisper_device,
            compute_type=settings.whisper_compute_type,
        )

    def transcribe_segments(self, wav_bytes: bytes) -> list[TranscriptionSegment]:
        with sf.SoundFile(io.BytesIO(wav_bytes), mode="r") as audio_file:
            audio_array = audio_file.read(dtype="float32")

        if audio_array.ndim > 1:
            audio_array = np.mean(audio_array, axis=1)  # convert to mono

        segments, _info = self._model.transcribe(
            audio_array,
            beam_size=5,
            task="transcribe",
            language=self._language,
            condition_on_previous_text=False,
            temperature=0.0,
            initial_prompt="A phone call about booking a medical appointment.",
        )

        results: list[TranscriptionSegment] = []
        for segment in segments:
            text = segment.text.strip()
            if not text:
                continue
            results.append(
                TranscriptionSegment(
                    start=segment.start,
                    end=segment.end,
                    text=text,
                    logprob=segment.avg_logprob,
                )
            )
        return results

    async def transcribe(self, wav_bytes: bytes) -> str:
        try:
            segments = await asyncio.to_thread(self.transcribe_segments, wav_bytes)
        except Exception as exc:
            raise TranscriptionError(f"Local transcription failed: {exc}") from exc
        return " ".join(segment.text for segment in segments).strip()


def build_transcriber() -> BaseTranscriber:
    """Factory returning the configured transcription backend."""

    settings = get_settings()
    if settings.stt_provider == "local":
        return WhisperTranscriber()
    if settings.stt_provider == "openai":
        return OpenAITranscriber()
    raise ValueError(f"Unsupported STT provider: {settings.stt_provider}")
