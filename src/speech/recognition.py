"""Streaming speech recognition over 8 kHz mu-law call audio.

Caller frames are segmented into utterances by energy VAD; each finished
utterance is transcribed in the background and delivered through
``on_final_transcript``. Failures are delivered through ``on_error``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from agents.errors import TranscriptionError
from config.settings import get_settings
from speech.transcriber import BaseTranscriber, build_transcriber, pcm16_to_wav_bytes
from telephony.g711 import SAMPLE_RATE, pcm16_resample, ulaw_decode
from telephony.vad import SegmenterConfig, UtteranceSegmenter

LOGGER = logging.getLogger(__name__)

TRANSCRIBE_RATE = 16000

TranscriptCallback = Callable[[str], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]


class RecognitionStream:
    """One open recognition channel; ``write`` frames in, ``close`` when done."""

    def __init__(
        self,
        transcriber: BaseTranscriber,
        segmenter: UtteranceSegmenter,
        *,
        on_final_transcript: TranscriptCallback,
        on_error: ErrorCallback,
    ) -> None:
        self._transcriber = transcriber
        self._segmenter = segmenter
        self._on_final = on_final_transcript
        self._on_error = on_error
        self._pending: set[asyncio.Task] = set()
        self.closed = False

    def write(self, frame: bytes) -> None:
        if self.closed or not frame:
            return
        utterance = self._segmenter.push(ulaw_decode(frame))
        if utterance is not None:
            task = asyncio.create_task(self._transcribe(utterance))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _transcribe(self, pcm8k) -> None:
        wav = pcm16_to_wav_bytes(pcm16_resample(pcm8k, SAMPLE_RATE, TRANSCRIBE_RATE), TRANSCRIBE_RATE)
        try:
            text = await self._transcriber.transcribe(wav)
        except TranscriptionError as exc:
            if not self.closed:
                await self._on_error(exc)
            return
        except Exception as exc:
            LOGGER.exception("Unexpected transcription failure")
            if not self.closed:
                await self._on_error(TranscriptionError(str(exc)))
            return

        if self.closed or not text:
            return
        LOGGER.info("Final transcript: %s", text)
        await self._on_final(text)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._segmenter.reset()
        for task in list(self._pending):
            task.cancel()


class SpeechRecognizer:
    """Recognition gateway: opens one stream per listening period."""

    def __init__(
        self,
        transcriber: BaseTranscriber | None = None,
        segmenter_config: SegmenterConfig | None = None,
    ) -> None:
        settings = get_settings()
        self._transcriber = transcriber
        self._segmenter_config = segmenter_config or SegmenterConfig(
            silence_ms=settings.stt_silence_ms,
            min_speech_ms=settings.stt_min_speech_ms,
        )

    @property
    def transcriber(self) -> BaseTranscriber:
        if self._transcriber is None:
            self._transcriber = build_transcriber()
        return self._transcriber

    def open_stream(
        self,
        *,
        on_final_transcript: TranscriptCallback,
        on_error: ErrorCallback,
    ) -> RecognitionStream:
        return RecognitionStream(
            self.transcriber,
            UtteranceSegmenter(self._segmenter_config),
            on_final_transcript=on_final_transcript,
            on_error=on_error,
        )
