"""Decide whether a call can use the full-duplex media stream."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass

from config.settings import Settings
from telephony.transcoder import needs_ffmpeg

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Capabilities:
    recognition: bool
    synthesis: bool
    transcoding: bool

    @property
    def missing(self) -> list[str]:
        return [name for name in ("recognition", "synthesis", "transcoding") if not getattr(self, name)]


def can_stream(capabilities: Capabilities) -> bool:
    """True only when every stage of the streaming pipeline is available."""

    return capabilities.recognition and capabilities.synthesis and capabilities.transcoding


def detect_capabilities(settings: Settings) -> Capabilities:
    if settings.stt_provider == "local":
        recognition = True
    else:
        recognition = bool(settings.transcription_api_key)

    synthesis = bool(settings.elevenlabs_api_key)

    # PCM and mu-law output are converted in-process; MP3 needs ffmpeg.
    if needs_ffmpeg(settings.elevenlabs_output_format):
        transcoding = shutil.which(settings.ffmpeg_path) is not None
    else:
        transcoding = True

    capabilities = Capabilities(recognition=recognition, synthesis=synthesis, transcoding=transcoding)
    if capabilities.missing:
        LOGGER.warning("Media streaming unavailable, missing: %s", ", ".join(capabilities.missing))
    return capabilities
