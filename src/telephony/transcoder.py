"""Streaming conversion of synthesized audio to 8 kHz mono mu-law.

Both transcoders consume an async byte iterator and yield mu-law bytes as they
become available, so memory use does not grow with the length of the reply.
Failures (upstream or in the conversion itself) end the output iterator with a
``TranscodeError``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

import numpy as np

from agents.errors import TranscodeError
from telephony.g711 import FRAME_BYTES, SAMPLE_RATE, pcm16_resample, ulaw_encode

LOGGER = logging.getLogger(__name__)

_READ_SIZE = 4096
_PCM_FORMAT = re.compile(r"^pcm_(\d+)$")


class BaseTranscoder(ABC):
    """Interface for synthesis-codec to telephony-codec converters."""

    @abstractmethod
    def transcode(self, source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """Yield mu-law bytes converted from ``source``."""


class FfmpegTranscoder(BaseTranscoder):
    """Decode compressed audio (MP3) through an ffmpeg subprocess."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", input_format: str = "mp3") -> None:
        self._ffmpeg = ffmpeg_path
        self._input_format = input_format

    def _command(self) -> list[str]:
        return [
            self._ffmpeg,
            "-hide_banner",
            "-loglevel",
            "error",
            "-f",
            self._input_format,
            "-i",
            "pipe:0",
            "-f",
            "mulaw",
            "-ar",
            str(SAMPLE_RATE),
            "-ac",
            "1",
            "pipe:1",
        ]

    async def transcode(self, source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TranscodeError(f"Could not start ffmpeg: {exc}") from exc

        upstream_error: list[BaseException] = []

        async def feed() -> None:
            assert proc.stdin is not None
            try:
                async for chunk in source:
                    if not chunk:
                        continue
                    proc.stdin.write(chunk)
                    await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                LOGGER.debug("ffmpeg closed its input early")
            except Exception as exc:
                upstream_error.append(exc)
            finally:
                if not proc.stdin.is_closing():
                    proc.stdin.close()

        writer = asyncio.create_task(feed())
        stderr_reader = asyncio.create_task(proc.stderr.read())  # type: ignore[union-attr]
        try:
            assert proc.stdout is not None
            while True:
                data = await proc.stdout.read(_READ_SIZE)
                if not data:
                    break
                yield data

            await writer
            returncode = await proc.wait()
            stderr = (await stderr_reader).decode(errors="replace").strip()

            if upstream_error:
                raise TranscodeError(f"Audio source failed: {upstream_error[0]}") from upstream_error[0]
            if returncode != 0:
                raise TranscodeError(f"ffmpeg exited with {returncode}: {stderr[:300]}")
        finally:
            if not writer.done():
                writer.cancel()
            if not stderr_reader.done():
                stderr_reader.cancel()
            if proc.returncode is None:
                proc.kill()
                await proc.wait()


class PcmTranscoder(BaseTranscoder):
    """Resample and mu-law encode raw little-endian PCM16 in-process."""

    def __init__(self, source_rate: int) -> None:
        self._source_rate = source_rate

    async def transcode(self, source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        carry = b""
        try:
            async for chunk in source:
                data = carry + chunk
                # Samples are two bytes; an odd trailing byte waits for the next chunk.
                usable = len(data) - (len(data) % 2)
                carry = data[usable:]
                if not usable:
                    continue
                pcm = np.frombuffer(data[:usable], dtype="<i2")
                encoded = ulaw_encode(pcm16_resample(pcm, self._source_rate, SAMPLE_RATE))
                if encoded:
                    yield encoded
        except Exception as exc:
            raise TranscodeError(f"Audio source failed: {exc}") from exc

        if carry:
            LOGGER.debug("Dropping %d trailing byte(s) of PCM input", len(carry))


class PassthroughTranscoder(BaseTranscoder):
    """Source audio is already 8 kHz mu-law."""

    async def transcode(self, source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        try:
            async for chunk in source:
                if chunk:
                    yield chunk
        except Exception as exc:
            raise TranscodeError(f"Audio source failed: {exc}") from exc


def needs_ffmpeg(output_format: str) -> bool:
    return output_format.startswith("mp3_")


def build_transcoder(output_format: str, *, ffmpeg_path: str = "ffmpeg") -> BaseTranscoder:
    """Pick a transcoder for an ElevenLabs ``output_format`` such as ``mp3_44100_128``."""

    match = _PCM_FORMAT.match(output_format)
    if match:
        return PcmTranscoder(int(match.group(1)))
    if output_format.startswith("ulaw_8000"):
        return PassthroughTranscoder()
    if needs_ffmpeg(output_format):
        return FfmpegTranscoder(ffmpeg_path, "mp3")
    raise ValueError(f"Unsupported synthesis output format: {output_format}")


async def iter_frames(ulaw: AsyncIterator[bytes], frame_bytes: int = FRAME_BYTES) -> AsyncIterator[bytes]:
    """Re-slice a mu-law stream into fixed frames; the final frame may be short."""

    pending = b""
    async for chunk in ulaw:
        pending += chunk
        while len(pending) >= frame_bytes:
            yield pending[:frame_bytes]
            pending = pending[frame_bytes:]
    if pending:
        yield pending
