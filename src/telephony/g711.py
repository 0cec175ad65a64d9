"""G.711 mu-law helpers for 8 kHz telephone audio."""

from __future__ import annotations

from collections.abc import Iterator

import numpy as np

SAMPLE_RATE = 8000
# 20 ms of 8 kHz mu-law, one byte per sample.
FRAME_BYTES = 160


def ulaw_decode(ulaw_bytes: bytes) -> np.ndarray:
    """Decode G.711 mu-law bytes to PCM16 int16 array."""

    data = np.frombuffer(ulaw_bytes, dtype=np.uint8)

    mu = np.bitwise_not(data)
    sign = np.bitwise_and(mu, 0x80)
    exponent = np.right_shift(np.bitwise_and(mu, 0x70), 4)
    mantissa = np.bitwise_and(mu, 0x0F)

    magnitude = ((mantissa.astype(np.int32) << 1) + 33) << (exponent.astype(np.int32) + 2)
    pcm = magnitude.astype(np.int32) - 33
    pcm = np.where(sign != 0, -pcm, pcm)

    return pcm.astype(np.int16)


def ulaw_encode(pcm16: np.ndarray) -> bytes:
    """Encode PCM16 int16 array to G.711 mu-law bytes (vectorized)."""

    if pcm16.size == 0:
        return b""

    x = pcm16.astype(np.int32)
    sign = (x < 0).astype(np.int32)
    x = np.abs(x)

    # bias=33, clip=32635
    x = np.minimum(x, 32635)
    x = x + 33

    exponent = np.zeros_like(x)
    for exp in range(8):
        exponent = np.where(x >= (1 << (exp + 7)), exp, exponent)

    mantissa = (x >> (exponent + 3)) & 0x0F

    ulaw = np.bitwise_not((sign << 7) | (exponent << 4) | mantissa).astype(np.uint8)
    return ulaw.tobytes()


def pcm16_resample(pcm: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """Linear-interpolation resample, good enough for narrowband speech."""

    if src_rate == dst_rate:
        return pcm
    if pcm.size == 0:
        return pcm.astype(np.int16)

    x_old = np.arange(pcm.size, dtype=np.float32)
    x_new = np.linspace(0, pcm.size - 1, int(pcm.size * dst_rate / src_rate), dtype=np.float32)

    y_new = np.interp(x_new, x_old, pcm.astype(np.float32))
    return np.clip(y_new, -32768, 32767).astype(np.int16)


def split_frames(ulaw: bytes, frame_bytes: int = FRAME_BYTES) -> Iterator[bytes]:
    """Yield fixed-size frames; the last one may be shorter."""

    for offset in range(0, len(ulaw), frame_bytes):
        yield ulaw[offset : offset + frame_bytes]
