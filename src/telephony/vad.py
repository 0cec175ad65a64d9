"""Energy-based utterance segmentation for 8 kHz caller audio.

Frames are classified as voiced when their RMS clears an adaptive threshold
derived from the line's noise floor. An utterance closes after ``silence_ms``
of trailing silence; anything with less than ``min_speech_ms`` of voiced audio
is discarded as a click or breath.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass

import numpy as np


@dataclass(slots=True)
class SegmenterConfig:
    frame_ms: int = 20
    silence_ms: int = 1200
    min_speech_ms: int = 300
    preroll_ms: int = 160
    min_rms: float = 250.0
    threshold_mult: float = 3.0
    noise_alpha: float = 0.05

    def frames(self, ms: int) -> int:
        return max(1, ms // self.frame_ms)


class UtteranceSegmenter:
    """Accumulates PCM16 frames and returns completed utterances."""

    def __init__(self, cfg: SegmenterConfig | None = None) -> None:
        self.cfg = cfg or SegmenterConfig()
        self._noise_rms = 0.0
        self._preroll: deque[np.ndarray] = deque(maxlen=self.cfg.frames(self.cfg.preroll_ms))
        self._utterance: list[np.ndarray] = []
        self._voiced_frames = 0
        self._silence_run = 0

    @property
    def in_speech(self) -> bool:
        return bool(self._utterance)

    @staticmethod
    def _rms(frame: np.ndarray) -> float:
        if frame.size == 0:
            return 0.0
        x = frame.astype(np.float32)
        return float(np.sqrt(np.mean(x * x)))

    def _is_voiced(self, frame: np.ndarray) -> bool:
        rms = self._rms(frame)
        threshold = max(self.cfg.min_rms, self._noise_rms * self.cfg.threshold_mult)
        voiced = rms >= threshold
        if not voiced and not self.in_speech:
            self._noise_rms = (1 - self.cfg.noise_alpha) * self._noise_rms + self.cfg.noise_alpha * rms
        return voiced

    def push(self, frame: np.ndarray) -> np.ndarray | None:
        """Feed one frame; returns the utterance PCM when one has just ended."""

        voiced = self._is_voiced(frame)

        if not self.in_speech:
            if not voiced:
                self._preroll.append(frame)
                return None
            self._utterance = [*self._preroll, frame]
            self._preroll.clear()
            self._voiced_frames = 1
            self._silence_run = 0
            return None

        self._utterance.append(frame)
        if voiced:
            self._voiced_frames += 1
            self._silence_run = 0
            return None

        self._silence_run += 1
        if self._silence_run < self.cfg.frames(self.cfg.silence_ms):
            return None

        return self._finish()

    def flush(self) -> np.ndarray | None:
        """Close any open utterance, e.g. when the stream stops."""

        if not self.in_speech:
            return None
        return self._finish()

    def reset(self) -> None:
        self._utterance = []
        self._preroll.clear()
        self._voiced_frames = 0
        self._silence_run = 0

    def _finish(self) -> np.ndarray | None:
        frames, voiced = self._utterance, self._voiced_frames
        self.reset()
        if voiced < self.cfg.frames(self.cfg.min_speech_ms):
            return None
        return np.concatenate(frames)
