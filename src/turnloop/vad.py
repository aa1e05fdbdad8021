"""
Energy-based voice activity detection.

Scores each inbound PCM16 frame by normalized RMS energy, smooths the score over
a short rolling window and debounces both edges:
- speech start needs `min_speech_ms` of sustained energy above the threshold
- speech end needs `min_silence_ms` of trailing frames below it

The detector only reports edges. What an edge means for the pipeline (new turn,
barge-in, end of input) is decided by the session.
"""

from __future__ import annotations

from collections import deque
from enum import Enum
from typing import Deque, Optional

import structlog

from src.turnloop.audio import DEFAULT_SAMPLE_RATE, get_audio_duration_ms, rms_energy

logger = structlog.get_logger(__name__)


class VADEvent(str, Enum):
    """Speech edge reported by the detector."""
    SPEECH_STARTED = "speech_started"
    SPEECH_ENDED = "speech_ended"


class EnergyVAD:
    """Debounced RMS-energy speech detector."""

    def __init__(
        self,
        *,
        threshold: float = 0.02,
        min_speech_ms: int = 200,
        min_silence_ms: int = 700,
        window_frames: int = 3,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
    ):
        self.threshold = threshold
        self.min_speech_ms = min_speech_ms
        self.min_silence_ms = min_silence_ms
        self.sample_rate = sample_rate
        self._scores: Deque[float] = deque(maxlen=max(1, window_frames))
        self._speaking = False
        self._above_ms = 0.0
        self._below_ms = 0.0
        self._last_score = 0.0

    @classmethod
    def from_config(cls, config) -> "EnergyVAD":
        return cls(
            threshold=config.vad_threshold,
            min_speech_ms=config.vad_min_speech_ms,
            min_silence_ms=config.vad_min_silence_ms,
            window_frames=config.vad_window_frames,
            sample_rate=config.sample_rate,
        )

    @property
    def speaking(self) -> bool:
        return self._speaking

    @property
    def last_score(self) -> float:
        """Smoothed score of the most recent frame."""
        return self._last_score

    def set_threshold(self, threshold: float) -> None:
        """Change the detection threshold without losing the current state."""
        if not 0.0 < threshold < 1.0:
            raise ValueError(f"VAD threshold must be between 0 and 1, got {threshold}")
        logger.debug("VAD threshold updated", old=self.threshold, new=threshold)
        self.threshold = threshold

    def reset(self) -> None:
        self._scores.clear()
        self._speaking = False
        self._above_ms = 0.0
        self._below_ms = 0.0
        self._last_score = 0.0

    def observe(self, frame: bytes) -> Optional[VADEvent]:
        """
        Score one frame and report a speech edge if one completed.

        Args:
            frame: PCM16 little-endian mono audio

        Returns:
            VADEvent.SPEECH_STARTED / SPEECH_ENDED, or None when nothing changed
        """
        self._scores.append(rms_energy(frame))
        smoothed = sum(self._scores) / len(self._scores)
        self._last_score = smoothed
        duration_ms = get_audio_duration_ms(frame, self.sample_rate)

        if not self._speaking:
            if smoothed >= self.threshold:
                self._above_ms += duration_ms
                if self._above_ms >= self.min_speech_ms:
                    self._speaking = True
                    self._below_ms = 0.0
                    return VADEvent.SPEECH_STARTED
            else:
                self._above_ms = 0.0
            return None

        if smoothed < self.threshold:
            self._below_ms += duration_ms
            if self._below_ms >= self.min_silence_ms:
                self._speaking = False
                self._above_ms = 0.0
                return VADEvent.SPEECH_ENDED
        else:
            self._below_ms = 0.0
        return None
