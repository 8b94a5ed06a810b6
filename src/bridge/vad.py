"""
Energy-based voice activity detection on raw mu-law frames.

One threshold compare per 20ms frame, no smoothing beyond the
hangover window used by `is_speaking()`. An optional calibration window at the start
of the call raises the threshold above the observed line noise and then freezes it.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

import structlog

from src.bridge.audio import ulaw_energy

logger = structlog.get_logger(__name__)


class EnergyVAD:
    """
    Classifies inbound frames as speech or silence.

    Args:
        threshold: Mean mu-law magnitude (0-127) at or above which a frame is speech.
        hangover_ms: How long after the last speech frame the caller still counts
            as "speaking".
        calibration_ms: Length of the ambient-noise calibration window (0 disables).
        calibration_offset: Added to the mean ambient energy to get the calibrated
            threshold.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        *,
        threshold: float,
        hangover_ms: int = 300,
        calibration_ms: int = 0,
        calibration_offset: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._base_threshold = float(threshold)
        self._threshold = float(threshold)
        self._hangover_ms = max(0, int(hangover_ms))
        self._calibration_ms = max(0, int(calibration_ms))
        self._calibration_offset = float(calibration_offset)
        self._clock = clock

        self._first_frame_at: Optional[float] = None
        self._calibrating = self._calibration_ms > 0
        self._ambient_sum = 0.0
        self._ambient_frames = 0

        self.last_speech_at: Optional[float] = None
        self.last_energy: float = 0.0

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def is_calibrating(self) -> bool:
        return self._calibrating

    def classify(self, frame: bytes) -> bool:
        """Return True if `frame` looks like speech."""
        now = self._clock()
        if self._first_frame_at is None:
            self._first_frame_at = now

        energy = ulaw_energy(frame)
        self.last_energy = energy

        if self._calibrating:
            if (now - self._first_frame_at) * 1000 < self._calibration_ms:
                # Calibration frames are ambient by definition.
                self._ambient_sum += energy
                self._ambient_frames += 1
                return False
            self._finish_calibration()

        speech = energy >= self._threshold
        if speech:
            self.last_speech_at = now
        return speech

    def ms_since_speech(self, now: Optional[float] = None) -> Optional[float]:
        """Milliseconds since the last speech frame, or None if there was none."""
        if self.last_speech_at is None:
            return None
        now = self._clock() if now is None else now
        return (now - self.last_speech_at) * 1000

    def is_speaking(self, now: Optional[float] = None) -> bool:
        since = self.ms_since_speech(now)
        return since is not None and since <= self._hangover_ms

    def reset(self) -> None:
        """Forget speech history; calibration result is kept."""
        self.last_speech_at = None
        self.last_energy = 0.0

    def _finish_calibration(self) -> None:
        self._calibrating = False
        if self._ambient_frames:
            ambient = self._ambient_sum / self._ambient_frames
            self._threshold = max(self._base_threshold, ambient + self._calibration_offset)
        else:
            ambient = 0.0
        logger.info(
            "VAD calibrated",
            ambient_energy=round(ambient, 2),
            threshold=round(self._threshold, 2),
            frames=self._ambient_frames,
        )
