"""Tempo estimation from sampled REAPER beat positions."""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_BPM = 120.0
MAX_BPM = 999.0


@dataclass
class BeatSample:
    """A (seconds, beats) pair read from BEATPOS."""
    position_seconds: float
    beat_position: float


def _is_valid_bpm(bpm: float) -> bool:
    return math.isfinite(bpm) and 0 < bpm <= MAX_BPM


class BpmCalculator:
    """
    Estimates BPM from the last two beat-position samples.

    A tempo taken from a `!bpm:` marker can be pinned with reset(); it is
    used until two samples give a valid measurement.
    """

    def __init__(self, default_bpm: float = DEFAULT_BPM):
        self.default_bpm = default_bpm
        self.initial_bpm: Optional[float] = None
        self._samples: List[BeatSample] = []

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    def reset(self, initial_bpm: Optional[float] = None) -> None:
        """Drop collected samples, optionally pinning a marker tempo."""
        if initial_bpm is not None and initial_bpm > 0:
            logger.debug(f"Resetting beat positions with initial BPM: {initial_bpm}")
            self.initial_bpm = float(initial_bpm)
        else:
            logger.debug("Resetting beat positions")
            self.initial_bpm = None
        self._samples = []

    def add_beat_position(self, position_seconds: float, beat_position: float) -> None:
        self._samples.append(BeatSample(position_seconds, beat_position))
        if len(self._samples) > 2:
            self._samples = self._samples[-2:]

    def _fallback(self, default_bpm: float) -> float:
        if self.initial_bpm is not None and self.initial_bpm > 0:
            return self.initial_bpm
        return default_bpm

    def calculate_bpm(self, default_bpm: Optional[float] = None) -> float:
        """Current tempo estimate. Never raises."""
        if default_bpm is None:
            default_bpm = self.default_bpm

        if len(self._samples) >= 2:
            oldest, newest = self._samples[0], self._samples[-1]
            beat_diff = newest.beat_position - oldest.beat_position
            seconds_diff = newest.position_seconds - oldest.position_seconds
            if seconds_diff == 0:
                return self._fallback(default_bpm)

            bpm = round(beat_diff / seconds_diff * 60, 2)
            if not _is_valid_bpm(bpm):
                logger.debug(f"Calculated BPM is invalid ({bpm}), falling back")
                return self._fallback(default_bpm)
            return bpm

        if len(self._samples) == 1:
            if self.initial_bpm is not None and self.initial_bpm > 0:
                return self.initial_bpm

            sample = self._samples[0]
            if sample.position_seconds == 0:
                return default_bpm
            bpm = round(sample.beat_position / sample.position_seconds * 60, 2)
            if not _is_valid_bpm(bpm):
                return default_bpm
            return bpm

        return self._fallback(default_bpm)


def bars_to_seconds(bars: float, bpm: float, ts_numerator: int = 4,
                    default_bpm: float = 90.0) -> float:
    """Length of a number of bars in seconds."""
    if not _is_valid_bpm(bpm) or ts_numerator <= 0:
        logger.warning(f"Invalid tempo ({bpm} bpm, {ts_numerator} beats/bar), "
                       f"using {default_bpm} bpm in 4/4")
        return 4 * (60.0 / default_bpm) * bars
    return bars * ts_numerator * 60.0 / bpm
