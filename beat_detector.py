"""
pulsescope - Beat Detector
Energy-threshold beat detection with a hard refractory period and an
inter-beat-interval tempo estimate.
"""

from collections import deque
import math
import time
from typing import Callable

from config import BEAT_SENSITIVITY_LIMITS, clamp
from logging_utils import log_event


class BeatDetector:
    """
    Consumes one energy value per audio buffer.

    A beat is a frame whose energy exceeds the rolling baseline (mean of the
    previous history values) by the sensitivity multiplier, clears an absolute
    floor, and arrives at least MIN_BEAT_INTERVAL_S after the previous beat.
    """

    ENERGY_HISTORY_SIZE = 20
    MIN_BEAT_INTERVAL_S = 0.250      # ~240 BPM ceiling
    ENERGY_FLOOR = 0.01              # No beats in near-silence
    BEAT_WINDOW_S = 8.0              # Beat timestamps kept for tempo estimation
    BPM_HISTORY_SIZE = 8             # Intervals (so up to 9 timestamps) per estimate
    MIN_INTERVAL_MS = 250.0
    MAX_INTERVAL_MS = 2000.0
    BPM_SMOOTHING = 0.8              # bpm = bpm*0.8 + new*0.2
    FLASH_FRAMES = 3

    def __init__(self, sensitivity: float = 1.3, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._energy_history: deque[float] = deque(maxlen=self.ENERGY_HISTORY_SIZE)
        self._beat_times: deque[float] = deque()
        self._beat_threshold = 1.3
        self._last_beat_time = -math.inf
        self._current_bpm = 0.0
        self._beat_flash_frames = 0
        self._beat_count = 0
        self.beat_sensitivity = sensitivity

    @property
    def beat_sensitivity(self) -> float:
        return self._beat_threshold

    @beat_sensitivity.setter
    def beat_sensitivity(self, value: float) -> None:
        value = float(value)
        if not math.isfinite(value):
            log_event("WARN", "Beat", "Ignoring non-finite sensitivity", value=value)
            return
        self._beat_threshold = clamp(value, BEAT_SENSITIVITY_LIMITS)

    @property
    def current_bpm(self) -> float:
        """Smoothed tempo estimate; 0.0 until two plausible beats have been seen."""
        return self._current_bpm

    @property
    def beat_flash_active(self) -> bool:
        return self._beat_flash_frames > 0

    @property
    def beat_count(self) -> int:
        return self._beat_count

    @property
    def beat_times(self) -> tuple:
        return tuple(self._beat_times)

    def process_frame(self, energy: float) -> bool:
        """Feed one frame energy. Returns True when this frame registered a beat."""
        energy = float(energy)
        if not math.isfinite(energy) or energy < 0.0:
            energy = 0.0

        history = self._energy_history
        history.append(energy)
        if len(history) < self.ENERGY_HISTORY_SIZE // 2:
            return False

        # Baseline leaves out the newest value (the one being tested)
        baseline = (sum(history) - energy) / (len(history) - 1)

        now = self._clock()
        if (energy > baseline * self._beat_threshold
                and energy > self.ENERGY_FLOOR
                and now - self._last_beat_time > self.MIN_BEAT_INTERVAL_S):
            self._register_beat(now)
            log_event("DEBUG", "Beat", "Beat detected",
                      energy=energy,
                      baseline=baseline,
                      bpm=self._current_bpm,
                      count=self._beat_count)
            return True
        return False

    def decay_flash_frame(self) -> None:
        if self._beat_flash_frames > 0:
            self._beat_flash_frames -= 1

    def _register_beat(self, now: float) -> None:
        self._beat_times.append(now)
        self._last_beat_time = now
        self._beat_flash_frames = self.FLASH_FRAMES
        self._beat_count += 1
        while self._beat_times and now - self._beat_times[0] > self.BEAT_WINDOW_S:
            self._beat_times.popleft()
        self._calculate_bpm()

    def _calculate_bpm(self) -> None:
        if len(self._beat_times) < 2:
            return

        recent = list(self._beat_times)[-(self.BPM_HISTORY_SIZE + 1):]
        intervals = []
        for prev, cur in zip(recent, recent[1:]):
            interval_ms = (cur - prev) * 1000.0
            if self.MIN_INTERVAL_MS <= interval_ms <= self.MAX_INTERVAL_MS:
                intervals.append(interval_ms)
        if not intervals:
            return

        new_bpm = 60000.0 / (sum(intervals) / len(intervals))
        if self._current_bpm == 0:
            self._current_bpm = new_bpm
        else:
            self._current_bpm = (self._current_bpm * self.BPM_SMOOTHING
                                 + new_bpm * (1.0 - self.BPM_SMOOTHING))
