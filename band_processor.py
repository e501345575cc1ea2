"""
pulsescope - Band Processor
Turns transform output into logarithmic magnitude bands with one-pole
smoothing, per-band peak hold and a slowly adapting auto-gain reference.
"""

import numpy as np

from frequency_utils import log_band_edges
from logging_utils import log_event


class BandProcessor:
    SMOOTHING_FACTOR = 0.7      # smoothed = smoothed*0.7 + raw*0.3
    PEAK_HOLD_FRAMES = 20       # Frames a peak is held before it starts falling
    PEAK_FALL_RATE = 0.08       # Geometric fall per frame once released
    TARGET_BLEND = 0.05         # target_max = target_max*0.95 + max_ever*0.05
    MIN_MAGNITUDE = 0.001       # Auto-gain floor, keeps renderers away from /0

    def __init__(self, fft_size: int = 8192):
        self.fft_size = int(fft_size)
        self._half = self.fft_size // 2

        self._num_bands = 0
        self._band_magnitudes = np.zeros(0, dtype=np.float64)
        self._smoothed_magnitudes = np.zeros(0, dtype=np.float64)
        self._peak_hold = np.zeros(0, dtype=np.float64)
        self._peak_hold_age = np.zeros(0, dtype=np.int64)
        self._max_magnitude_ever = self.MIN_MAGNITUDE
        self._target_max_magnitude = self.MIN_MAGNITUDE

        # Scratch reused every call
        self._magnitudes = np.zeros(self._half, dtype=np.float32)
        self._prefix = np.zeros(self._half + 1, dtype=np.float64)
        self._edges_key = None
        self._starts = np.zeros(0, dtype=np.intp)
        self._ends = np.zeros(0, dtype=np.intp)
        self._counts = np.zeros(0, dtype=np.float64)

    @property
    def num_bands(self) -> int:
        return self._num_bands

    @property
    def band_magnitudes(self) -> np.ndarray:
        return self._band_magnitudes

    @property
    def smoothed_magnitudes(self) -> np.ndarray:
        return self._smoothed_magnitudes

    @property
    def peak_hold(self) -> np.ndarray:
        return self._peak_hold

    @property
    def peak_hold_age(self) -> np.ndarray:
        return self._peak_hold_age

    @property
    def max_magnitude_ever(self) -> float:
        return self._max_magnitude_ever

    @property
    def target_max_magnitude(self) -> float:
        return self._target_max_magnitude

    def process(self, fft_buffer: np.ndarray, sample_rate: int, num_bands: int) -> None:
        """Fold one transform frame into the band state."""
        if len(fft_buffer) < self.fft_size:
            raise ValueError(
                f"transform buffer holds {len(fft_buffer)} bins, expected {self.fft_size}"
            )
        num_bands = max(1, int(num_bands))
        self._ensure_capacity(num_bands)
        self._ensure_edges(num_bands, int(sample_rate))

        # Non-redundant half-spectrum magnitudes
        mags = self._magnitudes
        np.abs(fft_buffer[: self._half], out=mags)
        np.nan_to_num(mags, copy=False, nan=0.0, posinf=0.0, neginf=0.0)

        # Per-band means via prefix sums; empty bands stay at 0
        prefix = self._prefix
        np.cumsum(mags, dtype=np.float64, out=prefix[1:])
        raw = self._band_magnitudes
        np.subtract(prefix[self._ends], prefix[self._starts], out=raw)
        np.divide(raw, self._counts, out=raw, where=self._counts > 0)
        raw[self._counts == 0] = 0.0

        smoothed = self._smoothed_magnitudes
        smoothed *= self.SMOOTHING_FACTOR
        smoothed += raw * (1.0 - self.SMOOTHING_FACTOR)

        self._update_peak_hold()

        frame_max = float(smoothed.max()) if smoothed.size else 0.0
        if frame_max > self._max_magnitude_ever:
            self._max_magnitude_ever = frame_max
        self._target_max_magnitude = (
            self._target_max_magnitude * (1.0 - self.TARGET_BLEND)
            + self._max_magnitude_ever * self.TARGET_BLEND
        )

    def _update_peak_hold(self) -> None:
        smoothed = self._smoothed_magnitudes
        hold = self._peak_hold
        age = self._peak_hold_age

        rising = smoothed > hold
        hold[rising] = smoothed[rising]
        age[rising] = 0

        held = ~rising
        age[held] += 1
        falling = held & (age > self.PEAK_HOLD_FRAMES)
        hold[falling] = np.maximum(0.0, hold[falling] - hold[falling] * self.PEAK_FALL_RATE)

    def _ensure_capacity(self, num_bands: int) -> None:
        if num_bands == self._num_bands:
            return
        if self._num_bands:
            log_event("DEBUG", "Bands", "Band count changed, state reset",
                      old=self._num_bands, new=num_bands)
        self._num_bands = num_bands
        self._band_magnitudes = np.zeros(num_bands, dtype=np.float64)
        self._smoothed_magnitudes = np.zeros(num_bands, dtype=np.float64)
        self._peak_hold = np.zeros(num_bands, dtype=np.float64)
        self._peak_hold_age = np.zeros(num_bands, dtype=np.int64)

    def _ensure_edges(self, num_bands: int, sample_rate: int) -> None:
        key = (num_bands, sample_rate)
        if key == self._edges_key:
            return
        edges = log_band_edges(num_bands, self.fft_size, sample_rate)
        self._starts = edges[:, 0].copy()
        self._ends = edges[:, 1].copy()
        self._counts = (self._ends - self._starts).astype(np.float64)
        self._edges_key = key
