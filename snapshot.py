"""
Data handed across the capture and render boundaries.
"""

from dataclasses import dataclass

import numpy as np

from band_processor import BandProcessor
from config import SUPPORTED_BITS_PER_SAMPLE


@dataclass(frozen=True)
class AudioFormat:
    """Declared layout of a raw PCM capture buffer (little-endian, interleaved)."""
    sample_rate: int = 44100
    bits_per_sample: int = 16
    channels: int = 2

    @property
    def bytes_per_sample(self) -> int:
        return self.bits_per_sample // 8

    @property
    def bytes_per_frame(self) -> int:
        return self.bytes_per_sample * self.channels

    @property
    def is_supported(self) -> bool:
        """16-bit integer or 32-bit float PCM with at least one channel."""
        return (self.bits_per_sample in SUPPORTED_BITS_PER_SAMPLE
                and self.channels >= 1
                and self.sample_rate > 0)

    @property
    def sample_dtype(self) -> np.dtype:
        return np.dtype('<i2') if self.bits_per_sample == 16 else np.dtype('<f4')


def frozen_array(values, dtype=np.float64) -> np.ndarray:
    """Copy values into a new array that cannot be written through."""
    arr = np.array(values, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class AnalysisSnapshot:
    """
    One fully computed analysis result.

    Published whole by the engine and never modified afterwards; the array
    fields are private read-only copies, so consumers on another thread can
    hold on to a snapshot for as long as they like.
    """

    # Spectrum
    num_bands: int
    smoothed_magnitudes: np.ndarray   # Shape: (num_bands,), band 0 lowest
    peak_hold: np.ndarray             # Shape: (num_bands,)
    target_max_magnitude: float       # Auto-gain reference

    # Rhythm
    current_bpm: float                # 0.0 until the first estimate
    beat_sensitivity: float
    beat_flash_active: bool
    beat_count: int

    # Loudness [0.0, 1.0]
    volume: float
    left_channel: float
    right_channel: float
    left_peak_hold: float
    right_peak_hold: float

    # Oscilloscope ring: oldest sample sits at waveform_position
    waveform: np.ndarray              # Shape: (waveform_size,)
    waveform_position: int
    waveform_size: int

    full_screen_mode: bool = False
    frame_index: int = 0              # Buffers analysed when this was published

    @classmethod
    def empty(cls, num_bands: int = 8, waveform_size: int = 512,
              beat_sensitivity: float = 1.3, full_screen_mode: bool = False) -> "AnalysisSnapshot":
        zeros = frozen_array(np.zeros(num_bands))
        return cls(
            num_bands=num_bands,
            smoothed_magnitudes=zeros,
            peak_hold=zeros,
            target_max_magnitude=BandProcessor.MIN_MAGNITUDE,
            current_bpm=0.0,
            beat_sensitivity=beat_sensitivity,
            beat_flash_active=False,
            beat_count=0,
            volume=0.0,
            left_channel=0.0,
            right_channel=0.0,
            left_peak_hold=0.0,
            right_peak_hold=0.0,
            waveform=frozen_array(np.zeros(waveform_size), dtype=np.float32),
            waveform_position=0,
            waveform_size=waveform_size,
            full_screen_mode=full_screen_mode,
            frame_index=0,
        )

    def waveform_in_order(self) -> np.ndarray:
        """Waveform rotated so index 0 is the oldest sample."""
        return np.roll(self.waveform, -self.waveform_position)
