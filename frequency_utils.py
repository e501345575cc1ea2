import math

import numpy as np


MIN_BAND_FREQ_HZ = 20.0
MAX_BAND_FREQ_HZ = 20000.0


def hz_to_bin(freq_hz: float, fft_size: int, sample_rate: int) -> int:
    """Transform bin index for a frequency (truncated toward zero)."""
    if sample_rate <= 0:
        return 0
    return int(freq_hz * fft_size / float(sample_rate))


def bin_to_hz(bin_index: int, fft_size: int, sample_rate: int) -> float:
    if fft_size <= 0:
        return 0.0
    return bin_index * float(sample_rate) / fft_size


def log_band_frequencies(
    num_bands: int,
    freq_low: float = MIN_BAND_FREQ_HZ,
    freq_high: float = MAX_BAND_FREQ_HZ,
) -> list[tuple[int, int]]:
    """Split [freq_low, freq_high] into equal-width log10 segments.

    Endpoints are truncated to whole Hz. Band 0 is the lowest.
    """
    if num_bands <= 0:
        return []
    log_min = math.log10(freq_low)
    log_max = math.log10(freq_high)
    step = (log_max - log_min) / num_bands
    bands = []
    for band in range(num_bands):
        # 1e-9 keeps exact endpoints (20, 20000) from truncating to 19, 19999
        start_hz = int(10 ** (log_min + band * step) + 1e-9)
        end_hz = int(10 ** (log_min + (band + 1) * step) + 1e-9)
        bands.append((start_hz, end_hz))
    return bands


def log_band_edges(num_bands: int, fft_size: int, sample_rate: int) -> np.ndarray:
    """Bin ranges [start, end) for each logarithmic band, shape (num_bands, 2).

    Ranges are clipped to the non-redundant half-spectrum, so a band that
    lies above Nyquist comes back empty (start == end).
    """
    half = fft_size // 2
    edges = np.zeros((max(0, num_bands), 2), dtype=np.intp)
    for band, (start_hz, end_hz) in enumerate(log_band_frequencies(num_bands)):
        start = min(hz_to_bin(start_hz, fft_size, sample_rate), half)
        end = min(hz_to_bin(end_hz, fft_size, sample_rate), half)
        edges[band, 0] = start
        edges[band, 1] = max(start, end)
    return edges


def band_index_for_frequency(freq_hz: float, num_bands: int) -> int:
    """Index of the logarithmic band whose Hz range contains freq_hz, or -1."""
    for band, (start_hz, end_hz) in enumerate(log_band_frequencies(num_bands)):
        if start_hz <= freq_hz < end_hz:
            return band
    return -1
