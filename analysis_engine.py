"""
pulsescope - Analysis Engine
Decodes raw PCM from the capture callback, runs transform + banding + beat
detection + volume analysis, and publishes an immutable AnalysisSnapshot.
"""

import math
import time
from typing import Callable, Optional

import numpy as np
from scipy.signal import get_window

from band_processor import BandProcessor
from beat_detector import BeatDetector
from config import BAND_COUNT_LIMITS, Config, clamp, sanitize_config
from fft_transform import FftTransform
from logging_utils import log_event
from snapshot import AnalysisSnapshot, AudioFormat, frozen_array
from volume_analyzer import VolumeAnalyzer


INT16_SCALE = np.float32(1.0 / 32768.0)


class AnalysisEngine:
    """
    Called synchronously from the capture callback, once per delivered buffer.

    The producer side (on_audio_data) never blocks and never raises; the
    consumer side (get_snapshot, decay_flash) never assigns the snapshot, so
    each new one is published by a single reference assignment from the
    producer after each run.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        clock: Callable[[], float] = time.monotonic,
        beat_detector: Optional[BeatDetector] = None,
        volume_analyzer: Optional[VolumeAnalyzer] = None,
        band_processor: Optional[BandProcessor] = None,
    ):
        self.config = sanitize_config(config or Config())
        analysis = self.config.analysis
        self._clock = clock

        self.fft_size = analysis.fft_size
        self._fft = FftTransform(self.fft_size)
        self._band_processor = band_processor or BandProcessor(self.fft_size)
        self._beat_detector = beat_detector or BeatDetector(analysis.beat_sensitivity, clock=clock)
        self._volume_analyzer = volume_analyzer or VolumeAnalyzer()

        # Live configuration; each is read once per process call
        self._num_bands = analysis.num_bands
        self._full_screen_mode = bool(analysis.full_screen_mode)
        self._update_interval_s = analysis.update_interval_ms / 1000.0

        # Transform window accumulation
        self._fft_buffer = self._fft.new_buffer()
        self._fft_samples = np.zeros(self.fft_size, dtype=np.float32)
        self._fft_fill = 0
        self._window = get_window("hamming", self.fft_size, fftbins=False).astype(np.float32)

        # Oscilloscope ring and the copy shown to renderers
        self._waveform_size = analysis.waveform_size
        self._waveform = np.zeros(self._waveform_size, dtype=np.float32)
        self._waveform_position = 0
        self._display_waveform = frozen_array(self._waveform, dtype=np.float32)
        self._display_waveform_position = 0
        self._last_display_update = clock()

        # Decode scratch, grown on demand
        self._scratch_frames = 0
        self._left = np.zeros(0, dtype=np.float32)
        self._right = np.zeros(0, dtype=np.float32)
        self._mono = np.zeros(0, dtype=np.float32)
        self._abs = np.zeros(0, dtype=np.float32)

        # Published band arrays are re-frozen only when the bands change
        self._published_bands: Optional[tuple] = None
        self._bands_dirty = True

        # Render-tick flash decay: consumer counts requests, producer applies them
        self._flash_decay_requests = 0
        self._flash_decays_applied = 0

        self._warned_formats: set = set()
        self._reset_session_stats()

        self._snapshot = AnalysisSnapshot.empty(
            num_bands=self._num_bands,
            waveform_size=self._waveform_size,
            beat_sensitivity=self._beat_detector.beat_sensitivity,
            full_screen_mode=self._full_screen_mode,
        )

    # ===== CONFIGURATION =====

    @property
    def num_bands(self) -> int:
        return self._num_bands

    @property
    def beat_sensitivity(self) -> float:
        return self._beat_detector.beat_sensitivity

    @property
    def full_screen_mode(self) -> bool:
        return self._full_screen_mode

    def set_num_bands(self, num_bands) -> None:
        """Set the band count for subsequent transforms, clamped to BAND_COUNT_LIMITS."""
        try:
            requested = int(num_bands)
        except (TypeError, ValueError, OverflowError):
            log_event("WARN", "Config", "Ignoring invalid band count", value=num_bands)
            return
        value = clamp(requested, BAND_COUNT_LIMITS)
        if value != requested:
            log_event("DEBUG", "Config", "Band count clamped", requested=requested, used=value)
        self._num_bands = value

    def set_beat_sensitivity(self, sensitivity) -> None:
        try:
            value = float(sensitivity)
        except (TypeError, ValueError):
            log_event("WARN", "Config", "Ignoring invalid beat sensitivity", value=sensitivity)
            return
        self._beat_detector.beat_sensitivity = value

    def set_full_screen(self, enabled: bool) -> None:
        self._full_screen_mode = bool(enabled)

    # ===== CONSUMER SIDE =====

    def get_snapshot(self) -> AnalysisSnapshot:
        """Most recently published snapshot (immutable)."""
        return self._snapshot

    def decay_flash(self) -> None:
        """Render-tick hook: request one beat flash frame of decay.

        Only the consumer writes the request counter and only the producer
        applies it, on the next buffer and before beat detection, so a
        render tick can never replace or shorten a newer snapshot.
        """
        self._flash_decay_requests += 1

    # ===== PRODUCER SIDE =====

    def on_audio_data(self, buffer, fmt: AudioFormat, bytes_recorded: Optional[int] = None) -> AnalysisSnapshot:
        """Analyse one capture buffer and return the snapshot now published.

        Malformed, empty or unsupported input leaves the previous snapshot in
        place. Nothing raised here reaches the capture callback.
        """
        try:
            self._process(buffer, fmt, bytes_recorded)
        except Exception as e:
            self._session_skipped += 1
            log_event("ERROR", "Engine", "Analysis failed, keeping previous snapshot", error=e)
        return self._snapshot

    # Name used by the capture-side code paths
    process_audio = on_audio_data

    def _process(self, buffer, fmt: AudioFormat, bytes_recorded: Optional[int]) -> None:
        num_bands = self._num_bands
        full_screen = self._full_screen_mode

        if fmt is None or not fmt.is_supported:
            self._skip("unsupported format", fmt)
            return
        if buffer is None:
            self._skip("no buffer", fmt)
            return

        raw = memoryview(buffer).cast("B")
        n_bytes = raw.nbytes
        if bytes_recorded is not None:
            n_bytes = max(0, min(n_bytes, int(bytes_recorded)))
        frames = n_bytes // fmt.bytes_per_frame
        if frames <= 0:
            self._skip("empty buffer", fmt)
            return

        left, right, mono = self._decode(raw, fmt, frames)

        # Per-buffer aggregates
        np.abs(mono, out=self._abs[:frames])
        max_overall = float(self._abs[:frames].max())
        np.abs(left, out=self._abs[:frames])
        max_left = float(self._abs[:frames].max())
        np.abs(right, out=self._abs[:frames])
        max_right = float(self._abs[:frames].max())
        energy = math.sqrt(float(np.dot(mono, mono)) / frames)

        self._write_waveform(mono)

        self._volume_analyzer.process_frame(max_left, max_right, max_overall)

        if self._accumulate(mono):
            self._run_transform(fmt.sample_rate, num_bands)

        self._apply_flash_decay_requests()
        if self._beat_detector.process_frame(energy):
            self._session_beats += 1

        now = self._clock()
        if now - self._last_display_update >= self._update_interval_s:
            self._display_waveform = frozen_array(self._waveform, dtype=np.float32)
            self._display_waveform_position = self._waveform_position
            self._last_display_update = now
            self._beat_detector.decay_flash_frame()

        self._session_processed += 1
        self._update_session_stats(energy, max_overall)
        self._publish(num_bands, full_screen)

    def _apply_flash_decay_requests(self) -> None:
        requested = self._flash_decay_requests
        pending = requested - self._flash_decays_applied
        for _ in range(min(pending, BeatDetector.FLASH_FRAMES)):
            self._beat_detector.decay_flash_frame()
        self._flash_decays_applied = requested

    def _skip(self, reason: str, fmt) -> None:
        self._session_skipped += 1
        if reason == "unsupported format" and fmt not in self._warned_formats:
            self._warned_formats.add(fmt)
            log_event("WARN", "Engine", "Unsupported audio format, buffers will be skipped", format=fmt)
        else:
            log_event("DEBUG", "Engine", "Buffer skipped", reason=reason)

    def _ensure_scratch(self, frames: int) -> None:
        if frames <= self._scratch_frames:
            return
        self._scratch_frames = frames
        self._left = np.zeros(frames, dtype=np.float32)
        self._right = np.zeros(frames, dtype=np.float32)
        self._mono = np.zeros(frames, dtype=np.float32)
        self._abs = np.zeros(frames, dtype=np.float32)

    def _decode(self, raw: memoryview, fmt: AudioFormat, frames: int):
        """Interleaved PCM -> float32 left/right/mono views in [-1, 1]."""
        self._ensure_scratch(frames)
        samples = np.frombuffer(raw, dtype=fmt.sample_dtype, count=frames * fmt.channels)
        samples = samples.reshape(frames, fmt.channels)

        left = self._left[:frames]
        right = self._right[:frames]
        mono = self._mono[:frames]

        if fmt.bits_per_sample == 16:
            np.multiply(samples[:, 0], INT16_SCALE, out=left, casting="unsafe")
        else:
            np.copyto(left, samples[:, 0])
            np.nan_to_num(left, copy=False, nan=0.0, posinf=0.0, neginf=0.0)
            np.clip(left, -1.0, 1.0, out=left)

        if fmt.channels >= 2:
            if fmt.bits_per_sample == 16:
                np.multiply(samples[:, 1], INT16_SCALE, out=right, casting="unsafe")
            else:
                np.copyto(right, samples[:, 1])
                np.nan_to_num(right, copy=False, nan=0.0, posinf=0.0, neginf=0.0)
                np.clip(right, -1.0, 1.0, out=right)
        else:
            np.copyto(right, left)

        np.add(left, right, out=mono)
        mono *= np.float32(0.5)
        return left, right, mono

    def _write_waveform(self, mono: np.ndarray) -> None:
        ring = self._waveform
        size = self._waveform_size
        pos = self._waveform_position
        count = len(mono)

        if count >= size:
            # Only the newest `size` samples survive a full wrap
            start = (pos + count - size) % size
            split = size - start
            tail = mono[count - size:]
            ring[start:] = tail[:split]
            ring[:start] = tail[split:]
        else:
            end = pos + count
            if end <= size:
                ring[pos:end] = mono
            else:
                split = size - pos
                ring[pos:] = mono[:split]
                ring[:end - size] = mono[split:]
        self._waveform_position = (pos + count) % size

    def _accumulate(self, mono: np.ndarray) -> bool:
        """Fill the transform window; True once it holds fft_size samples.

        Samples arriving after the window fills within the same buffer are
        dropped, so consecutive windows do not overlap.
        """
        fill = self._fft_fill
        take = min(self.fft_size - fill, len(mono))
        self._fft_samples[fill:fill + take] = mono[:take]
        self._fft_fill = fill + take
        return self._fft_fill >= self.fft_size

    def _run_transform(self, sample_rate: int, num_bands: int) -> None:
        buf = self._fft_buffer
        np.multiply(self._fft_samples, self._window, out=buf.real)
        buf.imag[:] = 0.0
        self._fft.forward(buf)
        self._band_processor.process(buf, sample_rate, num_bands)
        self._fft_fill = 0
        self._session_fft_frames += 1
        self._bands_dirty = True

    def _published_band_arrays(self, num_bands: int) -> tuple:
        bands = self._band_processor
        if bands.num_bands != num_bands:
            # Requested count not processed yet: show a reset band set
            key = ("reset", num_bands)
            if self._published_bands is None or self._published_bands[0] != key:
                zeros = frozen_array(np.zeros(num_bands))
                self._published_bands = (key, zeros, zeros)
            return self._published_bands

        if self._bands_dirty or self._published_bands is None or self._published_bands[0] != ("bands", num_bands):
            smoothed = bands.smoothed_magnitudes
            if not np.all(np.isfinite(smoothed)):
                smoothed = np.nan_to_num(smoothed, nan=0.0, posinf=0.0, neginf=0.0)
            peak_hold = bands.peak_hold
            if not np.all(np.isfinite(peak_hold)):
                peak_hold = np.nan_to_num(peak_hold, nan=0.0, posinf=0.0, neginf=0.0)
            self._published_bands = (
                ("bands", num_bands),
                frozen_array(smoothed),
                frozen_array(peak_hold),
            )
            self._bands_dirty = False
        return self._published_bands

    def _publish(self, num_bands: int, full_screen: bool) -> None:
        _, smoothed, peak_hold = self._published_band_arrays(num_bands)
        detector = self._beat_detector
        volume = self._volume_analyzer
        target_max = self._band_processor.target_max_magnitude
        if not math.isfinite(target_max):
            target_max = BandProcessor.MIN_MAGNITUDE

        self._snapshot = AnalysisSnapshot(
            num_bands=len(smoothed),
            smoothed_magnitudes=smoothed,
            peak_hold=peak_hold,
            target_max_magnitude=float(target_max),
            current_bpm=float(detector.current_bpm),
            beat_sensitivity=float(detector.beat_sensitivity),
            beat_flash_active=detector.beat_flash_active,
            beat_count=detector.beat_count,
            volume=volume.volume,
            left_channel=volume.left_channel,
            right_channel=volume.right_channel,
            left_peak_hold=volume.left_peak_hold,
            right_peak_hold=volume.right_peak_hold,
            waveform=self._display_waveform,
            waveform_position=self._display_waveform_position,
            waveform_size=self._waveform_size,
            full_screen_mode=full_screen,
            frame_index=self._session_processed,
        )

    # ===== SESSION STATS =====

    def _reset_session_stats(self) -> None:
        self._session_started_at = self._clock()
        self._session_processed = 0
        self._session_skipped = 0
        self._session_fft_frames = 0
        self._session_beats = 0
        self._session_energy_max = 0.0
        self._session_energy_sum = 0.0
        self._session_peak_max = 0.0

    def _update_session_stats(self, energy: float, peak: float) -> None:
        self._session_energy_sum += energy
        if energy > self._session_energy_max:
            self._session_energy_max = energy
        if peak > self._session_peak_max:
            self._session_peak_max = peak

    def session_stats(self) -> dict:
        processed = self._session_processed
        return {
            'processed': processed,
            'skipped': self._session_skipped,
            'fft_frames': self._session_fft_frames,
            'beats': self._session_beats,
            'energy_mean': self._session_energy_sum / processed if processed else 0.0,
            'energy_max': self._session_energy_max,
            'peak_max': self._session_peak_max,
            'bpm': self._beat_detector.current_bpm,
            'seconds': max(0.0, self._clock() - self._session_started_at),
        }

    def log_session_summary(self) -> None:
        stats = self.session_stats()
        if stats['processed'] <= 0:
            return

        log_event(
            "INFO",
            "Engine",
            "Session summary",
            buffers=stats['processed'],
            skipped=stats['skipped'],
            fft_frames=stats['fft_frames'],
            beats=stats['beats'],
            bpm=f"{stats['bpm']:.1f}",
            seconds=f"{stats['seconds']:.1f}",
            energy_mean=f"{stats['energy_mean']:.6f}",
            energy_max=f"{stats['energy_max']:.6f}",
            peak_max=f"{stats['peak_max']:.6f}",
        )
