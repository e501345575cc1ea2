"""
pulsescope - Synthetic audio input
Steady-BPM demo signal (four sines under a slow LFO plus a periodic kick)
delivered as 16-bit stereo PCM chunks, so the pipeline can run without a
capture device. Nothing is played back.
"""

import math
import threading
import time
from typing import Callable, Optional

import numpy as np

from config import SYNTHETIC_BPM_LIMITS, clamp
from logging_utils import log_event
from snapshot import AudioFormat


TWO_PI = 2.0 * math.pi

# (frequency Hz, amplitude) of the sustained tones
TONES = ((80.0, 0.08), (250.0, 0.06), (1000.0, 0.05), (4000.0, 0.04))


class SyntheticAudioInput:
    SAMPLE_RATE = 44100
    BITS_PER_SAMPLE = 16
    CHANNELS = 2
    FRAMES_PER_CHUNK = 1024
    CHUNK_INTERVAL_MS = 23
    KICK_DURATION_MS = 30.0
    KICK_FREQ_HZ = 60.0
    KICK_AMPLITUDE = 0.4
    KICK_DECAY = 25.0               # exp(-t * 25), t in seconds
    LFO_HZ = 0.5

    def __init__(self, callback: Optional[Callable[[bytes, AudioFormat], None]] = None, bpm: int = 120):
        self.callback = callback
        self.bpm = clamp(int(bpm), SYNTHETIC_BPM_LIMITS)
        self.format = AudioFormat(
            sample_rate=self.SAMPLE_RATE,
            bits_per_sample=self.BITS_PER_SAMPLE,
            channels=self.CHANNELS,
        )

        self._elapsed_ms = 0.0
        self._phases = np.zeros(len(TONES), dtype=np.float64)
        self._lfo_phase = 0.0
        self._steps = np.arange(1, self.FRAMES_PER_CHUNK + 1, dtype=np.float64)
        self._offsets = np.arange(self.FRAMES_PER_CHUNK, dtype=np.float64) / self.SAMPLE_RATE

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.running = False

    @property
    def chunk_duration_ms(self) -> float:
        return self.FRAMES_PER_CHUNK * 1000.0 / self.SAMPLE_RATE

    def generate_chunk(self) -> bytes:
        """Render the next chunk and advance the signal clock by its duration."""
        sr = float(self.SAMPLE_RATE)
        beat_interval_ms = 60000.0 / self.bpm
        chunk_ms = self.chunk_duration_ms

        self._lfo_phase += TWO_PI * self.LFO_HZ * chunk_ms / 1000.0
        lfo = 0.6 + 0.4 * math.sin(self._lfo_phase)

        signal = np.zeros(self.FRAMES_PER_CHUNK, dtype=np.float64)
        for idx, (freq, amp) in enumerate(TONES):
            step = TWO_PI * freq / sr
            signal += amp * np.sin(self._phases[idx] + step * self._steps)
            self._phases[idx] = (self._phases[idx] + step * self.FRAMES_PER_CHUNK) % TWO_PI
        signal *= lfo

        t = self._elapsed_ms / 1000.0 + self._offsets
        pos_ms = np.mod(t * 1000.0, beat_interval_ms)
        in_kick = pos_ms < self.KICK_DURATION_MS
        if np.any(in_kick):
            kick_t = pos_ms[in_kick] / 1000.0
            signal[in_kick] += (self.KICK_AMPLITUDE * np.exp(-kick_t * self.KICK_DECAY)
                                * np.sin(TWO_PI * self.KICK_FREQ_HZ * t[in_kick]))

        np.clip(signal, -1.0, 1.0, out=signal)
        s16 = (signal * 32767.0).astype('<i2')
        self._elapsed_ms += chunk_ms
        # Identical left/right
        return np.repeat(s16, self.CHANNELS).tobytes()

    def start(self) -> None:
        """Start delivering chunks to the callback on a background thread"""
        with self._lock:
            if self.running:
                return
            self.running = True
            self._elapsed_ms = 0.0
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run, name="synthetic-input", daemon=True)
            self._thread.start()
        log_event("INFO", "Synthetic", "Started", bpm=self.bpm,
                  chunk_ms=f"{self.chunk_duration_ms:.1f}")

    def stop(self) -> None:
        with self._lock:
            if not self.running:
                return
            self.running = False
            self._stop_event.set()
            thread = self._thread
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        log_event("INFO", "Synthetic", "Stopped")

    def _run(self) -> None:
        interval = self.CHUNK_INTERVAL_MS / 1000.0
        next_tick = time.monotonic() + interval
        while not self._stop_event.wait(max(0.0, next_tick - time.monotonic())):
            next_tick += interval
            chunk = self.generate_chunk()
            if self.callback is None:
                continue
            try:
                self.callback(chunk, self.format)
            except Exception as e:
                log_event("ERROR", "Synthetic", "Callback failed", error=e)
