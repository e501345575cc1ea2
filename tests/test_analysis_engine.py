from dataclasses import FrozenInstanceError
import math
import threading
import unittest
from unittest import mock

import numpy as np

from analysis_engine import AnalysisEngine
from config import Config
from snapshot import AudioFormat
from synthetic_input import SyntheticAudioInput


STEREO_16 = AudioFormat(sample_rate=44100, bits_per_sample=16, channels=2)
MONO_16 = AudioFormat(sample_rate=44100, bits_per_sample=16, channels=1)
STEREO_FLOAT = AudioFormat(sample_rate=44100, bits_per_sample=32, channels=2)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def stereo_bytes(left, right) -> bytes:
    return np.column_stack((left, right)).astype('<i2').tobytes()


def constant_buffer(level: float, frames: int = 1024) -> bytes:
    value = int(round(level * 32768))
    samples = np.full(frames, value)
    return stereo_bytes(samples, samples)


def make_engine(clock=None, **analysis) -> AnalysisEngine:
    config = Config()
    for key, value in analysis.items():
        setattr(config.analysis, key, value)
    return AnalysisEngine(config, clock=clock or FakeClock())


class TestSnapshotContract(unittest.TestCase):
    def test_initial_snapshot_is_zeroed(self):
        engine = make_engine()
        snap = engine.get_snapshot()

        self.assertEqual(snap.num_bands, 8)
        self.assertEqual(len(snap.smoothed_magnitudes), 8)
        self.assertTrue((snap.smoothed_magnitudes == 0).all())
        self.assertTrue((snap.peak_hold == 0).all())
        self.assertEqual(snap.target_max_magnitude, 0.001)
        self.assertEqual(snap.current_bpm, 0.0)
        self.assertEqual(snap.beat_count, 0)
        self.assertFalse(snap.beat_flash_active)
        self.assertEqual(snap.volume, 0.0)
        self.assertEqual(snap.waveform_size, 512)
        self.assertEqual(len(snap.waveform), 512)
        self.assertAlmostEqual(snap.beat_sensitivity, 1.3)
        self.assertEqual(snap.frame_index, 0)

    def test_snapshot_is_immutable(self):
        engine = make_engine()
        snap = engine.on_audio_data(constant_buffer(0.25), STEREO_16)

        with self.assertRaises(FrozenInstanceError):
            snap.volume = 1.0
        with self.assertRaises(ValueError):
            snap.smoothed_magnitudes[0] = 1.0
        with self.assertRaises(ValueError):
            snap.waveform[0] = 1.0

    def test_published_snapshot_is_not_mutated_by_later_buffers(self):
        engine = make_engine(update_interval_ms=0)
        first = engine.on_audio_data(constant_buffer(0.25, frames=16), STEREO_16)
        waveform = first.waveform.copy()
        volume = first.volume

        engine.on_audio_data(constant_buffer(0.75, frames=16), STEREO_16)

        self.assertEqual(first.volume, volume)
        np.testing.assert_array_equal(first.waveform, waveform)
        self.assertIsNot(engine.get_snapshot(), first)


class TestInputHandling(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()
        self.initial = self.engine.get_snapshot()

    def test_empty_buffer_keeps_snapshot(self):
        self.assertIs(self.engine.on_audio_data(b"", STEREO_16), self.initial)

    def test_partial_frame_keeps_snapshot(self):
        self.assertIs(self.engine.on_audio_data(b"\x01\x02\x03", STEREO_16), self.initial)

    def test_none_buffer_keeps_snapshot(self):
        self.assertIs(self.engine.on_audio_data(None, STEREO_16), self.initial)

    def test_unsupported_format_keeps_snapshot_and_warns_once(self):
        fmt = AudioFormat(sample_rate=44100, bits_per_sample=24, channels=2)
        with mock.patch("analysis_engine.log_event") as mock_log:
            self.assertIs(self.engine.on_audio_data(b"\x00" * 60, fmt), self.initial)
            self.assertIs(self.engine.on_audio_data(b"\x00" * 60, fmt), self.initial)
        warnings = [c for c in mock_log.call_args_list if c.args[0] == "WARN"]
        self.assertEqual(len(warnings), 1)
        self.assertEqual(self.engine.session_stats()['skipped'], 2)

    def test_int16_stereo_decode(self):
        left = np.full(4, 16384)       # 0.5
        right = np.full(4, -32768)     # -1.0
        snap = self.engine.on_audio_data(stereo_bytes(left, right), STEREO_16)

        self.assertAlmostEqual(snap.volume, 0.25)
        self.assertAlmostEqual(snap.left_channel, 0.15)
        self.assertAlmostEqual(snap.right_channel, 0.3)
        self.assertAlmostEqual(snap.left_peak_hold, 0.5)
        self.assertAlmostEqual(snap.right_peak_hold, 1.0)
        self.assertEqual(snap.frame_index, 1)

    def test_mono_input_feeds_both_channels(self):
        data = np.full(8, 16384).astype('<i2').tobytes()
        snap = self.engine.on_audio_data(data, MONO_16)

        self.assertAlmostEqual(snap.volume, 0.5)
        self.assertAlmostEqual(snap.left_channel, snap.right_channel)
        self.assertAlmostEqual(snap.left_peak_hold, 0.5)
        self.assertAlmostEqual(snap.right_peak_hold, 0.5)

    def test_float_input_with_non_finite_samples(self):
        samples = np.array([[np.nan, np.inf], [-np.inf, 0.5], [2.0, -3.0]], dtype='<f4')
        snap = self.engine.on_audio_data(samples.tobytes(), STEREO_FLOAT)

        for value in (snap.volume, snap.left_channel, snap.right_channel,
                      snap.left_peak_hold, snap.right_peak_hold):
            self.assertTrue(math.isfinite(value))
            self.assertLessEqual(value, 1.0)
        self.assertAlmostEqual(snap.volume, 0.25)
        self.assertAlmostEqual(snap.left_peak_hold, 1.0)
        self.assertAlmostEqual(snap.right_peak_hold, 1.0)

    def test_bytes_recorded_limits_frames(self):
        engine = make_engine(update_interval_ms=0, waveform_size=16)
        snap = engine.on_audio_data(constant_buffer(0.5, frames=8), STEREO_16, bytes_recorded=4 * 4)
        self.assertEqual(snap.waveform_position, 4)

    def test_component_failure_is_contained(self):
        with mock.patch.object(self.engine._volume_analyzer, "process_frame",
                               side_effect=RuntimeError("boom")), \
                mock.patch("analysis_engine.log_event") as mock_log:
            snap = self.engine.on_audio_data(constant_buffer(0.25), STEREO_16)

        self.assertIs(snap, self.initial)
        self.assertTrue(any(c.args[0] == "ERROR" for c in mock_log.call_args_list))
        self.assertEqual(self.engine.session_stats()['skipped'], 1)


class TestSpectrum(unittest.TestCase):
    def _feed_tone(self, engine, freq_hz, buffers=8):
        n = np.arange(buffers * 1024)
        samples = np.round(0.5 * np.sin(2 * np.pi * freq_hz * n / 44100) * 32767)
        data = stereo_bytes(samples, samples)
        chunk = 1024 * STEREO_16.bytes_per_frame
        snap = None
        for i in range(buffers):
            snap = engine.on_audio_data(data[i * chunk:(i + 1) * chunk], STEREO_16)
        return snap

    def test_tone_lands_in_band(self):
        engine = make_engine()
        snap = self._feed_tone(engine, 1000.0)

        self.assertEqual(engine.session_stats()['fft_frames'], 1)
        self.assertEqual(int(np.argmax(snap.smoothed_magnitudes)), 4)
        self.assertGreater(snap.target_max_magnitude, 0.001)

    def test_no_transform_before_window_fills(self):
        engine = make_engine()
        snap = self._feed_tone(engine, 1000.0, buffers=7)
        self.assertEqual(engine.session_stats()['fft_frames'], 0)
        self.assertTrue((snap.smoothed_magnitudes == 0).all())

    def test_band_count_change_publishes_zeros_until_next_transform(self):
        engine = make_engine()
        self._feed_tone(engine, 1000.0)

        engine.set_num_bands(16)
        snap = engine.on_audio_data(constant_buffer(0.1), STEREO_16)
        self.assertEqual(snap.num_bands, 16)
        self.assertEqual(len(snap.smoothed_magnitudes), 16)
        self.assertTrue((snap.smoothed_magnitudes == 0).all())
        self.assertTrue((snap.peak_hold == 0).all())

    def test_set_num_bands_clamps_and_ignores_invalid(self):
        engine = make_engine()
        engine.set_num_bands(100)
        self.assertEqual(engine.num_bands, 60)
        engine.set_num_bands(2)
        self.assertEqual(engine.num_bands, 8)
        engine.set_num_bands("lots")
        self.assertEqual(engine.num_bands, 8)
        engine.set_num_bands(None)
        self.assertEqual(engine.num_bands, 8)

    def test_set_beat_sensitivity(self):
        engine = make_engine()
        engine.set_beat_sensitivity(5.0)
        self.assertEqual(engine.beat_sensitivity, 3.0)
        engine.set_beat_sensitivity("strict")
        self.assertEqual(engine.beat_sensitivity, 3.0)
        engine.set_beat_sensitivity(0.7)
        snap = engine.on_audio_data(constant_buffer(0.1), STEREO_16)
        self.assertAlmostEqual(snap.beat_sensitivity, 0.7)

    def test_full_screen_flag_passes_through(self):
        engine = make_engine()
        engine.set_full_screen(True)
        snap = engine.on_audio_data(constant_buffer(0.1), STEREO_16)
        self.assertTrue(snap.full_screen_mode)


class TestWaveform(unittest.TestCase):
    def _mono(self, values) -> bytes:
        return (np.asarray(values) * 1024).astype('<i2').tobytes()

    def test_ring_wraps_and_orders(self):
        engine = make_engine(update_interval_ms=0, waveform_size=8)

        snap = engine.on_audio_data(self._mono(range(1, 6)), MONO_16)
        self.assertEqual(snap.waveform_position, 5)

        snap = engine.on_audio_data(self._mono(range(6, 11)), MONO_16)
        self.assertEqual(snap.waveform_position, 2)
        np.testing.assert_allclose(snap.waveform_in_order() * 32, np.arange(3, 11))

        # Longer than the ring: only the newest samples survive
        snap = engine.on_audio_data(self._mono(range(11, 31)), MONO_16)
        self.assertEqual(snap.waveform_position, 6)
        np.testing.assert_allclose(snap.waveform_in_order() * 32, np.arange(23, 31))

    def test_display_waveform_refresh_cadence(self):
        clock = FakeClock()
        engine = make_engine(clock=clock, waveform_size=8)

        snap = engine.on_audio_data(self._mono([4] * 4), MONO_16)
        self.assertTrue((snap.waveform == 0).all())
        self.assertEqual(snap.waveform_position, 0)

        clock.now = 0.06
        snap = engine.on_audio_data(self._mono([4] * 4), MONO_16)
        self.assertEqual(snap.waveform_position, 0)
        np.testing.assert_allclose(snap.waveform, 4 / 32)


class TestBeats(unittest.TestCase):
    def _drive_to_beat(self, engine, clock):
        for i in range(20):
            clock.now = i * 0.05
            engine.on_audio_data(constant_buffer(0.05), STEREO_16)
        clock.now = 20 * 0.05
        return engine.on_audio_data(constant_buffer(0.5), STEREO_16)

    def test_beat_reaches_snapshot(self):
        clock = FakeClock()
        engine = make_engine(clock=clock, update_interval_ms=10_000)
        snap = self._drive_to_beat(engine, clock)

        self.assertEqual(snap.beat_count, 1)
        self.assertTrue(snap.beat_flash_active)
        self.assertEqual(engine.session_stats()['beats'], 1)

    def test_decay_flash_applies_on_next_buffer(self):
        clock = FakeClock()
        engine = make_engine(clock=clock, update_interval_ms=10_000)
        published = self._drive_to_beat(engine, clock)

        engine.decay_flash()
        engine.decay_flash()
        self.assertIs(engine.get_snapshot(), published)
        clock.now = 1.05
        snap = engine.on_audio_data(constant_buffer(0.05), STEREO_16)
        self.assertTrue(snap.beat_flash_active)

        engine.decay_flash()
        self.assertIs(engine.get_snapshot(), snap)
        clock.now = 1.10
        snap = engine.on_audio_data(constant_buffer(0.05), STEREO_16)
        self.assertFalse(snap.beat_flash_active)
        self.assertEqual(snap.beat_count, 1)

    def test_render_ticks_never_replace_a_newer_beat(self):
        clock = FakeClock()
        engine = make_engine(clock=clock, update_interval_ms=10_000)
        self._drive_to_beat(engine, clock)
        engine.decay_flash()
        engine.decay_flash()

        # Second beat published between two render ticks
        engine.decay_flash()
        clock.now = 1.30
        second = engine.on_audio_data(constant_buffer(0.5), STEREO_16)
        engine.decay_flash()

        snap = engine.get_snapshot()
        self.assertIs(snap, second)
        self.assertEqual(snap.beat_count, 2)
        self.assertTrue(snap.beat_flash_active)

        # Ticks requested before the beat were spent before it registered
        clock.now = 1.35
        snap = engine.on_audio_data(constant_buffer(0.05), STEREO_16)
        self.assertTrue(snap.beat_flash_active)

    def test_concurrent_render_ticks_keep_snapshots_monotonic(self):
        clock = FakeClock()
        engine = make_engine(clock=clock)
        done = threading.Event()

        def produce():
            for i in range(400):
                clock.now = i * 0.05
                level = 0.5 if i >= 20 and i % 10 == 0 else 0.05
                engine.on_audio_data(constant_buffer(level, frames=64), STEREO_16)
            done.set()

        producer = threading.Thread(target=produce)
        producer.start()
        seen = []
        while not done.is_set():
            engine.decay_flash()
            snap = engine.get_snapshot()
            seen.append((snap.frame_index, snap.beat_count))
        producer.join()
        seen.append((engine.get_snapshot().frame_index, engine.get_snapshot().beat_count))

        self.assertEqual(seen, sorted(seen))
        self.assertEqual(seen[-1][0], 400)
        self.assertGreater(seen[-1][1], 0)

    def test_synthetic_kick_tempo(self):
        clock = FakeClock()
        engine = make_engine(clock=clock)
        # Hold the tone bed level so only the kick drives energy changes
        with mock.patch.object(SyntheticAudioInput, "LFO_HZ", 0.0):
            source = SyntheticAudioInput(bpm=120)
            step_s = source.chunk_duration_ms / 1000.0
            for i in range(int(10.0 / step_s)):
                clock.now = i * step_s
                snap = engine.on_audio_data(source.generate_chunk(), source.format)

        self.assertGreaterEqual(snap.beat_count, 10)
        self.assertLess(abs(snap.current_bpm - 120.0), 5.0)


class TestSessionSummary(unittest.TestCase):
    def test_summary_logged_after_processing(self):
        engine = make_engine()
        engine.on_audio_data(constant_buffer(0.25), STEREO_16)
        with mock.patch("analysis_engine.log_event") as mock_log:
            engine.log_session_summary()

        mock_log.assert_called_once()
        args, kwargs = mock_log.call_args
        self.assertEqual(args[:3], ("INFO", "Engine", "Session summary"))
        self.assertEqual(kwargs['buffers'], 1)
        self.assertEqual(kwargs['skipped'], 0)

    def test_no_summary_when_idle(self):
        engine = make_engine()
        engine.on_audio_data(b"", STEREO_16)
        with mock.patch("analysis_engine.log_event") as mock_log:
            engine.log_session_summary()
        mock_log.assert_not_called()

    def test_stats_track_energy_and_peak(self):
        engine = make_engine()
        engine.on_audio_data(constant_buffer(0.25), STEREO_16)
        engine.on_audio_data(constant_buffer(0.5), STEREO_16)
        stats = engine.session_stats()
        self.assertEqual(stats['processed'], 2)
        self.assertAlmostEqual(stats['energy_max'], 0.5, places=4)
        self.assertAlmostEqual(stats['energy_mean'], 0.375, places=4)
        self.assertAlmostEqual(stats['peak_max'], 0.5, places=4)


if __name__ == "__main__":
    unittest.main()
