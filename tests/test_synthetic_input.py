import threading
import unittest
from unittest import mock

import numpy as np

from synthetic_input import SyntheticAudioInput


def rms(chunk: bytes) -> float:
    samples = np.frombuffer(chunk, dtype='<i2').astype(np.float64) / 32768.0
    return float(np.sqrt(np.mean(samples * samples)))


class TestSyntheticSignal(unittest.TestCase):
    def test_chunk_layout(self):
        source = SyntheticAudioInput()
        chunk = source.generate_chunk()

        self.assertEqual(len(chunk), 1024 * 2 * 2)
        self.assertEqual(source.format.sample_rate, 44100)
        self.assertEqual(source.format.bits_per_sample, 16)
        self.assertEqual(source.format.channels, 2)

        frames = np.frombuffer(chunk, dtype='<i2').reshape(-1, 2)
        np.testing.assert_array_equal(frames[:, 0], frames[:, 1])

    def test_chunk_duration(self):
        self.assertAlmostEqual(SyntheticAudioInput().chunk_duration_ms, 1024 * 1000.0 / 44100)

    def test_bpm_is_clamped(self):
        self.assertEqual(SyntheticAudioInput(bpm=300).bpm, 180)
        self.assertEqual(SyntheticAudioInput(bpm=10).bpm, 60)
        self.assertEqual(SyntheticAudioInput(bpm=128).bpm, 128)

    def test_output_is_deterministic(self):
        a = SyntheticAudioInput(bpm=100)
        b = SyntheticAudioInput(bpm=100)
        for _ in range(5):
            self.assertEqual(a.generate_chunk(), b.generate_chunk())

    def test_kick_chunk_is_louder(self):
        source = SyntheticAudioInput(bpm=120)
        chunks = [source.generate_chunk() for _ in range(12)]
        # Chunk 0 starts on a kick; chunk 10 sits mid-beat (~232 ms)
        self.assertGreater(rms(chunks[0]), 2 * rms(chunks[10]))

    def test_signal_stays_in_range(self):
        source = SyntheticAudioInput(bpm=180)
        for _ in range(50):
            samples = np.frombuffer(source.generate_chunk(), dtype='<i2')
            self.assertLessEqual(int(np.abs(samples.astype(np.int32)).max()), 32767)


class TestSyntheticDelivery(unittest.TestCase):
    def test_start_delivers_chunks_until_stopped(self):
        delivered = threading.Event()
        received = []

        def callback(chunk, fmt):
            received.append((len(chunk), fmt))
            delivered.set()

        source = SyntheticAudioInput(callback, bpm=120)
        source.start()
        try:
            self.assertTrue(delivered.wait(timeout=2.0))
        finally:
            source.stop()

        self.assertFalse(source.running)
        self.assertEqual(received[0], (4096, source.format))

        count = len(received)
        delivered.clear()
        self.assertFalse(delivered.wait(timeout=0.1))
        self.assertEqual(len(received), count)

    def test_callback_errors_are_logged(self):
        called = threading.Event()

        def callback(chunk, fmt):
            called.set()
            raise RuntimeError("render failed")

        source = SyntheticAudioInput(callback)
        with mock.patch("synthetic_input.log_event") as mock_log:
            source.start()
            try:
                self.assertTrue(called.wait(timeout=2.0))
            finally:
                source.stop()

        self.assertTrue(any(c.args[0] == "ERROR" for c in mock_log.call_args_list))

    def test_stop_without_start_is_noop(self):
        source = SyntheticAudioInput()
        source.stop()
        self.assertFalse(source.running)


if __name__ == "__main__":
    unittest.main()
