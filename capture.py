"""
pulsescope - Live capture
Opens a sounddevice input stream and forwards each raw 16-bit buffer with
its AudioFormat. No analysis happens here.
"""

from typing import Callable, Optional

import sounddevice as sd

from config import AudioConfig
from logging_utils import log_event
from snapshot import AudioFormat


class SoundDeviceCapture:
    def __init__(self, callback: Callable[[bytes, AudioFormat], None], audio: Optional[AudioConfig] = None):
        self.callback = callback
        self.audio = audio or AudioConfig()
        self.stream = None
        self.running = False
        self.format = AudioFormat(
            sample_rate=int(self.audio.sample_rate),
            bits_per_sample=16,
            channels=int(self.audio.channels),
        )

    def start(self) -> None:
        """Open the input stream and start delivering buffers"""
        if self.running:
            return

        device = self.audio.device_index
        try:
            if device is None:
                device_info = sd.query_devices(kind='input')
            else:
                device_info = sd.query_devices(device)
            channels = max(1, min(int(device_info['max_input_channels']), int(self.audio.channels)))
            if channels != self.format.channels:
                self.format = AudioFormat(
                    sample_rate=self.format.sample_rate,
                    bits_per_sample=16,
                    channels=channels,
                )

            log_event("INFO", "Capture", "Using input device", device=device_info['name'])
            log_event("INFO", "Capture", "Input format", channels=self.format.channels,
                      sample_rate=self.format.sample_rate, block_size=self.audio.block_size)

            self.stream = sd.RawInputStream(
                samplerate=self.format.sample_rate,
                blocksize=int(self.audio.block_size),
                device=device,
                channels=self.format.channels,
                dtype='int16',
                callback=self._audio_callback,
            )
            self.running = True
            self.stream.start()
        except Exception as e:
            log_event("ERROR", "Capture", "Failed to start", error=e)
            self.running = False
            self.stream = None
            raise

        log_event("INFO", "Capture", "Input capture started")

    def stop(self) -> None:
        """Stop audio capture"""
        self.running = False
        if self.stream is not None:
            self.stream.stop()
            self.stream.close()
            self.stream = None
        log_event("INFO", "Capture", "Stopped")

    def _audio_callback(self, indata, frames, time_info, status):
        if status:
            log_event("DEBUG", "Capture", "Stream status", status=status)
        if not self.running:
            return
        self.callback(bytes(indata), self.format)
