"""
pulsescope - Volume Analyzer
Smoothed per-channel levels and VU-style peak-hold bars.
"""


class ChannelMeter:
    """Level, fast peak and VU peak-hold for one channel."""
    __slots__ = ('level', 'peak', 'peak_hold', 'hold_frames')

    LEVEL_SMOOTHING = 0.7       # level = level*0.7 + peak*0.3
    PEAK_DECAY = 0.95           # Fast peak falls 5% per frame
    HOLD_FRAMES = 30            # VU hold before the bar starts falling
    HOLD_FALL_STEP = 0.02       # Linear fall per frame once released

    def __init__(self):
        self.level = 0.0
        self.peak = 0.0
        self.peak_hold = 0.0
        self.hold_frames = 0

    def update(self, current: float) -> None:
        self.level = self.level * self.LEVEL_SMOOTHING + current * (1.0 - self.LEVEL_SMOOTHING)

        if current > self.peak:
            self.peak = current
        else:
            self.peak *= self.PEAK_DECAY

        if current > self.peak_hold:
            self.peak_hold = current
            self.hold_frames = 0
        else:
            self.hold_frames += 1
            if self.hold_frames > self.HOLD_FRAMES:
                self.peak_hold = max(0.0, self.peak_hold - self.HOLD_FALL_STEP)


class VolumeAnalyzer:
    def __init__(self):
        self._left = ChannelMeter()
        self._right = ChannelMeter()
        self._last_volume = 0.0

    @property
    def volume(self) -> float:
        """Peak |mono| of the most recent frame."""
        return self._last_volume

    @property
    def left_channel(self) -> float:
        return self._left.level

    @property
    def right_channel(self) -> float:
        return self._right.level

    @property
    def left_peak(self) -> float:
        return self._left.peak

    @property
    def right_peak(self) -> float:
        return self._right.peak

    @property
    def left_peak_hold(self) -> float:
        return self._left.peak_hold

    @property
    def right_peak_hold(self) -> float:
        return self._right.peak_hold

    def process_frame(self, max_left: float, max_right: float, max_overall: float) -> None:
        # Inputs are peak magnitudes already bounded to [0, 1] by the caller
        self._last_volume = float(max_overall)
        self._left.update(float(max_left))
        self._right.update(float(max_right))
