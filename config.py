# pulsescope Configuration
# All default values and constants

from dataclasses import dataclass, field, is_dataclass
import math

from logging_utils import log_event


CURRENT_CONFIG_VERSION = 1

# Centralized parameter ranges (inclusive)
BAND_COUNT_LIMITS = (8, 60)
BEAT_SENSITIVITY_LIMITS = (0.5, 3.0)
SYNTHETIC_BPM_LIMITS = (60, 180)

SUPPORTED_BITS_PER_SAMPLE = (16, 32)


@dataclass
class AnalysisConfig:
    """Analysis pipeline parameters"""
    fft_size: int = 8192              # Transform window (power of two)
    num_bands: int = 8                # Logarithmic display bands (8-60)
    beat_sensitivity: float = 1.3     # Energy threshold multiplier (0.5 = very sensitive, 3.0 = strict)
    full_screen_mode: bool = False    # Passed through to the snapshot for renderers
    waveform_size: int = 512          # Oscilloscope ring length (samples)
    update_interval_ms: int = 50      # Display waveform refresh + beat flash decay cadence


@dataclass
class AudioConfig:
    """Live capture settings"""
    sample_rate: int = 44100
    channels: int = 2
    block_size: int = 1024            # Frames per capture callback
    # Device index - None means use system default
    device_index: int | None = None


@dataclass
class SyntheticConfig:
    """Demo signal generator"""
    bpm: int = 120                    # Kick tempo (60-180)


@dataclass
class Config:
    """Master configuration"""
    version: int = 1                  # Schema version
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    synthetic: SyntheticConfig = field(default_factory=SyntheticConfig)

    # Global
    log_level: str = "INFO"           # Logging level (DEBUG/INFO/WARNING/ERROR)


def clamp(value, limits):
    low, high = limits
    return max(low, min(high, value))


def is_power_of_two(value) -> bool:
    return isinstance(value, int) and value > 0 and (value & (value - 1)) == 0


def apply_dict_to_dataclass(target, data) -> None:
    """Recursively apply values from a dict onto a dataclass instance.
    Unknown keys are ignored; values are coerced to the type of the current field."""
    if not isinstance(data, dict):
        return

    for key, value in data.items():
        if not hasattr(target, key):
            log_event("WARN", "Config", "Unknown key ignored", key=key)
            continue

        current = getattr(target, key)

        if is_dataclass(current) and isinstance(value, dict):
            apply_dict_to_dataclass(current, value)
            continue

        if current is None and isinstance(value, str):
            # Optional ints (device_index) arrive as strings from the command line
            value = int(value) if value.strip().lstrip("-").isdigit() else None
        elif current is not None and value is not None and not isinstance(value, type(current)):
            try:
                if isinstance(current, bool):
                    value = str(value).strip().lower() in ("1", "true", "yes", "on")
                else:
                    value = type(current)(value)
            except (TypeError, ValueError):
                log_event("WARN", "Config", "Could not convert value, keeping default",
                          key=key, expected=type(current).__name__)
                continue

        setattr(target, key, value)


def parse_overrides(pairs) -> dict:
    """Turn ``group.field=value`` strings into a nested dict for apply_dict_to_dataclass."""
    result: dict = {}
    for pair in pairs or ():
        if "=" not in pair:
            raise ValueError(f"override must look like group.field=value, got {pair!r}")
        path, raw = pair.split("=", 1)
        keys = [k for k in path.strip().split(".") if k]
        if not keys:
            raise ValueError(f"override has an empty key: {pair!r}")
        node = result
        for key in keys[:-1]:
            node = node.setdefault(key, {})
        node[keys[-1]] = raw.strip()
    return result


def sanitize_config(config: Config) -> Config:
    """Clamp every field into its valid range and replace missing values with defaults.

    Bumps ``version`` to CURRENT_CONFIG_VERSION. Returns the same instance.
    """
    defaults = AnalysisConfig()
    analysis = config.analysis

    if not is_power_of_two(analysis.fft_size):
        log_event("WARN", "Config", "fft_size must be a power of two, using default",
                  fft_size=analysis.fft_size, default=defaults.fft_size)
        analysis.fft_size = defaults.fft_size

    try:
        num_bands = int(analysis.num_bands)
    except (TypeError, ValueError):
        num_bands = defaults.num_bands
    analysis.num_bands = clamp(num_bands, BAND_COUNT_LIMITS)

    try:
        sensitivity = float(analysis.beat_sensitivity)
    except (TypeError, ValueError):
        sensitivity = defaults.beat_sensitivity
    if not math.isfinite(sensitivity):
        sensitivity = defaults.beat_sensitivity
    analysis.beat_sensitivity = clamp(sensitivity, BEAT_SENSITIVITY_LIMITS)

    if analysis.full_screen_mode is None:
        analysis.full_screen_mode = False
    if not isinstance(analysis.waveform_size, int) or analysis.waveform_size <= 0:
        analysis.waveform_size = defaults.waveform_size
    if not isinstance(analysis.update_interval_ms, int) or analysis.update_interval_ms < 0:
        analysis.update_interval_ms = defaults.update_interval_ms

    audio_defaults = AudioConfig()
    audio = config.audio
    if not isinstance(audio.sample_rate, int) or audio.sample_rate <= 0:
        audio.sample_rate = audio_defaults.sample_rate
    if not isinstance(audio.channels, int) or audio.channels < 1:
        audio.channels = audio_defaults.channels
    audio.channels = min(audio.channels, 2)  # Use up to 2 channels
    if not isinstance(audio.block_size, int) or audio.block_size <= 0:
        audio.block_size = audio_defaults.block_size

    try:
        bpm = int(config.synthetic.bpm)
    except (TypeError, ValueError):
        bpm = SyntheticConfig().bpm
    config.synthetic.bpm = clamp(bpm, SYNTHETIC_BPM_LIMITS)

    if not config.log_level:
        config.log_level = "INFO"

    config.version = CURRENT_CONFIG_VERSION
    return config
