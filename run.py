#!/usr/bin/env python3
"""
pulsescope - real-time audio analysis runner

Feeds the analysis engine from live capture or the synthetic demo signal
and reads snapshots on a separate, throttled consumer loop, logging a
short summary once per second.
"""

import argparse
import cProfile
import sys
import time

import numpy as np

from analysis_engine import AnalysisEngine
from config import Config, apply_dict_to_dataclass, parse_overrides, sanitize_config
from logging_utils import log_event, set_log_level
from snapshot import AnalysisSnapshot


def build_config(args: argparse.Namespace) -> Config:
    config = Config()
    apply_dict_to_dataclass(config, parse_overrides(args.set))
    if args.bands is not None:
        config.analysis.num_bands = args.bands
    if args.sensitivity is not None:
        config.analysis.beat_sensitivity = args.sensitivity
    if args.bpm is not None:
        config.synthetic.bpm = args.bpm
    if args.device is not None:
        config.audio.device_index = args.device
    if args.log_level:
        config.log_level = args.log_level
    return sanitize_config(config)


def describe(snapshot: AnalysisSnapshot) -> dict:
    """Flatten a snapshot into log fields."""
    if snapshot.num_bands and snapshot.smoothed_magnitudes.max() > 0 and snapshot.target_max_magnitude > 0:
        loudest = int(np.argmax(snapshot.smoothed_magnitudes))
        level = float(snapshot.smoothed_magnitudes[loudest] / snapshot.target_max_magnitude)
    else:
        loudest, level = -1, 0.0
    return {
        'bpm': f"{snapshot.current_bpm:.1f}",
        'beats': snapshot.beat_count,
        'flash': snapshot.beat_flash_active,
        'left': f"{snapshot.left_channel:.3f}",
        'right': f"{snapshot.right_channel:.3f}",
        'left_hold': f"{snapshot.left_peak_hold:.3f}",
        'right_hold': f"{snapshot.right_peak_hold:.3f}",
        'loudest_band': loudest,
        'band_level': f"{level:.2f}",
    }


def create_source(args: argparse.Namespace, config: Config, engine: AnalysisEngine):
    if args.synthetic:
        from synthetic_input import SyntheticAudioInput
        return SyntheticAudioInput(engine.on_audio_data, bpm=config.synthetic.bpm)

    from capture import SoundDeviceCapture
    return SoundDeviceCapture(engine.on_audio_data, config.audio)


def run(args: argparse.Namespace) -> int:
    config = build_config(args)
    set_log_level(config.log_level)

    engine = AnalysisEngine(config)
    source = create_source(args, config, engine)

    try:
        source.start()
    except Exception as e:
        log_event("ERROR", "Run", "Could not start audio source", error=e)
        return 1

    frame_interval = 1.0 / max(1.0, float(args.fps))
    started = time.monotonic()
    last_report = started
    last_frame = -1

    try:
        while True:
            tick = time.monotonic()
            if args.seconds and tick - started >= args.seconds:
                break

            snapshot = engine.get_snapshot()
            if snapshot.frame_index == last_frame:
                engine.decay_flash()
            last_frame = snapshot.frame_index

            if tick - last_report >= 1.0:
                log_event("INFO", "Run", "Analysis", **describe(snapshot))
                last_report = tick

            time.sleep(max(0.0, frame_interval - (time.monotonic() - tick)))
    except KeyboardInterrupt:
        log_event("INFO", "Run", "Interrupted")
    finally:
        source.stop()
        engine.log_session_summary()

    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run pulsescope real-time audio analysis")
    parser.add_argument("--synthetic", action="store_true",
                        help="Use the built-in steady-BPM demo signal instead of capture")
    parser.add_argument("--bpm", type=int, default=None, help="Synthetic signal tempo (60-180)")
    parser.add_argument("--device", type=int, default=None, help="Input device index (default: system default)")
    parser.add_argument("--seconds", type=float, default=0.0, help="Stop after this many seconds (0 = until Ctrl+C)")
    parser.add_argument("--bands", type=int, default=None, help="Number of frequency bands (8-60)")
    parser.add_argument("--sensitivity", type=float, default=None, help="Beat sensitivity (0.5-3.0)")
    parser.add_argument("--fps", type=float, default=20.0, help="Snapshot read rate of the consumer loop")
    parser.add_argument("--log-level", default=None, help="DEBUG/INFO/WARNING/ERROR")
    parser.add_argument("--set", action="append", default=[], metavar="GROUP.FIELD=VALUE",
                        help="Override any config field, e.g. analysis.update_interval_ms=40")
    parser.add_argument(
        "--profile",
        action="store_true",
        help="Enable cProfile and save stats to --profile-out",
    )
    parser.add_argument(
        "--profile-out",
        default="profile.prof",
        help="Path to save cProfile stats (default: profile.prof)",
    )
    args = parser.parse_args()

    try:
        parse_overrides(args.set)
    except ValueError as e:
        parser.error(str(e))

    if args.profile:
        profiler = cProfile.Profile()
        profiler.enable()
        exit_code = run(args)
        profiler.disable()
        profiler.dump_stats(args.profile_out)
    else:
        exit_code = run(args)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
