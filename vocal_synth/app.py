from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time

from vocal_synth import __version__
from vocal_synth.devices import AudioInput, AudioInputConfig, SoundDeviceGate, ToneSink
from vocal_synth.engine import EngineConfig, EngineMode, VocalEngine
from vocal_synth.errors import AudioInitError, MicrophoneAccessError
from vocal_synth.scale import SCALES, get_scale
from vocal_synth.synth import INSTRUMENTS

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="vocal-synth", description="Sing into the mic, hear (or record) quantized notes")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("--mode", choices=[EngineMode.LIVE.value, EngineMode.RECORDING.value], default="live")
    ap.add_argument("--scale", choices=sorted(SCALES), default="Major")
    ap.add_argument("--instrument", choices=sorted(INSTRUMENTS), default=None)
    ap.add_argument("--octave-shift", type=int, default=0, choices=range(-2, 3), help="Shift in whole octaves")
    ap.add_argument("--sensitivity", type=float, default=0.015, help="RMS gate for pitch detection")
    ap.add_argument("--no-autotune", action="store_true", help="Do not snap notes to the scale")
    ap.add_argument("--fps", type=float, default=60.0, help="Frames processed per second")
    ap.add_argument("--seconds", type=float, default=None, help="Stop automatically after this many seconds")
    ap.add_argument("--sample-rate", type=int, default=44100)
    ap.add_argument("--no-preview", action="store_true", help="Skip playback after a recording")
    ap.add_argument("--log-level", default="WARNING")
    return ap


def config_from_args(args: argparse.Namespace) -> EngineConfig:
    return EngineConfig(
        sensitivity_threshold=float(args.sensitivity),
        autotune_enabled=not args.no_autotune,
        active_scale=get_scale(args.scale),
    ).with_octaves(args.octave_shift)


def _print_note(midi: int | None, name: str | None) -> None:
    if midi is None:
        print("  --", flush=True)
    else:
        print(f"  {name:<4} ({midi})", flush=True)


def _print_progress(percent: int) -> None:
    print(f"\rpreview {percent:3d}%", end="", flush=True)
    if percent == 0:
        print("", flush=True)


async def _perform(engine: VocalEngine, mode: str, fps: float, seconds: float | None) -> None:
    session = await engine.start(mode)
    if session is None:
        return
    print(f"{mode} session started. Ctrl+C to stop.", flush=True)
    interval = 1.0 / max(1.0, float(fps))
    deadline = None if seconds is None else time.monotonic() + float(seconds)
    while engine.is_processing:
        if deadline is not None and time.monotonic() >= deadline:
            break
        engine.tick()
        await asyncio.sleep(interval)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    audio = AudioInput(AudioInputConfig(sample_rate=args.sample_rate))
    sink = ToneSink(sample_rate=args.sample_rate)
    engine = VocalEngine(gate=SoundDeviceGate(audio), sink=sink, config=config_from_args(args))
    engine.load_instrument(args.instrument)
    engine.add_listener(_print_note)

    try:
        asyncio.run(_perform(engine, args.mode, args.fps, args.seconds))
    except KeyboardInterrupt:
        pass
    except (MicrophoneAccessError, AudioInitError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        sink.stop()
        return 1
    finally:
        engine.stop()

    try:
        if args.mode == EngineMode.RECORDING.value:
            logger.info("recorded %d notes", len(engine.get_sequence()))
            print(json.dumps(engine.export_sequence(), indent=2))
            if not args.no_preview and engine.get_sequence():
                try:
                    asyncio.run(engine.preview(_print_progress))
                except KeyboardInterrupt:
                    engine.stop_preview()
    finally:
        sink.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
