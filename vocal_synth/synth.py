from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Protocol

import numpy as np

from vocal_synth.errors import InstrumentLoadFailure
from vocal_synth.scale import midi_to_hz


class SynthesisSink(Protocol):
    def current_time(self) -> float: ...

    def set_frequency(self, hz: float, smoothing_seconds: float) -> None: ...

    def set_level(self, gain: float, smoothing_seconds: float) -> None: ...

    def play_note(self, midi: int, at_time: float, duration: float, gain: float) -> int: ...

    def stop_note(self, handle: int, at_time: float) -> None: ...

    def set_instrument(self, profile: InstrumentProfile | None) -> None: ...

    async def resume(self) -> None: ...


@dataclass(frozen=True)
class InstrumentProfile:
    id: str
    name: str
    program: int
    harmonics: tuple[float, ...]
    attack: float
    release: float
    decay: float
    sustain: float


# Sawtooth-like partials; used whenever no instrument is loaded.
BUILTIN_TONE = InstrumentProfile(
    id="tone",
    name="Built-in Tone",
    program=81,
    harmonics=tuple(1.0 / k for k in range(1, 9)),
    attack=0.01,
    release=0.1,
    decay=10.0,
    sustain=1.0,
)

INSTRUMENTS: dict[str, InstrumentProfile] = {
    profile.id: profile
    for profile in (
        InstrumentProfile(
            id="piano",
            name="Piano",
            program=0,
            harmonics=(1.0, 0.75, 0.5, 0.35, 0.22, 0.16, 0.12, 0.08),
            attack=0.01,
            release=0.08,
            decay=1.6,
            sustain=0.65,
        ),
        InstrumentProfile(
            id="guitar",
            name="Guitar",
            program=24,
            harmonics=(1.0, 0.0, 0.55, 0.0, 0.32, 0.0, 0.18, 0.0, 0.12),
            attack=0.003,
            release=0.05,
            decay=0.55,
            sustain=0.25,
        ),
        InstrumentProfile(
            id="saw-lead",
            name="Saw Lead",
            program=81,
            harmonics=BUILTIN_TONE.harmonics,
            attack=0.005,
            release=0.06,
            decay=2.0,
            sustain=0.8,
        ),
    )
}


def load_instrument(instrument_id: str) -> InstrumentProfile:
    profile = INSTRUMENTS.get(instrument_id)
    if profile is None:
        raise InstrumentLoadFailure(f"unknown instrument: {instrument_id!r}")
    return profile


@dataclass
class _Voice:
    freq: float
    gain: float
    start_sample: int
    stop_sample: int
    phase: float
    profile: InstrumentProfile


class ToneGenerator:
    """
    Mono renderer with one continuously running tone (live path) and any
    number of scheduled voices (sequence playback). Usable offline through
    ``render()``; ``vocal_synth.devices.ToneSink`` feeds it to the sound card.

    The clock is the number of samples rendered so far, so times passed to
    ``play_note``/``stop_note`` are on the same timeline as ``current_time``.
    """

    def __init__(self, sample_rate: int = 44100) -> None:
        self._sample_rate = int(sample_rate)
        self._lock = threading.Lock()
        self._instrument: InstrumentProfile | None = None
        self._rendered = 0

        self._freq = 220.0
        self._target_freq = 220.0
        self._freq_tau = 0.0
        self._level = 0.0
        self._target_level = 0.0
        self._level_tau = 0.0
        self._phase = 0.0

        self._voices: dict[int, _Voice] = {}
        self._voice_seq = 0
        self._base_gain = 0.5
        self._soft_clip_drive = 1.6

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    def current_time(self) -> float:
        with self._lock:
            return float(self._rendered) / float(self._sample_rate)

    async def resume(self) -> None:
        return None

    def set_instrument(self, profile: InstrumentProfile | None) -> None:
        with self._lock:
            self._instrument = profile

    def set_frequency(self, hz: float, smoothing_seconds: float) -> None:
        if hz <= 0:
            return
        with self._lock:
            self._target_freq = float(hz)
            self._freq_tau = max(0.0, float(smoothing_seconds))

    def set_level(self, gain: float, smoothing_seconds: float) -> None:
        with self._lock:
            self._target_level = max(0.0, float(gain))
            self._level_tau = max(0.0, float(smoothing_seconds))

    def play_note(self, midi: int, at_time: float, duration: float, gain: float) -> int:
        profile = self._instrument or BUILTIN_TONE
        start = int(round(float(at_time) * self._sample_rate))
        stop = start + max(1, int(round(float(duration) * self._sample_rate)))
        with self._lock:
            handle = self._voice_seq
            self._voice_seq += 1
            self._voices[handle] = _Voice(
                freq=midi_to_hz(midi),
                gain=float(gain),
                start_sample=start,
                stop_sample=stop,
                phase=0.0,
                profile=profile,
            )
        return handle

    def stop_note(self, handle: int, at_time: float) -> None:
        at = int(round(float(at_time) * self._sample_rate))
        with self._lock:
            voice = self._voices.get(handle)
            if voice is None:
                return
            voice.stop_sample = min(voice.stop_sample, max(voice.start_sample, at))

    def render(self, frames: int) -> np.ndarray:
        with self._lock:
            out = self._render_tone(frames)
            out += self._render_voices(frames)
            self._rendered += frames
        out *= self._base_gain
        if self._soft_clip_drive > 0:
            drive = float(self._soft_clip_drive)
            out = np.tanh(out * drive) / np.tanh(drive)
        return out.astype(np.float32)

    def _render_tone(self, frames: int) -> np.ndarray:
        k = np.arange(1, frames + 1, dtype=np.float64)
        freq = _approach(self._freq, self._target_freq, self._freq_tau, k, self._sample_rate)
        level = _approach(self._level, self._target_level, self._level_tau, k, self._sample_rate)
        self._freq = float(freq[-1])
        self._level = float(level[-1])

        phase = self._phase + np.cumsum(2.0 * np.pi * freq / float(self._sample_rate))
        self._phase = float(phase[-1] % (2.0 * np.pi))
        if self._level <= 1e-5 and float(level[0]) <= 1e-5:
            return np.zeros(frames, dtype=np.float64)

        profile = self._instrument or BUILTIN_TONE
        wave = _additive(phase, freq, profile.harmonics, self._sample_rate)
        return wave * level

    def _render_voices(self, frames: int) -> np.ndarray:
        out = np.zeros(frames, dtype=np.float64)
        block_start = self._rendered
        idx = block_start + np.arange(frames)
        finished: list[int] = []
        for handle, voice in self._voices.items():
            release = max(1, int(voice.profile.release * self._sample_rate))
            if voice.stop_sample + release <= block_start:
                finished.append(handle)
                continue
            if voice.start_sample >= block_start + frames:
                continue

            age = (idx - voice.start_sample).astype(np.float64)
            active = age >= 0
            attack = max(1.0, voice.profile.attack * self._sample_rate)
            decay = max(1.0, voice.profile.decay * self._sample_rate)
            env = np.minimum(1.0, np.maximum(age, 0.0) / attack)
            env *= voice.profile.sustain + (1.0 - voice.profile.sustain) * np.exp(-np.maximum(age, 0.0) / decay)
            past = (idx - voice.stop_sample).astype(np.float64)
            env *= np.clip(1.0 - past / float(release), 0.0, 1.0)
            env[~active] = 0.0

            omega = 2.0 * np.pi * voice.freq / float(self._sample_rate)
            phase = voice.phase + omega * np.cumsum(active.astype(np.float64))
            voice.phase = float(phase[-1] % (2.0 * np.pi))
            freq = np.full(frames, voice.freq, dtype=np.float64)
            out += voice.gain * env * _additive(phase, freq, voice.profile.harmonics, self._sample_rate)
        for handle in finished:
            self._voices.pop(handle, None)
        return out


def _approach(current: float, target: float, tau: float, k: np.ndarray, sample_rate: int) -> np.ndarray:
    # Exponential approach toward target with time constant tau (seconds).
    if tau <= 0.0:
        return np.full(k.size, float(target), dtype=np.float64)
    coef = np.exp(-k / (tau * float(sample_rate)))
    return float(target) + (float(current) - float(target)) * coef


def _additive(phase: np.ndarray, freq: np.ndarray, harmonics: tuple[float, ...], sample_rate: int) -> np.ndarray:
    wave = np.zeros(phase.size, dtype=np.float64)
    nyquist = 0.48 * float(sample_rate)
    top = float(np.max(freq)) if freq.size else 0.0
    norm = sum(abs(a) for a in harmonics) or 1.0
    for i, amp in enumerate(harmonics, start=1):
        if top * i >= nyquist:
            break
        if amp == 0.0:
            continue
        wave += amp * np.sin(phase * i)
    return wave / norm


class LiveSynthDriver:
    """
    Monophonic live voice: retunes the sink's continuous tone on note-on and
    fades it out on note-off. A new note retunes the same voice, so the
    previous note is released rather than layered.
    """

    def __init__(self, sink: SynthesisSink) -> None:
        self._sink = sink
        self._active_midi: int | None = None

    @property
    def active_midi(self) -> int | None:
        return self._active_midi

    def note_on(self, midi: int, *, gain: float, smoothing_seconds: float) -> None:
        self._sink.set_frequency(midi_to_hz(midi), smoothing_seconds)
        self._sink.set_level(gain, smoothing_seconds)
        self._active_midi = int(midi)

    def note_off(self, *, smoothing_seconds: float) -> None:
        self._active_midi = None
        self._sink.set_level(0.0, smoothing_seconds)

    def mute(self) -> None:
        self._active_midi = None
        self._sink.set_level(0.0, 0.0)


def describe_instruments() -> list[dict[str, object]]:
    return [
        {"id": p.id, "name": p.name, "program": int(p.program)}
        for p in INSTRUMENTS.values()
    ]

