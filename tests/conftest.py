from __future__ import annotations

import asyncio

import numpy as np
import pytest

from vocal_synth.errors import AudioInitError, MicrophoneAccessError
from vocal_synth.scale import midi_to_hz


class ManualClock:
    def __init__(self, t: float = 0.0) -> None:
        self.t = float(t)

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += float(dt)

    async def sleep(self, dt: float) -> None:
        self.advance(dt)


class ToneSource:
    """Frame source whose current content is set by the test."""

    def __init__(self, sample_rate: int = 44_100, frame_size: int = 2048) -> None:
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.samples = np.zeros(frame_size, dtype=np.float32)
        self.fail = False

    def sing(self, midi: int, amplitude: float = 0.3) -> None:
        t = np.arange(self.frame_size, dtype=np.float64) / self.sample_rate
        self.samples = (amplitude * np.sin(2 * np.pi * midi_to_hz(midi) * t)).astype(np.float32)

    def silence(self) -> None:
        self.samples = np.zeros(self.frame_size, dtype=np.float32)

    def pull(self) -> tuple[np.ndarray, int]:
        if self.fail:
            raise RuntimeError("device glitch")
        return self.samples.copy(), self.sample_rate


class FakeGate:
    def __init__(self, source: ToneSource) -> None:
        self.source = source
        self.deny = False
        self.requests = 0
        self.released = 0
        self.wait_for: asyncio.Event | None = None

    async def request_microphone(self) -> ToneSource:
        self.requests += 1
        if self.wait_for is not None:
            await self.wait_for.wait()
        if self.deny:
            raise MicrophoneAccessError("Permission denied")
        return self.source

    def release(self) -> None:
        self.released += 1


class FakeSink:
    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self.calls: list[tuple] = []
        self.fail_resume = False
        self.resumed = 0
        self.instrument = None
        # op name -> number of upcoming calls that raise
        self.failing: dict[str, int] = {}
        self._seq = 0

    def _maybe_fail(self, op: str) -> None:
        left = self.failing.get(op, 0)
        if left:
            self.failing[op] = left - 1
            raise RuntimeError(f"{op} failed")

    def current_time(self) -> float:
        return self.clock()

    def set_frequency(self, hz: float, smoothing_seconds: float) -> None:
        self._maybe_fail("set_frequency")
        self.calls.append(("set_frequency", hz, smoothing_seconds))

    def set_level(self, gain: float, smoothing_seconds: float) -> None:
        self._maybe_fail("set_level")
        self.calls.append(("set_level", gain, smoothing_seconds))

    def play_note(self, midi: int, at_time: float, duration: float, gain: float) -> int:
        self._maybe_fail("play_note")
        handle = self._seq
        self._seq += 1
        self.calls.append(("play_note", midi, at_time, duration, gain))
        return handle

    def stop_note(self, handle: int, at_time: float) -> None:
        self.calls.append(("stop_note", handle, at_time))

    def set_instrument(self, profile) -> None:
        self.instrument = profile

    async def resume(self) -> None:
        if self.fail_resume:
            raise AudioInitError("no output device")
        self.resumed += 1

    def ops(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def source() -> ToneSource:
    return ToneSource()


@pytest.fixture
def gate(source: ToneSource) -> FakeGate:
    return FakeGate(source)


@pytest.fixture
def sink(clock: ManualClock) -> FakeSink:
    return FakeSink(clock)
