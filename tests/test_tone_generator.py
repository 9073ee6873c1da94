from __future__ import annotations

import numpy as np
import pytest

from vocal_synth.errors import InstrumentLoadFailure
from vocal_synth.synth import INSTRUMENTS, LiveSynthDriver, ToneGenerator, load_instrument

SR = 44_100


def _rms(x: np.ndarray) -> float:
    return float(np.sqrt(np.mean(np.square(x))))


def test_silent_until_level_raised() -> None:
    gen = ToneGenerator(SR)
    assert np.all(gen.render(512) == 0.0)
    assert gen.current_time() == pytest.approx(512 / SR)


def test_live_driver_fades_in_and_out() -> None:
    gen = ToneGenerator(SR)
    driver = LiveSynthDriver(gen)
    driver.note_on(69, gain=0.3, smoothing_seconds=0.05)
    assert driver.active_midi == 69
    block = np.concatenate([gen.render(1024) for _ in range(20)])
    assert _rms(block[-4096:]) > 0.02
    assert np.max(np.abs(block)) <= 1.0

    driver.note_off(smoothing_seconds=0.1)
    assert driver.active_midi is None
    tail = np.concatenate([gen.render(1024) for _ in range(80)])
    assert _rms(tail[-2048:]) < 1e-3


def test_scheduled_note_starts_on_time_and_stops() -> None:
    gen = ToneGenerator(SR)
    handle = gen.play_note(60, at_time=0.1, duration=0.2, gain=0.5)
    before = gen.render(int(0.1 * SR) - 64)
    assert np.all(before == 0.0)
    during = gen.render(int(0.1 * SR))
    assert _rms(during) > 0.01

    gen.stop_note(handle, gen.current_time())
    gen.render(int(0.2 * SR))
    assert np.all(gen.render(1024) == 0.0)


def test_instrument_catalog() -> None:
    assert load_instrument("piano").program == 0
    assert set(INSTRUMENTS) >= {"piano", "guitar", "saw-lead"}
    with pytest.raises(InstrumentLoadFailure):
        load_instrument("kazoo")
