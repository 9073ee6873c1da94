from __future__ import annotations

import pytest

from vocal_synth.scale import (
    SCALES,
    ScaleDefinition,
    get_scale,
    hz_to_midi,
    midi_to_hz,
    midi_to_note_name,
    quantize_to_scale,
)


def test_quantized_note_is_in_scale_and_same_octave() -> None:
    for scale in SCALES.values():
        for midi in range(-24, 150):
            q = quantize_to_scale(midi, scale)
            assert q % 12 in scale.offsets
            assert q // 12 == midi // 12


def test_first_declared_offset_wins_on_ties() -> None:
    scale = ScaleDefinition("Whole", (0, 2))
    assert quantize_to_scale(61, scale) == 60
    assert quantize_to_scale(1, scale) == 0
    # Declaration order decides, not numeric order.
    assert quantize_to_scale(61, ScaleDefinition("Reversed", (2, 0))) == 62


def test_major_scale_snaps_accidentals_down() -> None:
    major = get_scale("Major")
    assert quantize_to_scale(60, major) == 60
    assert quantize_to_scale(61, major) == 60
    assert quantize_to_scale(66, major) == 65
    assert quantize_to_scale(71, major) == 71


def test_chromatic_scale_is_identity() -> None:
    chromatic = get_scale("Chromatic")
    assert [quantize_to_scale(m, chromatic) for m in range(128)] == list(range(128))


def test_scale_validation() -> None:
    with pytest.raises(ValueError):
        ScaleDefinition("Empty", ())
    with pytest.raises(ValueError):
        ScaleDefinition("Bad", (0, 12))
    with pytest.raises(ValueError):
        ScaleDefinition("Dup", (0, 0))
    with pytest.raises(KeyError):
        get_scale("Lydian Dominant Augmented")


def test_note_conversions() -> None:
    assert hz_to_midi(440.0) == pytest.approx(69.0)
    assert midi_to_hz(60) == pytest.approx(261.6256, rel=1e-4)
    assert hz_to_midi(0.0) is None
    assert midi_to_note_name(60) == "C4"
    assert midi_to_note_name(69) == "A4"
    assert midi_to_note_name(61) == "C#4"
    assert midi_to_note_name(0) == "C-1"
