from __future__ import annotations

import math
from dataclasses import dataclass

_NOTE_NAMES = ("C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B")
_A4_MIDI = 69
_A4_HZ = 440.0


@dataclass(frozen=True)
class ScaleDefinition:
    name: str
    offsets: tuple[int, ...]

    def __post_init__(self) -> None:
        if not self.offsets:
            raise ValueError("scale must contain at least one offset")
        for offset in self.offsets:
            if not (0 <= int(offset) <= 11):
                raise ValueError(f"scale offset out of range [0, 11]: {offset}")
        if len(set(self.offsets)) != len(self.offsets):
            raise ValueError("scale offsets must be unique")

    def contains(self, midi: int) -> bool:
        return (int(midi) % 12) in self.offsets


SCALES: dict[str, ScaleDefinition] = {
    scale.name: scale
    for scale in (
        ScaleDefinition("Chromatic", tuple(range(12))),
        ScaleDefinition("Major", (0, 2, 4, 5, 7, 9, 11)),
        ScaleDefinition("Natural Minor", (0, 2, 3, 5, 7, 8, 10)),
        ScaleDefinition("Harmonic Minor", (0, 2, 3, 5, 7, 8, 11)),
        ScaleDefinition("Major Pentatonic", (0, 2, 4, 7, 9)),
        ScaleDefinition("Minor Pentatonic", (0, 3, 5, 7, 10)),
        ScaleDefinition("Blues", (0, 3, 5, 6, 7, 10)),
        ScaleDefinition("Dorian", (0, 2, 3, 5, 7, 9, 10)),
        ScaleDefinition("Mixolydian", (0, 2, 4, 5, 7, 9, 10)),
    )
}


def get_scale(name: str) -> ScaleDefinition:
    try:
        return SCALES[name]
    except KeyError:
        raise KeyError(f"unknown scale: {name!r}") from None


def quantize_to_scale(midi: int, scale: ScaleDefinition) -> int:
    """
    Snap a semitone number to the nearest pitch class of ``scale`` within
    the same octave.

    Distance is measured inside the octave only (no wrap to the next C).
    On an exact tie the offset declared first in ``scale.offsets`` wins:
    a later offset replaces the current best only when strictly closer.
    With offsets (0, 2), pitch class 1 therefore snaps down to 0.
    """
    midi = int(midi)
    octave = midi // 12
    pitch_class = midi % 12
    best = scale.offsets[0]
    best_err = abs(pitch_class - best)
    for offset in scale.offsets[1:]:
        err = abs(pitch_class - offset)
        if err < best_err:
            best_err = err
            best = offset
    return octave * 12 + best


def hz_to_midi(hz: float) -> float | None:
    if hz <= 0 or not math.isfinite(hz):
        return None
    return 12.0 * math.log2(hz / _A4_HZ) + _A4_MIDI


def midi_to_hz(midi: float) -> float:
    return float(_A4_HZ * (2.0 ** ((float(midi) - _A4_MIDI) / 12.0)))


def midi_to_note_name(midi: int) -> str:
    midi = int(midi)
    return f"{_NOTE_NAMES[midi % 12]}{midi // 12 - 1}"
