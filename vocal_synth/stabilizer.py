from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum

from vocal_synth.pitch import PitchEstimate
from vocal_synth.scale import SCALES, ScaleDefinition, hz_to_midi, midi_to_note_name, quantize_to_scale

logger = logging.getLogger(__name__)


class ShiftOrder(str, Enum):
    BEFORE_QUANTIZE = "before"
    AFTER_QUANTIZE = "after"


class NoteEventKind(str, Enum):
    NOTE_ON = "note_on"
    NOTE_OFF = "note_off"


@dataclass(frozen=True)
class StabilizerConfig:
    # Consecutive agreeing frames before a candidate becomes a sounding note.
    stability_frames: int = 2
    # Minimum gap between two note-ons.
    min_retrigger_seconds: float = 0.05
    clarity_threshold: float = 0.5
    octave_shift_semitones: int = 0
    autotune_enabled: bool = True
    scale: ScaleDefinition = SCALES["Major"]
    shift_order: ShiftOrder = ShiftOrder.BEFORE_QUANTIZE

    def __post_init__(self) -> None:
        if self.stability_frames < 1:
            raise ValueError("stability_frames must be >= 1")
        if self.min_retrigger_seconds < 0:
            raise ValueError("min_retrigger_seconds must be >= 0")


@dataclass(frozen=True)
class NoteEvent:
    kind: NoteEventKind
    midi: int
    time: float

    @property
    def is_note_on(self) -> bool:
        return self.kind == NoteEventKind.NOTE_ON

    @property
    def name(self) -> str:
        return midi_to_note_name(self.midi)

    @property
    def changed(self) -> tuple[int | None, str | None]:
        """The (midi, name) pair shown to listeners; (None, None) on note-off."""
        if self.is_note_on:
            return self.midi, self.name
        return None, None

    def to_event(self) -> dict[str, object]:
        midi, name = self.changed
        return {
            "type": "note",
            "midi": midi,
            "name": name,
            "t": float(self.time),
        }


@dataclass
class StabilizerState:
    last_stable_midi: int | None = None
    candidate_midi: int | None = None
    candidate_frame_count: int = 0
    last_note_start_time: float = field(default=float("-inf"))


def frequency_to_note(hz: float, cfg: StabilizerConfig) -> int | None:
    midi_f = hz_to_midi(hz)
    if midi_f is None:
        return None
    note = int(round(midi_f))
    if cfg.shift_order == ShiftOrder.BEFORE_QUANTIZE:
        note += int(cfg.octave_shift_semitones)
        if cfg.autotune_enabled:
            note = quantize_to_scale(note, cfg.scale)
    else:
        if cfg.autotune_enabled:
            note = quantize_to_scale(note, cfg.scale)
        note += int(cfg.octave_shift_semitones)
    return int(max(0, min(127, note)))


class NoteStabilizer:
    """
    Debounces per-frame pitch estimates into held notes.

    States: silent (nothing stable, no candidate), candidate (a note seen on
    N consecutive frames) and stable (a sounding note). A candidate becomes
    stable once it has been seen ``stability_frames`` times in a row and at
    least ``min_retrigger_seconds`` have passed since the last note-on.
    Any frame failing the loudness/clarity gates closes the stable note.
    """

    def __init__(self) -> None:
        self._state = StabilizerState()

    @property
    def state(self) -> StabilizerState:
        return self._state

    @property
    def stable_midi(self) -> int | None:
        return self._state.last_stable_midi

    def reset(self) -> None:
        self._state = StabilizerState()

    def restore(self, state: StabilizerState) -> None:
        """Roll back to a state previously copied from ``state``."""
        self._state = replace(state)

    def process(self, estimate: PitchEstimate, now: float, cfg: StabilizerConfig) -> list[NoteEvent]:
        if not estimate.is_reliable(cfg.clarity_threshold):
            return self.close(now)
        note = frequency_to_note(estimate.frequency_hz, cfg)
        if note is None:
            return self.close(now)

        st = self._state
        if note == st.last_stable_midi:
            st.candidate_midi = None
            st.candidate_frame_count = 0
            return []

        if note == st.candidate_midi:
            st.candidate_frame_count += 1
        else:
            st.candidate_midi = note
            st.candidate_frame_count = 1

        if st.candidate_frame_count < cfg.stability_frames:
            return []
        if (now - st.last_note_start_time) < cfg.min_retrigger_seconds:
            return []

        st.last_stable_midi = note
        st.candidate_midi = None
        st.candidate_frame_count = 0
        st.last_note_start_time = now
        logger.debug("note on %s (%d) at %.3f", midi_to_note_name(note), note, now)
        return [NoteEvent(NoteEventKind.NOTE_ON, note, now)]

    def close(self, now: float) -> list[NoteEvent]:
        st = self._state
        st.candidate_midi = None
        st.candidate_frame_count = 0
        if st.last_stable_midi is None:
            return []
        note = st.last_stable_midi
        st.last_stable_midi = None
        logger.debug("note off %s (%d) at %.3f", midi_to_note_name(note), note, now)
        return [NoteEvent(NoteEventKind.NOTE_OFF, note, now)]
