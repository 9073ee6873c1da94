from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Awaitable, Callable, Sequence

if TYPE_CHECKING:
    from vocal_synth.synth import SynthesisSink

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class RecordedNote:
    midi: int
    start_time_seconds: float
    duration_seconds: float

    def __post_init__(self) -> None:
        if not (0 <= self.midi <= 127):
            raise ValueError(f"midi out of range [0, 127]: {self.midi}")
        if self.start_time_seconds < 0 or self.duration_seconds < 0:
            raise ValueError("note times must be non-negative")

    @property
    def end_time_seconds(self) -> float:
        return self.start_time_seconds + self.duration_seconds

    def to_dict(self) -> dict[str, object]:
        return {
            "midi": int(self.midi),
            "startTimeSeconds": float(self.start_time_seconds),
            "durationSeconds": float(self.duration_seconds),
        }


class SequenceRecorder:
    """
    Collects stabilized notes for one recording session.

    Times are relative to ``begin()``. The last appended note stays open
    (duration 0) until the next note starts, ``note_off()`` is called or the
    session finishes, at which point its duration is back-filled.
    """

    def __init__(self) -> None:
        self._notes: list[RecordedNote] = []
        self._start_time: float | None = None
        self._open = False

    @property
    def is_recording(self) -> bool:
        return self._start_time is not None

    @property
    def has_open_note(self) -> bool:
        return self._open

    @property
    def notes(self) -> tuple[RecordedNote, ...]:
        return tuple(self._notes)

    def begin(self, now: float) -> None:
        self._notes.clear()
        self._start_time = float(now)
        self._open = False

    def note_on(self, midi: int, now: float) -> None:
        if self._start_time is None:
            return
        self._close_open(now)
        start = max(0.0, float(now) - self._start_time)
        if self._notes:
            # Keep start times non-decreasing even if the clock jitters.
            start = max(start, self._notes[-1].start_time_seconds)
        self._notes.append(RecordedNote(midi=int(midi), start_time_seconds=start, duration_seconds=0.0))
        self._open = True

    def note_off(self, now: float) -> None:
        if self._start_time is None:
            return
        self._close_open(now)

    def finish(self, now: float) -> tuple[RecordedNote, ...]:
        if self._start_time is not None:
            self._close_open(now)
            self._start_time = None
        return self.notes

    def _close_open(self, now: float) -> None:
        if not self._open or not self._notes or self._start_time is None:
            return
        last = self._notes[-1]
        elapsed = float(now) - self._start_time
        self._notes[-1] = replace(last, duration_seconds=max(0.0, elapsed - last.start_time_seconds))
        self._open = False


def export_sequence(notes: Sequence[RecordedNote], program: int = 0) -> dict[str, object]:
    return {
        "program": int(program),
        "notes": [note.to_dict() for note in notes],
    }


class SequencePlayer:
    """Replays a recorded note list through a synthesis sink on the sink's clock."""

    def __init__(
        self,
        sink: SynthesisSink,
        *,
        gain: float = 0.5,
        lead_seconds: float = 0.05,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._sink = sink
        self._gain = float(gain)
        self._lead = float(lead_seconds)
        self._sleep = sleep
        self._playing = False
        self._cancelled = False

    @property
    def is_playing(self) -> bool:
        return self._playing

    def cancel(self) -> None:
        self._cancelled = True

    async def play(self, notes: Sequence[RecordedNote], progress: ProgressCallback | None = None) -> bool:
        if not notes or self._playing:
            return False

        self._playing = True
        self._cancelled = False
        report = progress or (lambda _pct: None)
        handles: list[object] = []
        try:
            session_start = self._sink.current_time() + self._lead
            for note in notes:
                handles.append(
                    self._sink.play_note(
                        note.midi,
                        session_start + note.start_time_seconds,
                        note.duration_seconds,
                        self._gain,
                    )
                )
            logger.info("preview started: %d notes", len(notes))

            last_start = notes[-1].start_time_seconds
            end = max(note.end_time_seconds for note in notes)
            report(0)
            for note in notes:
                await self._wait_until(session_start + note.start_time_seconds)
                if self._cancelled:
                    break
                if last_start > 0:
                    report(int(round(100.0 * note.start_time_seconds / last_start)))
                else:
                    report(100)
            if not self._cancelled:
                await self._wait_until(session_start + end)
        except asyncio.CancelledError:
            self._cancelled = True
            raise
        finally:
            if self._cancelled:
                at = self._sink.current_time()
                for handle in handles:
                    self._sink.stop_note(handle, at)
            report(0)
            self._playing = False
            logger.info("preview finished%s", " (cancelled)" if self._cancelled else "")
        return not self._cancelled

    async def _wait_until(self, t: float) -> None:
        delay = t - self._sink.current_time()
        if delay > 0:
            await self._sleep(delay)
