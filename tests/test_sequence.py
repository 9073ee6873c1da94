from __future__ import annotations

import asyncio

import pytest

from vocal_synth.sequence import RecordedNote, SequencePlayer, SequenceRecorder, export_sequence


def test_recorder_backfills_previous_note_on_next_note_on() -> None:
    rec = SequenceRecorder()
    rec.begin(10.0)
    rec.note_on(60, 10.1)
    assert rec.has_open_note
    rec.note_on(62, 10.5)
    notes = rec.finish(10.9)
    assert [n.midi for n in notes] == [60, 62]
    assert notes[0].start_time_seconds == pytest.approx(0.1)
    assert notes[0].duration_seconds == pytest.approx(0.4)
    assert notes[1].start_time_seconds == pytest.approx(0.5)
    assert notes[1].duration_seconds == pytest.approx(0.4)
    assert not rec.is_recording


def test_note_off_closes_open_note_once() -> None:
    rec = SequenceRecorder()
    rec.begin(0.0)
    rec.note_on(60, 0.1)
    rec.note_off(0.4)
    rec.note_off(0.9)
    notes = rec.finish(1.0)
    assert len(notes) == 1
    assert notes[0].start_time_seconds == pytest.approx(0.1)
    assert notes[0].duration_seconds == pytest.approx(0.3)


def test_recorder_ignores_notes_outside_a_session() -> None:
    rec = SequenceRecorder()
    rec.note_on(60, 1.0)
    assert rec.notes == ()
    rec.begin(0.0)
    rec.note_on(60, 0.2)
    rec.finish(0.5)
    rec.note_on(64, 0.7)
    assert [n.midi for n in rec.notes] == [60]


def test_begin_clears_previous_sequence() -> None:
    rec = SequenceRecorder()
    rec.begin(0.0)
    rec.note_on(60, 0.1)
    rec.finish(0.2)
    rec.begin(5.0)
    assert rec.notes == ()


def test_start_times_never_decrease() -> None:
    rec = SequenceRecorder()
    rec.begin(1.0)
    rec.note_on(60, 0.5)  # clock before begin
    rec.note_on(62, 1.2)
    rec.note_on(64, 1.1)  # clock jitter backwards
    notes = rec.finish(1.3)
    starts = [n.start_time_seconds for n in notes]
    assert starts == sorted(starts)
    assert all(n.start_time_seconds >= 0 and n.duration_seconds >= 0 for n in notes)


def test_recorded_note_validation() -> None:
    with pytest.raises(ValueError):
        RecordedNote(128, 0.0, 0.0)
    with pytest.raises(ValueError):
        RecordedNote(60, -0.1, 0.0)


def test_export_sequence_shape() -> None:
    exported = export_sequence([RecordedNote(60, 0.1, 0.3)], program=24)
    assert exported == {
        "program": 24,
        "notes": [{"midi": 60, "startTimeSeconds": 0.1, "durationSeconds": 0.3}],
    }


def test_player_schedules_notes_and_reports_progress(clock, sink) -> None:
    notes = [RecordedNote(60, 0.0, 0.4), RecordedNote(62, 0.5, 0.4), RecordedNote(64, 1.0, 0.5)]
    progress: list[int] = []
    player = SequencePlayer(sink, gain=0.5, lead_seconds=0.05, sleep=clock.sleep)

    assert asyncio.run(player.play(notes, progress.append)) is True

    played = sink.ops("play_note")
    assert [c[1] for c in played] == [60, 62, 64]
    assert [c[2] for c in played] == pytest.approx([0.05, 0.55, 1.05])
    assert [c[3] for c in played] == pytest.approx([0.4, 0.4, 0.5])
    assert progress == [0, 0, 50, 100, 0]
    assert clock() == pytest.approx(1.55)
    assert not player.is_playing


def test_player_empty_sequence_is_noop(clock, sink) -> None:
    progress: list[int] = []
    player = SequencePlayer(sink, sleep=clock.sleep)
    assert asyncio.run(player.play([], progress.append)) is False
    assert sink.calls == []
    assert progress == []


def test_player_cancel_stops_scheduled_voices(clock, sink) -> None:
    notes = [RecordedNote(60, 0.0, 0.4), RecordedNote(62, 0.5, 0.4)]
    player = SequencePlayer(sink, sleep=clock.sleep)
    progress: list[int] = []

    def on_progress(pct: int) -> None:
        progress.append(pct)
        if len(progress) == 2:
            player.cancel()

    assert asyncio.run(player.play(notes, on_progress)) is False
    assert [c[1] for c in sink.ops("stop_note")] == [0, 1]
    assert progress[-1] == 0
