from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class InitMessage(_Model):
    type: Literal["init"]
    sample_rate: int = Field(alias="sampleRate", ge=8_000, le=192_000)


class ConfigureMessage(_Model):
    type: Literal["configure"]
    octave_shift: int | None = Field(alias="octaveShift", default=None, ge=-2, le=2)
    sensitivity: float | None = Field(default=None, gt=0.0, le=1.0)
    autotune: bool | None = None
    scale: str | None = None
    shift_order: Literal["before", "after"] | None = Field(alias="shiftOrder", default=None)


class StartMessage(_Model):
    type: Literal["start"]
    mode: Literal["live", "recording"]


class StopMessage(_Model):
    type: Literal["stop"]


class LoadInstrumentMessage(_Model):
    type: Literal["load_instrument"]
    instrument_id: str | None = Field(alias="instrumentId", default=None)


class GetSequenceMessage(_Model):
    type: Literal["get_sequence"]


class PreviewMessage(_Model):
    type: Literal["preview"]


class PreviewStopMessage(_Model):
    type: Literal["preview_stop"]


class StatusEvent(_Model):
    type: Literal["status"] = "status"
    message: str


class ErrorEvent(_Model):
    type: Literal["error"] = "error"
    code: str
    message: str


class NoteChangedEvent(_Model):
    type: Literal["note"] = "note"
    midi: int | None
    name: str | None
    t: float


class ProgressEvent(_Model):
    type: Literal["progress"] = "progress"
    percent: int = Field(ge=0, le=100)


class SequenceNote(_Model):
    midi: int = Field(ge=0, le=127)
    start_time_seconds: float = Field(alias="startTimeSeconds", ge=0.0)
    duration_seconds: float = Field(alias="durationSeconds", ge=0.0)


class SequenceEvent(_Model):
    type: Literal["sequence"] = "sequence"
    program: int = Field(ge=0, le=127)
    notes: list[SequenceNote]
