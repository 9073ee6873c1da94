from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import uuid
from typing import Callable

import numpy as np
from pydantic import ValidationError

from vocal_synth.audio import StreamFrameSource, StreamGate
from vocal_synth.engine import EngineMode, VocalEngine
from vocal_synth.errors import AudioInitError, MicrophoneAccessError
from vocal_synth.scale import get_scale
from vocal_synth.stabilizer import ShiftOrder
from vocal_synth.synth import InstrumentProfile
from vocal_synth.web.schemas import (
    ConfigureMessage,
    ErrorEvent,
    GetSequenceMessage,
    InitMessage,
    LoadInstrumentMessage,
    NoteChangedEvent,
    PreviewMessage,
    PreviewStopMessage,
    ProgressEvent,
    SequenceEvent,
    StartMessage,
    StatusEvent,
    StopMessage,
)

logger = logging.getLogger(__name__)

Emit = Callable[[dict[str, object]], None]


def status_event(message: str) -> dict[str, object]:
    return StatusEvent(message=message).model_dump(by_alias=True)


def error_event(code: str, message: str) -> dict[str, object]:
    return ErrorEvent(code=code, message=message).model_dump(by_alias=True)


class RemoteSink:
    """
    Synthesis sink that forwards every command to the client as a ``synth``
    event. Times are seconds since the sink was created.
    """

    def __init__(self, emit: Emit, clock: Callable[[], float] = time.monotonic) -> None:
        self._emit = emit
        self._clock = clock
        self._t0 = clock()
        self._voice_seq = 0

    def current_time(self) -> float:
        return float(self._clock() - self._t0)

    def set_frequency(self, hz: float, smoothing_seconds: float) -> None:
        self._emit({"type": "synth", "op": "set_frequency", "hz": float(hz), "smoothing": float(smoothing_seconds)})

    def set_level(self, gain: float, smoothing_seconds: float) -> None:
        self._emit({"type": "synth", "op": "set_level", "gain": float(gain), "smoothing": float(smoothing_seconds)})

    def play_note(self, midi: int, at_time: float, duration: float, gain: float) -> int:
        handle = self._voice_seq
        self._voice_seq += 1
        self._emit(
            {
                "type": "synth",
                "op": "play_note",
                "voice": handle,
                "midi": int(midi),
                "at": float(at_time),
                "duration": float(duration),
                "gain": float(gain),
            }
        )
        return handle

    def stop_note(self, handle: int, at_time: float) -> None:
        self._emit({"type": "synth", "op": "stop_note", "voice": int(handle), "at": float(at_time)})

    def set_instrument(self, profile: InstrumentProfile | None) -> None:
        self._emit({"type": "synth", "op": "set_instrument", "instrumentId": profile.id if profile else None})

    async def resume(self) -> None:
        return None


class EngineSession:
    """One websocket connection: browser audio in, note/synth events out."""

    def __init__(self, session_id: str, emit: Emit) -> None:
        self.session_id = session_id
        self._emit = emit
        self._clock = 0.0
        self._block_size = 512
        self._processing_buffer = np.zeros(0, dtype=np.float32)
        self.source = StreamFrameSource()
        self.sink = RemoteSink(emit)
        self.engine = VocalEngine(gate=StreamGate(self.source), sink=self.sink, clock=lambda: self._clock)
        self.engine.add_listener(self._on_note_changed)
        self._preview_task: asyncio.Task[bool] | None = None

    @property
    def clock(self) -> float:
        return self._clock

    def init(self, *, sample_rate: int) -> None:
        self.engine.stop()
        self.source.set_sample_rate(sample_rate)
        self._processing_buffer = np.zeros(0, dtype=np.float32)

    def process_audio_bytes(self, payload: bytes) -> int:
        if not payload:
            return 0
        if len(payload) % 4:
            payload = payload[: len(payload) - len(payload) % 4]
        frame = np.frombuffer(payload, dtype="<f4")
        if frame.size == 0:
            return 0

        self._processing_buffer = np.concatenate((self._processing_buffer, frame))
        ticks = 0
        while self._processing_buffer.size >= self._block_size:
            block = self._processing_buffer[: self._block_size]
            self._processing_buffer = self._processing_buffer[self._block_size :]
            self.source.push(block)
            self._clock += self._block_size / float(self.source.sample_rate)
            self.engine.tick()
            ticks += 1
        return ticks

    async def handle_text(self, text: str) -> None:
        for event in await self._dispatch(text):
            self._emit(event)

    async def _dispatch(self, text: str) -> list[dict[str, object]]:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return [error_event("invalid_json", "Invalid JSON payload")]

        if not isinstance(payload, dict):
            return [error_event("invalid_payload", "Expected JSON object")]

        msg_type = payload.get("type")
        try:
            if msg_type == "init":
                msg = InitMessage.model_validate(payload)
                self.init(sample_rate=msg.sample_rate)
                return [status_event("Session initialized.")]

            if msg_type == "configure":
                msg = ConfigureMessage.model_validate(payload)
                self.configure(msg)
                return [status_event("Config updated.")]

            if msg_type == "start":
                msg = StartMessage.model_validate(payload)
                return await self._start(EngineMode(msg.mode))

            if msg_type == "stop":
                StopMessage.model_validate(payload)
                self.engine.stop()
                return [status_event("Stopped.")]

            if msg_type == "load_instrument":
                msg = LoadInstrumentMessage.model_validate(payload)
                profile = self.engine.load_instrument(msg.instrument_id)
                name = profile.name if profile is not None else "built-in tone"
                return [status_event(f"Instrument: {name}.")]

            if msg_type == "get_sequence":
                GetSequenceMessage.model_validate(payload)
                return [self._sequence_event()]

            if msg_type == "preview":
                PreviewMessage.model_validate(payload)
                return self._start_preview()

            if msg_type == "preview_stop":
                PreviewStopMessage.model_validate(payload)
                self.engine.stop_preview()
                return [status_event("Preview stopped.")]

        except ValidationError as exc:
            return [error_event("invalid_message", str(exc))]
        except (KeyError, ValueError) as exc:
            return [error_event("invalid_message", str(exc))]

        return [error_event("unknown_message", f"Unknown type: {msg_type}")]

    def configure(self, msg: ConfigureMessage) -> None:
        changes: dict[str, object] = {}
        if msg.octave_shift is not None:
            changes["octave_shift_semitones"] = 12 * int(msg.octave_shift)
        if msg.sensitivity is not None:
            changes["sensitivity_threshold"] = float(msg.sensitivity)
        if msg.autotune is not None:
            changes["autotune_enabled"] = bool(msg.autotune)
        if msg.scale is not None:
            changes["active_scale"] = get_scale(msg.scale)
        if msg.shift_order is not None:
            changes["shift_order"] = ShiftOrder(msg.shift_order)
        self.engine.configure(self.engine.config.replace(**changes))

    async def _start(self, mode: EngineMode) -> list[dict[str, object]]:
        if self.engine.is_previewing:
            return [error_event("busy", "Preview in progress.")]
        try:
            session = await self.engine.start(mode)
        except MicrophoneAccessError as exc:
            return [error_event("microphone_denied", str(exc))]
        except AudioInitError as exc:
            return [error_event("audio_init_failed", str(exc))]
        if session is None:
            return [status_event("Start cancelled.")]
        return [status_event(f"{session.mode.value.capitalize()} session started.")]

    def _start_preview(self) -> list[dict[str, object]]:
        if self.engine.is_processing:
            return [error_event("busy", "Stop the session before previewing.")]
        if self._preview_task is not None and not self._preview_task.done():
            return [error_event("busy", "Preview already running.")]
        if not self.engine.get_sequence():
            return [status_event("Nothing recorded.")]
        self._preview_task = asyncio.create_task(self.engine.preview(self._on_progress))
        self._preview_task.add_done_callback(self._on_preview_done)
        return [status_event("Preview started.")]

    def _on_preview_done(self, task: asyncio.Task[bool]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("preview failed in session %s", self.session_id, exc_info=exc)
            self._emit(error_event("preview_failed", str(exc)))

    def _sequence_event(self) -> dict[str, object]:
        exported = self.engine.export_sequence()
        return SequenceEvent.model_validate(exported).model_dump(by_alias=True)

    def _on_note_changed(self, midi: int | None, name: str | None) -> None:
        self._emit(NoteChangedEvent(midi=midi, name=name, t=self._clock).model_dump(by_alias=True))

    def _on_progress(self, percent: int) -> None:
        self._emit(ProgressEvent(percent=percent).model_dump(by_alias=True))

    def close(self) -> None:
        self.engine.stop()
        self.engine.stop_preview()
        if self._preview_task is not None and not self._preview_task.done():
            self._preview_task.cancel()


class SessionManager:
    def __init__(self) -> None:
        self._sessions: dict[str, EngineSession] = {}
        self._lock = threading.Lock()

    def create(self, emit: Emit) -> EngineSession:
        session_id = uuid.uuid4().hex
        session = EngineSession(session_id, emit)
        with self._lock:
            self._sessions[session_id] = session
        logger.info("websocket session %s opened", session_id)
        return session

    def remove(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            session.close()
            logger.info("websocket session %s closed", session_id)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)
