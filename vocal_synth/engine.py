from __future__ import annotations

import asyncio
import dataclasses
import logging
import math
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from vocal_synth.audio import FrameSource, MicrophoneGate
from vocal_synth.errors import AudioInitError, InstrumentLoadFailure, MicrophoneAccessError
from vocal_synth.pitch import NO_PITCH, PitchEstimate, PitchEstimator, PitchEstimatorConfig
from vocal_synth.scale import SCALES, ScaleDefinition
from vocal_synth.sequence import ProgressCallback, RecordedNote, SequencePlayer, SequenceRecorder, export_sequence
from vocal_synth.stabilizer import NoteEvent, NoteStabilizer, ShiftOrder, StabilizerConfig
from vocal_synth.synth import BUILTIN_TONE, InstrumentProfile, LiveSynthDriver, SynthesisSink, load_instrument

logger = logging.getLogger(__name__)

NoteListener = Callable[[int | None, str | None], None]


class EngineMode(str, Enum):
    IDLE = "idle"
    LIVE = "live"
    RECORDING = "recording"


@dataclass(frozen=True)
class EngineConfig:
    octave_shift_semitones: int = 0
    sensitivity_threshold: float = 0.015
    autotune_enabled: bool = True
    active_scale: ScaleDefinition = SCALES["Major"]
    shift_order: ShiftOrder = ShiftOrder.BEFORE_QUANTIZE
    clarity_threshold: float = 0.5
    stability_frames: int = 2
    min_retrigger_seconds: float = 0.05
    live_gain: float = 0.3
    attack_smoothing_seconds: float = 0.05
    release_smoothing_seconds: float = 0.1

    def __post_init__(self) -> None:
        if not (math.isfinite(self.sensitivity_threshold) and self.sensitivity_threshold > 0):
            raise ValueError("sensitivity_threshold must be > 0")
        if self.live_gain < 0:
            raise ValueError("live_gain must be >= 0")
        if not (0.0 <= self.clarity_threshold <= 1.0):
            raise ValueError("clarity_threshold must be in [0, 1]")
        # Validates the stabilizer fields as well.
        _ = self.stabilizer

    @property
    def stabilizer(self) -> StabilizerConfig:
        return StabilizerConfig(
            stability_frames=int(self.stability_frames),
            min_retrigger_seconds=float(self.min_retrigger_seconds),
            clarity_threshold=float(self.clarity_threshold),
            octave_shift_semitones=int(self.octave_shift_semitones),
            autotune_enabled=bool(self.autotune_enabled),
            scale=self.active_scale,
            shift_order=ShiftOrder(self.shift_order),
        )

    def replace(self, **changes: object) -> EngineConfig:
        return dataclasses.replace(self, **changes)

    def with_octaves(self, octaves: int) -> EngineConfig:
        return self.replace(octave_shift_semitones=12 * int(octaves))


@dataclass(frozen=True)
class Session:
    session_id: str
    mode: EngineMode
    started_at: float


class VocalEngine:
    """
    Pitch-tracking engine for one performer.

    The host owns the cadence: it awaits ``start()`` once, then calls
    ``tick()`` at its frame rate until ``stop()``. Only ``start()`` and
    ``preview()`` suspend; ``tick()`` never does and never raises.
    """

    def __init__(
        self,
        *,
        gate: MicrophoneGate,
        sink: SynthesisSink,
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        estimator: PitchEstimator | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._gate = gate
        self._sink = sink
        self._clock = clock
        cfg = config or EngineConfig()
        # Swapped as one tuple so a tick never sees half of a new config.
        self._active: tuple[EngineConfig, StabilizerConfig] = (cfg, cfg.stabilizer)
        self._estimator = estimator or PitchEstimator(PitchEstimatorConfig())
        self._stabilizer = NoteStabilizer()
        self._recorder = SequenceRecorder()
        self._driver = LiveSynthDriver(sink)
        self._player = SequencePlayer(sink, sleep=sleep)
        self._listeners: list[NoteListener] = []
        self._instrument: InstrumentProfile | None = None

        self._mode = EngineMode.IDLE
        self._processing = False
        self._source: FrameSource | None = None
        self._session: Session | None = None
        self._pending: Session | None = None
        self._starting: asyncio.Future[Session | None] | None = None
        self._generation = 0
        self._last_estimate: PitchEstimate = NO_PITCH

    @property
    def config(self) -> EngineConfig:
        return self._active[0]

    @property
    def mode(self) -> EngineMode:
        return self._mode

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def is_previewing(self) -> bool:
        return self._player.is_playing

    @property
    def last_estimate(self) -> PitchEstimate:
        return self._last_estimate

    @property
    def stable_midi(self) -> int | None:
        return self._stabilizer.stable_midi

    @property
    def instrument(self) -> InstrumentProfile | None:
        return self._instrument

    def add_listener(self, listener: NoteListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: NoteListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def configure(self, config: EngineConfig) -> None:
        self._active = (config, config.stabilizer)

    def load_instrument(self, instrument_id: str | None) -> InstrumentProfile | None:
        profile: InstrumentProfile | None = None
        if instrument_id is not None:
            try:
                profile = load_instrument(instrument_id)
            except InstrumentLoadFailure as exc:
                logger.warning("%s; falling back to %s", exc, BUILTIN_TONE.name)
        self._instrument = profile
        self._sink.set_instrument(profile)
        if profile is not None:
            logger.info("instrument loaded: %s", profile.name)
        return profile

    async def start(self, mode: EngineMode | str) -> Session | None:
        """
        Acquire the microphone and output device and begin a session.

        Starting while a session is running returns that session. Starting
        while another start is still in flight waits for it and shares its
        outcome, including its errors. Returns None when ``stop()`` was
        called before the device requests resolved; the stale start then
        leaves no trace.
        """
        mode = EngineMode(mode)
        if mode == EngineMode.IDLE:
            raise ValueError("cannot start a session in idle mode")
        if self._session is not None:
            return self._session
        if self._starting is not None:
            # A cancelled follower must not cancel the start it is waiting on.
            return await asyncio.shield(self._starting)

        if self._player.is_playing:
            self._player.cancel()

        pending = Session(session_id=uuid.uuid4().hex, mode=mode, started_at=self._clock())
        self._pending = pending
        starting = asyncio.ensure_future(self._open(pending, self._generation))
        self._starting = starting
        return await starting

    async def _open(self, pending: Session, generation: int) -> Session | None:
        mode = pending.mode
        try:
            try:
                source = await self._gate.request_microphone()
            except MicrophoneAccessError:
                logger.warning("microphone access denied; staying idle")
                raise
            if generation != self._generation:
                self._abandon(mode)
                return None

            try:
                await self._sink.resume()
            except AudioInitError:
                logger.error("output device unavailable; %s session not started", mode.value)
                self._gate.release()
                raise
            if generation != self._generation:
                self._abandon(mode)
                return None
        finally:
            if self._pending is pending:
                self._pending = None
                self._starting = None

        now = self._clock()
        session = dataclasses.replace(pending, started_at=now)
        self._stabilizer.reset()
        self._silence()
        if mode == EngineMode.RECORDING:
            self._recorder.begin(now)
        self._source = source
        self._mode = mode
        self._session = session
        self._processing = True
        logger.info("%s session %s started", mode.value, session.session_id)
        return session

    def stop(self) -> None:
        self._generation += 1
        self._pending = None
        self._starting = None
        if not self._processing:
            return

        now = self._clock()
        session = self._session
        self._processing = False
        try:
            self._close(now, self._active[0])
        finally:
            self._recorder.finish(now)
            self._silence()
            self._source = None
            self._session = None
            self._mode = EngineMode.IDLE
            self._stabilizer.reset()
            self._last_estimate = NO_PITCH
            self._gate.release()
        if session is not None:
            logger.info("%s session %s stopped", session.mode.value, session.session_id)

    def tick(self) -> list[NoteEvent]:
        if not self._processing or self._source is None:
            return []

        config, stab_cfg = self._active
        now = self._clock()
        try:
            samples, sample_rate = self._source.pull()
            estimate = self._estimator.estimate(samples, sample_rate, sensitivity=config.sensitivity_threshold)
        except Exception:  # noqa: BLE001
            logger.exception("pitch estimation failed; frame treated as unvoiced")
            estimate = NO_PITCH
        self._last_estimate = estimate

        before = dataclasses.replace(self._stabilizer.state)
        try:
            events = self._stabilizer.process(estimate, now, stab_cfg)
            for event in events:
                self._apply(event, config)
        except Exception:  # noqa: BLE001
            logger.exception("frame processing failed; frame treated as unvoiced")
            # Undo the unheard transition, then handle the frame as unvoiced.
            self._stabilizer.restore(before)
            self._last_estimate = NO_PITCH
            return self._close(now, config)

        for event in events:
            self._notify(event)
        return events

    def get_sequence(self) -> tuple[RecordedNote, ...]:
        return self._recorder.notes

    def export_sequence(self) -> dict[str, object]:
        program = (self._instrument or BUILTIN_TONE).program
        return export_sequence(self.get_sequence(), program=program)

    async def preview(self, progress: ProgressCallback | None = None) -> bool:
        if self._processing or self._pending is not None:
            logger.warning("preview ignored while a %s session is running", self._mode.value)
            return False
        notes = self.get_sequence()
        if not notes:
            return False
        await self._sink.resume()
        return await self._player.play(notes, progress)

    def stop_preview(self) -> None:
        self._player.cancel()

    def _abandon(self, mode: EngineMode) -> None:
        logger.info("start of %s session abandoned after stop()", mode.value)
        # A newer start may already own the devices.
        if self._session is None and self._pending is None:
            self._gate.release()

    def _apply(self, event: NoteEvent, config: EngineConfig) -> None:
        if self._mode == EngineMode.LIVE:
            if event.is_note_on:
                self._driver.note_on(
                    event.midi,
                    gain=config.live_gain,
                    smoothing_seconds=config.attack_smoothing_seconds,
                )
            else:
                self._driver.note_off(smoothing_seconds=config.release_smoothing_seconds)
        elif self._mode == EngineMode.RECORDING:
            if event.is_note_on:
                self._recorder.note_on(event.midi, event.time)
            else:
                self._recorder.note_off(event.time)

    def _notify(self, event: NoteEvent) -> None:
        midi, name = event.changed
        for listener in list(self._listeners):
            try:
                listener(midi, name)
            except Exception:  # noqa: BLE001
                logger.exception("note listener failed")

    def _close(self, now: float, config: EngineConfig) -> list[NoteEvent]:
        events = self._stabilizer.close(now)
        for event in events:
            try:
                self._apply(event, config)
            except Exception:  # noqa: BLE001
                logger.exception("note-off could not be applied")
            self._notify(event)
        return events

    def _silence(self) -> None:
        try:
            self._driver.mute()
        except Exception:  # noqa: BLE001
            logger.exception("muting the live tone failed")
