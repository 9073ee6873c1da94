from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import numpy as np
import sounddevice as sd

from vocal_synth.audio import FrameSource, StreamFrameSource
from vocal_synth.errors import AudioInitError, MicrophoneAccessError
from vocal_synth.synth import ToneGenerator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioInputConfig:
    sample_rate: int = 44100
    channels: int = 1
    # Analysis window handed to the pitch estimator on every pull().
    frame_size: int = 2048
    block_size: int = 512


class AudioInput:
    def __init__(self, config: AudioInputConfig | None = None) -> None:
        self._cfg = config or AudioInputConfig()
        self._source = StreamFrameSource(self._cfg.sample_rate, self._cfg.frame_size)
        self._stream: sd.InputStream | None = None

    @property
    def sample_rate(self) -> int:
        return self._cfg.sample_rate

    @property
    def is_running(self) -> bool:
        return self._stream is not None

    def start(self) -> None:
        if self._stream is not None:
            return

        def callback(indata, frames, time_info, status) -> None:  # noqa: ARG001
            if status:
                # Drop blocks on over/underflow; the window keeps the last good data.
                logger.warning("input status: %s", status)
                return
            self._source.push(indata[:, 0])

        try:
            stream = sd.InputStream(
                samplerate=self._cfg.sample_rate,
                channels=self._cfg.channels,
                blocksize=self._cfg.block_size,
                dtype="float32",
                callback=callback,
            )
            stream.start()
        except (sd.PortAudioError, OSError) as exc:
            raise MicrophoneAccessError(f"cannot open input device: {exc}") from exc
        self._source.clear()
        self._stream = stream
        logger.info("input stream opened at %d Hz", self._cfg.sample_rate)

    def stop(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.stop()
            self._stream.close()
        finally:
            self._stream = None

    def pull(self) -> tuple[np.ndarray, int]:
        return self._source.pull()


class SoundDeviceGate:
    """Opens the local input device on request; refusals surface as MicrophoneAccessError."""

    def __init__(self, audio: AudioInput | None = None) -> None:
        self._audio = audio or AudioInput()

    async def request_microphone(self) -> FrameSource:
        await asyncio.to_thread(self._audio.start)
        return self._audio

    def release(self) -> None:
        self._audio.stop()


class ToneSink(ToneGenerator):
    """ToneGenerator played through the default output device."""

    def __init__(self, sample_rate: int = 44100, block_size: int = 512) -> None:
        super().__init__(sample_rate)
        self._block_size = int(block_size)
        self._stream: sd.OutputStream | None = None

    @property
    def is_running(self) -> bool:
        return self._stream is not None

    def start(self) -> None:
        if self._stream is not None:
            return
        try:
            stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=1,
                blocksize=self._block_size,
                dtype="float32",
                callback=self._callback,
            )
            stream.start()
        except (sd.PortAudioError, OSError) as exc:
            raise AudioInitError(f"cannot open output device: {exc}") from exc
        self._stream = stream
        logger.info("output stream opened at %d Hz", self.sample_rate)

    async def resume(self) -> None:
        if self._stream is not None:
            return
        await asyncio.to_thread(self.start)

    def stop(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.stop()
            self._stream.close()
        finally:
            self._stream = None

    def _callback(self, outdata, frames, time_info, status) -> None:  # noqa: ARG002
        outdata[:] = self.render(frames).reshape(-1, 1)
