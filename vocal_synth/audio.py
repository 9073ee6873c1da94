from __future__ import annotations

import threading
from typing import Protocol

import numpy as np


class FrameSource(Protocol):
    def pull(self) -> tuple[np.ndarray, int]: ...


class MicrophoneGate(Protocol):
    async def request_microphone(self) -> FrameSource: ...

    def release(self) -> None: ...


class StreamFrameSource:
    """Keeps the most recent ``frame_size`` samples pushed into it."""

    def __init__(self, sample_rate: int = 44100, frame_size: int = 2048) -> None:
        self._lock = threading.Lock()
        self._sample_rate = int(sample_rate)
        self._window = np.zeros(int(frame_size), dtype=np.float32)
        self._received = 0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def frame_size(self) -> int:
        return int(self._window.size)

    @property
    def samples_received(self) -> int:
        with self._lock:
            return self._received

    def set_sample_rate(self, sample_rate: int) -> None:
        with self._lock:
            self._sample_rate = int(sample_rate)
            self._window[:] = 0.0
            self._received = 0

    def push(self, block: np.ndarray) -> None:
        x = np.asarray(block, dtype=np.float32).ravel()
        n = int(x.size)
        if n == 0:
            return
        size = self._window.size
        with self._lock:
            if n >= size:
                self._window[:] = x[-size:]
            else:
                # Shift left by one block, append the new block at the end.
                self._window[:-n] = self._window[n:]
                self._window[-n:] = x
            self._received += n

    def pull(self) -> tuple[np.ndarray, int]:
        with self._lock:
            return self._window.copy(), self._sample_rate

    def clear(self) -> None:
        with self._lock:
            self._window[:] = 0.0
            self._received = 0


class StreamGate:
    """Gate for sources whose permission was granted elsewhere (e.g. in a browser)."""

    def __init__(self, source: StreamFrameSource) -> None:
        self._source = source

    async def request_microphone(self) -> FrameSource:
        return self._source

    def release(self) -> None:
        self._source.clear()
