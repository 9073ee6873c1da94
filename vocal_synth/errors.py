from __future__ import annotations


class VocalSynthError(RuntimeError):
    pass


class MicrophoneAccessError(VocalSynthError):
    """Microphone access was refused or no input device could be opened."""


class AudioInitError(VocalSynthError):
    """The output device could not be opened or resumed."""


class InstrumentLoadFailure(VocalSynthError):
    pass
