from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class PitchEstimatorConfig:
    min_hz: float = 60.0
    max_hz: float = 1500.0

    def __post_init__(self) -> None:
        if not (0.0 < self.min_hz < self.max_hz):
            raise ValueError("expected 0 < min_hz < max_hz")


@dataclass(frozen=True)
class PitchEstimate:
    frequency_hz: float
    clarity: float
    volume: float

    @property
    def has_pitch(self) -> bool:
        return self.frequency_hz > 0.0

    def is_reliable(self, clarity_threshold: float) -> bool:
        return self.has_pitch and self.clarity >= clarity_threshold


NO_PITCH = PitchEstimate(frequency_hz=0.0, clarity=0.0, volume=0.0)


class PitchEstimator:
    """
    Time-domain autocorrelation pitch estimator for a single frame.

    Strategy:
    - Gate by RMS against the caller's sensitivity threshold.
    - Linear autocorrelation c[lag] = sum(x[i] * x[i + lag]).
    - Skip the zero-lag lobe, then take the strongest lag in
      [sr/max_hz, sr/min_hz].
    - Clarity is c[best] / c[0].

    Every degenerate input (empty, flat, non-finite, no positive peak)
    resolves to "no pitch" instead of raising.
    """

    def __init__(self, config: PitchEstimatorConfig | None = None) -> None:
        self._cfg = config or PitchEstimatorConfig()

    @property
    def config(self) -> PitchEstimatorConfig:
        return self._cfg

    def estimate(self, samples: np.ndarray, sample_rate: int, *, sensitivity: float) -> PitchEstimate:
        x = np.asarray(samples, dtype=np.float64).ravel()
        if x.size < 3 or sample_rate <= 0:
            return NO_PITCH
        if not bool(np.all(np.isfinite(x))):
            return NO_PITCH

        volume = float(np.sqrt(np.mean(np.square(x))))
        if volume < sensitivity:
            return PitchEstimate(frequency_hz=0.0, clarity=0.0, volume=volume)

        c = autocorrelate(x)
        c0 = float(c[0])
        if c0 <= 0.0:
            return PitchEstimate(frequency_hz=0.0, clarity=0.0, volume=volume)

        lag = _best_lag(c, float(sample_rate), self._cfg.min_hz, self._cfg.max_hz)
        if lag is None:
            return PitchEstimate(frequency_hz=0.0, clarity=0.0, volume=volume)

        clarity = float(max(0.0, min(1.0, float(c[lag]) / c0)))
        return PitchEstimate(
            frequency_hz=float(sample_rate) / float(lag),
            clarity=clarity,
            volume=volume,
        )


def autocorrelate(frame: np.ndarray) -> np.ndarray:
    x = np.asarray(frame, dtype=np.float64).ravel()
    n = int(x.size)
    if n == 0:
        return np.zeros(0, dtype=np.float64)
    # Zero-pad to >= 2n so the FFT product gives the linear (not circular) sum.
    n_fft = 1 << int(2 * n - 1).bit_length()
    spec = np.fft.rfft(x, n=n_fft)
    r = np.fft.irfft(spec.real**2 + spec.imag**2, n=n_fft)[:n]
    return r


def _best_lag(c: np.ndarray, sample_rate: float, min_hz: float, max_hz: float) -> int | None:
    n = int(c.size)
    min_lag = max(2, int(sample_rate / max_hz))
    max_lag = min(n - 2, int(np.ceil(sample_rate / min_hz)))
    if min_lag >= max_lag:
        return None

    # Walk down the zero-lag lobe; its tail otherwise beats every real period.
    start = min_lag
    while start < max_lag and c[start] > c[start + 1]:
        start += 1
    if start >= max_lag:
        return None

    seg = c[start : max_lag + 1]
    lag = int(np.argmax(seg)) + start
    if float(c[lag]) <= 0.0:
        return None
    return lag
