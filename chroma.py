"""
chordsense - Chroma extraction
Folds a linear magnitude spectrum onto the 12 pitch classes and smooths the
result over time with a dual-rate EMA.
"""

import math

import numpy as np

from frequency_utils import A4_HZ, frequency_to_midi, frequency_weight


class RingBuffer:
    """Fixed-capacity ring of equal-length float vectors, overwritten in place."""
    __slots__ = ('_data', '_index', '_count')

    def __init__(self, capacity: int, width: int = 12):
        self._data = np.zeros((max(1, int(capacity)), width), dtype=np.float64)
        self._index = 0
        self._count = 0

    @property
    def capacity(self) -> int:
        return self._data.shape[0]

    def __len__(self) -> int:
        return self._count

    def push(self, vec: np.ndarray) -> None:
        self._data[self._index] = vec
        self._index = (self._index + 1) % self.capacity
        self._count = min(self._count + 1, self.capacity)

    def values(self) -> np.ndarray:
        """Stored vectors, oldest first (a copy)."""
        if self._count < self.capacity:
            return self._data[:self._count].copy()
        return np.concatenate((self._data[self._index:], self._data[:self._index]))

    def latest(self) -> np.ndarray | None:
        if self._count == 0:
            return None
        return self._data[(self._index - 1) % self.capacity].copy()

    def clear(self) -> None:
        self._data.fill(0.0)
        self._index = 0
        self._count = 0


# Subharmonic passes: (divisor, weight). A partial at k*f also votes for f.
SUBHARMONIC_PASSES = ((2, 0.8), (3, 0.6))
# Share of the subharmonic energy mixed into the direct pitch-class energy
SUBHARMONIC_MIX = 0.6


def subharmonic_energy(
    magnitudes: np.ndarray,
    freqs: np.ndarray,
    mask: np.ndarray,
    min_fundamental_hz: float,
    tuning_hz: float = A4_HZ,
) -> np.ndarray:
    """Fold each in-band bin down to f/2 and f/3 and credit those pitch classes.

    Bins whose implied fundamental falls below ``min_fundamental_hz`` are
    skipped. Weights use the frequency curve at the implied fundamental.
    """
    energy = np.zeros(12, dtype=np.float64)
    band = magnitudes[mask]
    if band.size == 0:
        return energy
    band_freqs = freqs[mask]
    for divisor, weight in SUBHARMONIC_PASSES:
        fundamentals = band_freqs / divisor
        keep = (fundamentals >= min_fundamental_hz) & (band > 0.0)
        if not np.any(keep):
            continue
        f0 = fundamentals[keep]
        pcs = np.mod(np.rint(frequency_to_midi(f0, tuning_hz)).astype(np.int64), 12)
        energy += np.bincount(pcs, weights=band[keep] * weight * frequency_weight(f0), minlength=12)
    return energy


def pitch_class_energy(
    magnitudes: np.ndarray,
    freqs: np.ndarray,
    mask: np.ndarray,
    weight_table: np.ndarray | None = None,
    tuning_hz: float = A4_HZ,
    subharmonic_floor_hz: float | None = None,
) -> np.ndarray:
    """Accumulate linear magnitude per pitch class (index 0 = C).

    With a precomputed ``weight_table`` every bin is spread over the classes
    by its Gaussian cents weights; otherwise each in-band bin goes to the
    nearest semitone. When ``subharmonic_floor_hz`` is set the subharmonic
    passes are mixed in as well, so overtones reinforce their fundamental.
    """
    if weight_table is not None and weight_table.shape[0] == magnitudes.shape[0]:
        energy = magnitudes @ weight_table
    else:
        band = magnitudes[mask]
        if band.size == 0:
            return np.zeros(12, dtype=np.float64)
        band_freqs = freqs[mask]
        pcs = np.mod(np.rint(frequency_to_midi(band_freqs, tuning_hz)).astype(np.int64), 12)
        energy = np.bincount(pcs, weights=band * frequency_weight(band_freqs), minlength=12).astype(np.float64)

    if subharmonic_floor_hz is not None:
        energy = energy + SUBHARMONIC_MIX * subharmonic_energy(
            magnitudes, freqs, mask, subharmonic_floor_hz, tuning_hz)
    return energy


def normalize_chroma(raw: np.ndarray, compression: float = 1.0) -> np.ndarray | None:
    """Scale to a peak of 1 and compress the dynamic range; None for an empty vector."""
    peak = float(np.max(raw)) if raw.size else 0.0
    if not peak > 0.0:
        return None
    normed = np.clip(raw / peak, 0.0, 1.0)
    if compression != 1.0:
        normed = np.power(normed, compression)
    return normed


def bass_region_chroma(
    magnitudes: np.ndarray,
    freqs: np.ndarray,
    bass_max_freq: float,
    tuning_hz: float = A4_HZ,
) -> np.ndarray | None:
    """Pitch-class profile of the bins up to ``bass_max_freq``, peak-normalised.

    Bins are weighted by how likely they are to be fundamentals (flat up to
    150 Hz, exponential decay above). Returns None when the region is silent.
    """
    region = (freqs > 0.0) & (freqs <= bass_max_freq)
    band = magnitudes[region]
    if band.size == 0 or not np.any(band > 0.0):
        return None

    band_freqs = freqs[region]
    fundamental_weight = np.where(band_freqs <= 150.0, 1.2, np.exp(-(band_freqs - 150.0) / 100.0))
    pcs = np.mod(np.rint(frequency_to_midi(band_freqs, tuning_hz)).astype(np.int64), 12)
    profile = np.bincount(pcs, weights=band * fundamental_weight, minlength=12).astype(np.float64)

    peak = float(np.max(profile))
    if peak <= 0.0:
        return None
    return profile / peak


class ChromaState:
    """
    Dual-rate EMA of normalised chroma frames.

    The blend between the two averages follows signal stability, measured as
    the summed per-class variance of the last few normalised frames: a stable
    signal leans on the slow average (fast weight 0.3), an unstable one on the
    fast average (fast weight 0.7).
    """

    def __init__(self, history_size: int = 5):
        self.fast = np.zeros(12, dtype=np.float64)
        self.slow = np.zeros(12, dtype=np.float64)
        self.history = RingBuffer(history_size, 12)
        self.blended = np.zeros(12, dtype=np.float64)
        self.stability = 0.0

    def reset(self) -> None:
        self.fast.fill(0.0)
        self.slow.fill(0.0)
        self.blended.fill(0.0)
        self.history.clear()
        self.stability = 0.0

    def resize_history(self, history_size: int) -> None:
        if history_size != self.history.capacity:
            self.history = RingBuffer(history_size, 12)

    def measure_stability(self) -> float:
        """1.0 for identical frames, decaying towards 0 as the frames vary."""
        if len(self.history) < 3:
            return 0.0
        frames = self.history.values()
        total_variance = float(np.sum(np.var(frames, axis=0)))
        return math.exp(-total_variance * 10.0)

    def update(
        self,
        normed: np.ndarray,
        alpha_fast: float,
        alpha_slow: float,
        stability_threshold: float = 0.7,
    ) -> np.ndarray:
        self.fast += alpha_fast * (normed - self.fast)
        self.slow += alpha_slow * (normed - self.slow)

        self.history.push(normed)
        self.stability = self.measure_stability()

        fast_weight = 0.3 if self.stability > stability_threshold else 0.7
        np.multiply(self.fast, fast_weight, out=self.blended)
        self.blended += (1.0 - fast_weight) * self.slow
        return self.blended.copy()


class TuningEstimator:
    """Tracks how far the strongest partials sit from equal-tempered pitches.

    Deviations are averaged on the unit circle (a partial 49 cents sharp and one
    49 cents flat are close, not 98 cents apart) and smoothed with an EMA.
    """

    def __init__(self, alpha: float = 0.1, relative_threshold: float = 0.1):
        self.alpha = alpha
        self.relative_threshold = relative_threshold
        self._phasor = 0j
        self.offset_cents = 0.0

    def reset(self) -> None:
        self._phasor = 0j
        self.offset_cents = 0.0

    def update(self, magnitudes: np.ndarray, freqs: np.ndarray, mask: np.ndarray, tuning_hz: float = A4_HZ) -> float:
        band = magnitudes[mask]
        if band.size == 0:
            return self.offset_cents
        peak = float(np.max(band))
        if peak <= 0.0:
            return self.offset_cents

        strong = band >= peak * self.relative_threshold
        weights = band[strong]
        midi = frequency_to_midi(freqs[mask][strong], tuning_hz)
        deviation = midi - np.rint(midi)
        frame_phasor = complex(np.sum(weights * np.exp(2j * np.pi * deviation)) / np.sum(weights))

        self._phasor += self.alpha * (frame_phasor - self._phasor)
        if abs(self._phasor) > 1e-9:
            self.offset_cents = float(np.angle(self._phasor) / (2.0 * np.pi) * 100.0)
        return self.offset_cents
