import numpy as np

PITCH_CLASS_NAMES = ['C', 'C#', 'D', 'D#', 'E', 'F', 'F#', 'G', 'G#', 'A', 'A#', 'B']
A4_HZ = 440.0

# Anchor points of the frequency weighting curve (Hz, weight), interpolated
# on a log-frequency axis. Above the last anchor the curve decays exponentially.
_WEIGHT_ANCHORS_HZ = np.array([100.0, 200.0, 400.0, 800.0, 1600.0])
_WEIGHT_ANCHORS = np.array([1.2, 1.1, 1.0, 0.95, 0.9])
_ROLLOFF_HZ = 2000.0


def pitch_class_to_name(pc: int) -> str:
    """Name of a pitch class; any integer is accepted (12 -> C, -1 -> B)."""
    return PITCH_CLASS_NAMES[int(pc) % 12]


def bin_hz(sample_rate: float, num_bins: int) -> float:
    """Width of one FFT bin for a half-spectrum of ``num_bins`` bins."""
    if num_bins <= 0:
        return 0.0
    return sample_rate / (2 * num_bins)


def bin_frequencies(sample_rate: float, num_bins: int) -> np.ndarray:
    """Center frequency (Hz) of every bin, low to high."""
    return np.arange(num_bins, dtype=np.float64) * bin_hz(sample_rate, num_bins)


def frequency_to_midi(freq, reference_hz: float = A4_HZ):
    """Continuous MIDI pitch of ``freq`` (scalar or array) for A4 = ``reference_hz``."""
    return 69.0 + 12.0 * np.log2(np.asarray(freq, dtype=np.float64) / reference_hz)


def midi_to_frequency(midi, reference_hz: float = A4_HZ):
    return reference_hz * np.power(2.0, (np.asarray(midi, dtype=np.float64) - 69.0) / 12.0)


def db_to_magnitude(db: np.ndarray, out: np.ndarray | None = None) -> np.ndarray:
    """Convert dB values to linear magnitude (10^(dB/20)); -inf maps to 0."""
    clean = np.nan_to_num(db, nan=-np.inf, posinf=0.0, neginf=-np.inf)
    return np.power(10.0, clean / 20.0, out=out)


def frequency_weight(freq):
    """Smooth weighting curve: slight boost below 200 Hz, gentle rolloff above 1.6 kHz."""
    f = np.maximum(np.asarray(freq, dtype=np.float64), 1e-6)
    weights = np.interp(np.log2(f), np.log2(_WEIGHT_ANCHORS_HZ), _WEIGHT_ANCHORS)
    high = f > _WEIGHT_ANCHORS_HZ[-1]
    if np.any(high):
        weights = np.where(
            high,
            _WEIGHT_ANCHORS[-1] * np.exp(-(f - _WEIGHT_ANCHORS_HZ[-1]) / _ROLLOFF_HZ),
            weights,
        )
    return weights


def band_mask(freqs: np.ndarray, freq_low: float, freq_high: float) -> np.ndarray:
    """Boolean mask of bins inside [freq_low, freq_high], excluding the DC bin."""
    mask = (freqs >= freq_low) & (freqs <= freq_high)
    if len(mask) > 0:
        mask[0] = False
    return mask


def build_pitch_class_weights(
    num_bins: int,
    sample_rate: float,
    min_freq: float,
    max_freq: float,
    tuning_hz: float = A4_HZ,
    sigma_cents: float = 35.0,
) -> np.ndarray:
    """Precompute a (num_bins, 12) table spreading each bin over the pitch classes.

    Each in-range bin contributes to every pitch class with a Gaussian weight of
    its cents distance to that class center (wrapped to +/-600 cents), scaled by
    ``frequency_weight``. Out-of-range bins get all-zero rows.
    """
    table = np.zeros((num_bins, 12), dtype=np.float64)
    freqs = bin_frequencies(sample_rate, num_bins)
    mask = band_mask(freqs, min_freq, max_freq)
    if not np.any(mask):
        return table

    in_range = freqs[mask]
    midi = frequency_to_midi(in_range, tuning_hz)
    cents = (midi[:, None] - np.arange(12)[None, :]) * 100.0
    # Distance to the nearest octave-equivalent of each class center
    cents = (cents + 600.0) % 1200.0 - 600.0
    gauss = np.exp(-0.5 * (cents / sigma_cents) ** 2)
    table[mask] = gauss * frequency_weight(in_range)[:, None]
    return table
