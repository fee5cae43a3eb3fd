"""Per-frame spectral descriptors used for gating and confidence."""

from dataclasses import dataclass

import numpy as np
from scipy.stats import gmean

# Added to magnitudes before the geometric mean so empty bins do not force it to 0 via log(0)
_FLATNESS_EPS = 1e-12


@dataclass
class SpectralFeatures:
    centroid: float = 0.0         # Energy-weighted mean frequency (Hz)
    spread: float = 0.0           # Energy-weighted std-dev around the centroid (Hz)
    clarity: float = 0.0          # min(1, total / (spread + 100))
    flatness: float = 0.0         # Geometric / arithmetic mean (1.0 = white noise)
    total_magnitude: float = 0.0  # Sum of in-band linear magnitudes


def compute_spectral_features(magnitudes: np.ndarray, freqs: np.ndarray, mask: np.ndarray) -> SpectralFeatures:
    """Describe the in-band part of a linear magnitude spectrum.

    ``mask`` selects the bins inside the analysis band. A band with no energy
    yields an all-zero result.
    """
    band = magnitudes[mask]
    if band.size == 0:
        return SpectralFeatures()

    total = float(np.sum(band))
    if total <= 0.0:
        return SpectralFeatures()

    band_freqs = freqs[mask]
    centroid = float(np.dot(band, band_freqs) / total)
    variance = float(np.dot(band, band_freqs * band_freqs) / total) - centroid * centroid
    spread = float(np.sqrt(max(0.0, variance)))
    clarity = min(1.0, total / (spread + 100.0))

    arith = total / band.size
    flatness = float(gmean(band + _FLATNESS_EPS)) / (arith + _FLATNESS_EPS)
    flatness = max(0.0, min(1.0, flatness))

    return SpectralFeatures(
        centroid=centroid,
        spread=spread,
        clarity=clarity,
        flatness=flatness,
        total_magnitude=total,
    )
