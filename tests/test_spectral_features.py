import unittest

import numpy as np

from frequency_utils import band_mask
from spectral_features import SpectralFeatures, compute_spectral_features


class TestSpectralFeatures(unittest.TestCase):
    def setUp(self):
        self.freqs = np.arange(0.0, 1000.0, 10.0)
        self.mask = band_mask(self.freqs, 50.0, 900.0)

    def test_empty_band(self):
        features = compute_spectral_features(np.zeros(100), self.freqs, self.mask)
        self.assertEqual(features, SpectralFeatures())

    def test_two_equal_peaks(self):
        mags = np.zeros(100)
        mags[10] = 1.0  # 100 Hz
        mags[30] = 1.0  # 300 Hz
        features = compute_spectral_features(mags, self.freqs, self.mask)
        self.assertAlmostEqual(features.centroid, 200.0)
        self.assertAlmostEqual(features.spread, 100.0)
        self.assertAlmostEqual(features.clarity, 2.0 / 200.0)
        self.assertAlmostEqual(features.total_magnitude, 2.0)

    def test_clarity_is_capped(self):
        mags = np.zeros(100)
        mags[20] = 500.0
        features = compute_spectral_features(mags, self.freqs, self.mask)
        self.assertEqual(features.spread, 0.0)
        self.assertEqual(features.clarity, 1.0)

    def test_flatness(self):
        flat = compute_spectral_features(np.full(100, 0.01), self.freqs, self.mask)
        self.assertAlmostEqual(flat.flatness, 1.0, places=6)

        peaky = np.zeros(100)
        peaky[[26, 33, 39]] = 1.0
        sparse = compute_spectral_features(peaky, self.freqs, self.mask)
        self.assertLess(sparse.flatness, 0.01)

    def test_out_of_band_energy_ignored(self):
        mags = np.zeros(100)
        mags[95] = 1.0  # 950 Hz
        features = compute_spectral_features(mags, self.freqs, self.mask)
        self.assertEqual(features.total_magnitude, 0.0)


if __name__ == "__main__":
    unittest.main()
