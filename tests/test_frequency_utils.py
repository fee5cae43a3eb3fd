import unittest

import numpy as np

from frequency_utils import (
    PITCH_CLASS_NAMES,
    band_mask,
    bin_frequencies,
    bin_hz,
    build_pitch_class_weights,
    db_to_magnitude,
    frequency_to_midi,
    frequency_weight,
    midi_to_frequency,
    pitch_class_to_name,
)


class TestFrequencyUtils(unittest.TestCase):
    def test_pitch_class_names_wrap(self):
        self.assertEqual(pitch_class_to_name(0), "C")
        self.assertEqual(pitch_class_to_name(12), "C")
        self.assertEqual(pitch_class_to_name(-1), "B")
        self.assertEqual(pitch_class_to_name(-13), "B")
        self.assertEqual([pitch_class_to_name(i) for i in range(12)], PITCH_CLASS_NAMES)

    def test_bin_hz(self):
        self.assertAlmostEqual(bin_hz(44100.0, 8192), 44100.0 / 16384)
        self.assertEqual(bin_hz(44100.0, 0), 0.0)
        freqs = bin_frequencies(1000.0, 10)
        self.assertEqual(freqs[0], 0.0)
        self.assertAlmostEqual(freqs[4], 200.0)

    def test_midi_conversion(self):
        self.assertAlmostEqual(float(frequency_to_midi(440.0)), 69.0)
        self.assertAlmostEqual(float(frequency_to_midi(432.0, reference_hz=432.0)), 69.0)
        self.assertAlmostEqual(float(midi_to_frequency(60)), 261.6255653, places=5)

    def test_db_to_magnitude(self):
        out = db_to_magnitude(np.array([0.0, -20.0, -np.inf, np.nan]))
        np.testing.assert_allclose(out, [1.0, 0.1, 0.0, 0.0])

    def test_frequency_weight_curve(self):
        self.assertAlmostEqual(float(frequency_weight(60.0)), 1.2)
        self.assertAlmostEqual(float(frequency_weight(100.0)), 1.2)
        self.assertAlmostEqual(float(frequency_weight(400.0)), 1.0)
        self.assertAlmostEqual(float(frequency_weight(1600.0)), 0.9)
        self.assertAlmostEqual(float(frequency_weight(3600.0)), 0.9 * np.exp(-1.0))
        weights = frequency_weight(np.array([150.0, 300.0, 1000.0]))
        self.assertTrue(np.all(np.diff(weights) < 0))

    def test_band_mask_excludes_dc(self):
        freqs = bin_frequencies(1000.0, 10)
        mask = band_mask(freqs, 0.0, 200.0)
        self.assertFalse(mask[0])
        self.assertEqual(int(np.count_nonzero(mask)), 4)

    def test_pitch_class_weight_table(self):
        table = build_pitch_class_weights(8192, 44100.0, 60.0, 3000.0)
        self.assertEqual(table.shape, (8192, 12))
        bin_440 = int(round(440.0 / bin_hz(44100.0, 8192)))
        self.assertEqual(int(np.argmax(table[bin_440])), 9)
        self.assertTrue(np.all(table[0] == 0.0))
        bin_5k = int(round(5000.0 / bin_hz(44100.0, 8192)))
        self.assertTrue(np.all(table[bin_5k] == 0.0))

    def test_weight_table_follows_reference(self):
        # A4 tuned to 415 Hz sits where G#4 is at 440
        table = build_pitch_class_weights(8192, 44100.0, 60.0, 3000.0, tuning_hz=415.3)
        bin_415 = int(round(415.3 / bin_hz(44100.0, 8192)))
        self.assertEqual(int(np.argmax(table[bin_415])), 9)


if __name__ == "__main__":
    unittest.main()
