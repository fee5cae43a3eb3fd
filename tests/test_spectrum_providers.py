import unittest

import numpy as np

from spectrum_providers import FrameBufferProvider


class TestFrameBufferProvider(unittest.TestCase):
    def test_reads_silence_before_first_frame(self):
        provider = FrameBufferProvider(fft_size=8)
        buffer = np.zeros(4)
        provider.fill(buffer)
        self.assertTrue(np.all(np.isneginf(buffer)))
        self.assertEqual(provider.rms(), 0.0)

    def test_push_and_fill(self):
        provider = FrameBufferProvider(fft_size=8)
        frame = np.array([-10.0, -20.0, -30.0, -40.0])
        provider.push(frame, rms=0.3)
        frame[0] = 0.0  # provider keeps its own copy
        buffer = np.zeros(4)
        provider.fill(buffer)
        np.testing.assert_array_equal(buffer, [-10.0, -20.0, -30.0, -40.0])
        self.assertEqual(provider.rms(), 0.3)

    def test_push_of_new_size_changes_fft_size(self):
        provider = FrameBufferProvider(fft_size=8)
        provider.push(np.zeros(16))
        self.assertEqual(provider.fft_size, 32)
        stale = np.zeros(4)
        provider.fill(stale)
        self.assertTrue(np.all(np.isneginf(stale)))

    def test_set_fft_size_drops_stale_frame(self):
        provider = FrameBufferProvider(fft_size=8)
        provider.push(np.zeros(4))
        provider.set_fft_size(16)
        self.assertEqual(provider.fft_size, 16)
        buffer = np.zeros(8)
        provider.fill(buffer)
        self.assertTrue(np.all(np.isneginf(buffer)))

        provider.push(np.full(8, -6.0))
        provider.set_fft_size(16)  # same size keeps the frame
        provider.fill(buffer)
        np.testing.assert_array_equal(buffer, np.full(8, -6.0))

    def test_clear(self):
        provider = FrameBufferProvider(fft_size=8)
        provider.push(np.zeros(4))
        provider.clear()
        buffer = np.zeros(4)
        provider.fill(buffer)
        self.assertTrue(np.all(np.isneginf(buffer)))


if __name__ == "__main__":
    unittest.main()
