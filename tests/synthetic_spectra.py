"""Synthetic dB spectra and stand-in collaborators shared by the detector tests."""

import numpy as np

SAMPLE_RATE = 44100.0
FFT_SIZE = 16384

# Semitone offsets above the root
MAJOR = (0, 4, 7)
MINOR = (0, 3, 7)
MAJOR_SIXTH = (0, 4, 7, 9)
MINOR_SIXTH = (0, 3, 7, 9)


def note_hz(midi: float) -> float:
    return 440.0 * 2.0 ** ((midi - 69.0) / 12.0)


def chord_partials(root_pc: int, intervals, octave: int = 4, db: float = 0.0) -> list:
    """(frequency, dB) pairs for a chord voiced upwards from ``root_pc`` in ``octave``."""
    root_midi = 12 * (octave + 1) + root_pc
    return [(note_hz(root_midi + i), db) for i in intervals]


def spectrum_db(partials, fft_size: int = FFT_SIZE, sample_rate: float = SAMPLE_RATE,
                floor_db: float = -np.inf) -> np.ndarray:
    """A fft_size / 2 dB frame with each partial in its nearest bin and ``floor_db`` elsewhere."""
    num_bins = fft_size // 2
    bin_width = sample_rate / (2 * num_bins)
    frame = np.full(num_bins, floor_db, dtype=np.float64)
    for freq, db in partials:
        frame[int(round(freq / bin_width))] = db
    return frame


class StaticProvider:
    """Spectrum provider returning whatever frame the test sets."""

    def __init__(self, frame=None, fft_size: int = FFT_SIZE):
        self.fft_size = fft_size
        self.frame = frame if frame is not None else np.full(fft_size // 2, -np.inf)
        self.fill_calls = 0
        self.buffer_sizes = []

    def set_frame(self, frame) -> None:
        self.frame = np.asarray(frame, dtype=np.float64)
        self.fft_size = 2 * self.frame.shape[0]

    def fill(self, buffer) -> None:
        self.fill_calls += 1
        self.buffer_sizes.append(buffer.shape[0])
        buffer[:] = self.frame


class FakeClock:
    def __init__(self, start_ms: float = 1000.0):
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class ManualScheduler:
    """Records scheduled callbacks; the test decides when they run."""

    def __init__(self):
        self.pending = []
        self.cancelled = []

    def schedule(self, delay_s, fn):
        handle = [delay_s, fn]
        self.pending.append(handle)
        return handle

    def cancel(self, handle) -> None:
        self.cancelled.append(handle)
        self.pending = [h for h in self.pending if h is not handle]

    def run_next(self) -> None:
        _, fn = self.pending.pop(0)
        fn()


# Options that let a single clean frame lock a chord
PERMISSIVE = dict(
    conf_enter=0.0,
    conf_exit=0.0,
    hold_ms_enter=0.0,
    hold_ms_exit=0.0,
    required_stable_frames=1,
)
