"""
chordsense - Spectrum providers
Capabilities the detector pulls from on every update, plus a push-fed
implementation for hosts that compute their own FFT.
"""

import threading
from typing import Optional, Protocol

import numpy as np

from logging_utils import log_event


class SpectrumProvider(Protocol):
    """Anything that can fill a buffer of fft_size / 2 dB values, low to high."""
    fft_size: int

    def fill(self, buffer: np.ndarray) -> None: ...


class RmsProvider(Protocol):
    def __call__(self) -> float: ...


class FrameBufferProvider:
    """
    Holds the latest dB frame pushed by a host audio thread.

    ``push`` may run on a different thread than the detector; the frame is
    swapped under a lock and copied out in ``fill``. Pushing a frame of a new
    length changes ``fft_size`` so the detector resizes on its next update.
    Until a frame arrives the provider reads as silence.
    """

    def __init__(self, fft_size: int = 16384, rms: Optional[float] = None):
        self._lock = threading.Lock()
        self._fft_size = int(fft_size)
        self._frame: Optional[np.ndarray] = None
        self._rms = rms

    @property
    def fft_size(self) -> int:
        with self._lock:
            return self._fft_size

    def push(self, frame_db, rms: Optional[float] = None) -> None:
        """Store ``frame_db`` (length fft_size / 2) as the current frame."""
        frame = np.asarray(frame_db, dtype=np.float64).copy()
        with self._lock:
            new_size = 2 * frame.shape[0]
            if new_size != self._fft_size:
                log_event("DEBUG", "Spectrum", "Provider frame size changed", old=self._fft_size, new=new_size)
                self._fft_size = new_size
            self._frame = frame
            if rms is not None:
                self._rms = float(rms)

    def set_fft_size(self, fft_size: int) -> None:
        """Ask the host for frames of a new size; the stale frame is dropped."""
        fft_size = int(fft_size)
        with self._lock:
            if fft_size == self._fft_size:
                return
            log_event("DEBUG", "Spectrum", "Provider FFT size requested", old=self._fft_size, new=fft_size)
            self._fft_size = fft_size
            self._frame = None

    def fill(self, buffer: np.ndarray) -> None:
        with self._lock:
            frame = self._frame
        if frame is None or frame.shape[0] != buffer.shape[0]:
            buffer.fill(-np.inf)
            return
        buffer[:] = frame

    def rms(self) -> float:
        """Latest pushed loudness (0.0 before any value is pushed)."""
        with self._lock:
            return 0.0 if self._rms is None else self._rms

    def clear(self) -> None:
        with self._lock:
            self._frame = None
