"""
chordsense - Chord Detector
Turns a stream of dB magnitude spectra into debounced chord-change events.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional

import numpy as np

from chord_templates import (
    TEMPLATE_BANK,
    DetectionCandidate,
    chord_category,
    detect_extensions,
    detect_inversion,
    match_templates,
)
from chroma import ChromaState, TuningEstimator, bass_region_chroma, normalize_chroma, pitch_class_energy
from config import (
    CHORD_MODE_FFT_SIZES,
    CHORD_MODE_PRESETS,
    ChordDetectorConfig,
    ChordMode,
    ConfigError,
    DEFAULT_CONFIG,
    clarity_floor,
    config_from_dict,
    normalize_options,
    validate_config,
)
from consensus import DetectionHistory
from frequency_utils import (
    band_mask,
    bin_frequencies,
    build_pitch_class_weights,
    db_to_magnitude,
    pitch_class_to_name,
)
from logging_utils import is_debug_enabled, log_event
from scheduling import Scheduler, ThreadingScheduler, monotonic_ms
from spectral_features import SpectralFeatures, compute_spectral_features

DEFAULT_FFT_SIZE = 16384

# Options that invalidate the precomputed bin tables
_TABLE_FIELDS = ('sample_rate', 'min_freq', 'max_freq', 'tuning_hz', 'chroma_sigma_cents', 'use_tuning_map')


@dataclass
class ChordEvent:
    """A chord change pushed to the on_chord callback (name is None when the chord clears)"""
    name: Optional[str]             # e.g. "C", "F#m7", "C/E"
    confidence: float               # 0.0-1.0
    quality: Optional[str] = None   # Suffix after the root ("", "m", "Maj7", ...)
    root: Optional[str] = None      # Root note name
    bass: Optional[str] = None      # Bass note name for inversions
    inversion: bool = False
    harmonic_strength: float = 0.0
    spectral_clarity: float = 0.0
    category: Optional[str] = None  # Display family (major, minor, seventh, ...)
    timestamp_ms: float = 0.0


@dataclass
class Diagnostics:
    """Read-only snapshot of the detector's internal levels"""
    noise_floor: float = 0.0
    active_bins: int = 0
    confidence: float = 0.0
    spectral_clarity: float = 0.0
    harmonic_strength: float = 0.0
    bass_strength: float = 0.0
    adaptive_threshold: float = 0.0
    dynamic_gate: float = 0.0
    tuning_offset_cents: float = 0.0
    spectral_centroid: float = 0.0
    spectral_spread: float = 0.0
    spectral_flatness: float = 0.0
    stability: float = 0.0
    stable_frames: int = 0


class ChordDetector:
    """
    Frame-driven chord recognizer.

    Each ``update`` pulls one dB frame from the spectrum provider, folds it
    into a smoothed chroma vector, matches it against the template bank and
    runs the result through an entry/exit hysteresis. ``on_chord`` is called
    synchronously from ``update``, at most once per call, only when the held
    chord changes.

    ``update`` can be driven by the host or by the built-in capped-rate loop
    (``start`` / ``stop``), which runs on the injected scheduler.
    """

    def __init__(
        self,
        provider,
        config: Optional[ChordDetectorConfig] = None,
        get_rms: Optional[Callable[[], float]] = None,
        on_chord: Optional[Callable[[ChordEvent], None]] = None,
        clock: Optional[Callable[[], float]] = None,
        scheduler: Optional[Scheduler] = None,
        **options: Any,
    ):
        cfg = config or DEFAULT_CONFIG
        # Option bags may carry the loudness provider under its camelCase name
        rms_option = options.pop('getRms', None)
        if get_rms is None:
            get_rms = rms_option
        if options:
            cfg = config_from_dict(options, cfg)
        self._cfg = cfg
        self._provider = provider
        self._get_rms = get_rms
        self._on_chord: Callable[[ChordEvent], None] = on_chord or (lambda event: None)
        self._clock = clock or monotonic_ms
        self._scheduler = scheduler or ThreadingScheduler()

        # update() and reconfigure() may run on different threads
        self._lock = threading.RLock()

        # Spectral buffers (sized from the provider)
        self._fft_size = int(getattr(provider, 'fft_size', 0) or DEFAULT_FFT_SIZE)
        self._spectral_buffer = np.empty(0)
        self._magnitudes = np.empty(0)
        self._freqs = np.empty(0)
        self._mask = np.empty(0, dtype=bool)
        self._weight_table: Optional[np.ndarray] = None
        self._allocate_buffers()

        # Smoothed analysis state
        self._chroma = ChromaState(cfg.chroma_history_size)
        self._tuning = TuningEstimator()
        self._detections = self._new_detection_history(cfg)
        self._bass_history = np.zeros(12, dtype=np.float64)
        self._bass_seen = False
        self._features = SpectralFeatures()

        # Emission state
        self._held: Optional[DetectionCandidate] = None
        self._last_change_ms: Optional[float] = None
        self._stable_count = 0
        self._challenger: Optional[str] = None
        self._challenger_frames = 0
        self._weak_since: Optional[float] = None
        self._silent_since: Optional[float] = None
        self._quiet_frames = 0
        self._confidence_history: deque = deque(maxlen=cfg.confidence_history_size)

        # Diagnostics
        self._noise_floor = 0.0
        self._dynamic_gate = 0.04
        self._active_bins = 0
        self._confidence = 0.0
        self._spectral_clarity = 0.0
        self._harmonic_strength = 0.0
        self._bass_strength = 0.0
        self._adaptive_threshold = cfg.conf_enter
        self._frame_count = 0

        # Self-driven loop
        self._loop_lock = threading.Lock()
        self._running = False
        self._timer_handle = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def config(self) -> ChordDetectorConfig:
        return self._cfg

    @property
    def current_chord(self) -> Optional[str]:
        held = self._held
        return held.name if held is not None else None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def fft_size(self) -> int:
        return self._fft_size

    @property
    def spectral_buffer(self) -> np.ndarray:
        """The dB frame buffer, refreshed in place on every update"""
        return self._spectral_buffer

    def set_on_chord(self, callback: Optional[Callable[[ChordEvent], None]]) -> None:
        self._on_chord = callback or (lambda event: None)

    def get_chroma(self) -> np.ndarray:
        """Copy of the last smoothed chroma vector (index 0 = C)."""
        return self._chroma.blended.copy()

    def get_diagnostics(self) -> Diagnostics:
        features = self._features
        return Diagnostics(
            noise_floor=self._noise_floor,
            active_bins=self._active_bins,
            confidence=self._confidence,
            spectral_clarity=self._spectral_clarity,
            harmonic_strength=self._harmonic_strength,
            bass_strength=self._bass_strength,
            adaptive_threshold=self._adaptive_threshold,
            dynamic_gate=self._dynamic_gate,
            tuning_offset_cents=self._tuning.offset_cents,
            spectral_centroid=features.centroid,
            spectral_spread=features.spread,
            spectral_flatness=features.flatness,
            stability=self._chroma.stability,
            stable_frames=self._stable_count,
        )

    def reconfigure(self, partial: Optional[Dict[str, Any]] = None, **options: Any) -> ChordDetectorConfig:
        """
        Validate and swap in a new config snapshot.

        Accepts the same option names as the constructor. Unknown names or
        invalid values raise ConfigError and keep the current snapshot.
        """
        bag = dict(partial or {})
        bag.update(options)
        known, unknown = normalize_options(bag)
        if unknown:
            raise ConfigError(f"Unknown option(s): {', '.join(sorted(unknown))}")

        with self._lock:
            old = self._cfg
            new = replace(old, **known)
            validate_config(new)
            self._cfg = new

            if any(getattr(old, name) != getattr(new, name) for name in _TABLE_FIELDS):
                self._build_analysis_tables()
            self._chroma.resize_history(new.chroma_history_size)
            if new.confidence_history_size != old.confidence_history_size:
                self._confidence_history = deque(self._confidence_history, maxlen=new.confidence_history_size)
            if (new.detection_history_size, new.consensus_window, new.consensus_decay,
                    new.consensus_min_weight, new.consensus_margin) != (
                    old.detection_history_size, old.consensus_window, old.consensus_decay,
                    old.consensus_min_weight, old.consensus_margin):
                self._detections = self._new_detection_history(new)

        changed = {k: v for k, v in known.items() if getattr(old, k) != v}
        log_event("INFO", "Config", "Reconfigured", **changed)
        return new

    def apply_mode(self, mode) -> ChordDetectorConfig:
        """Switch to one of the ChordMode quality presets."""
        mode = ChordMode(mode)
        log_event("INFO", "Config", "Chord mode", mode=mode.name)
        new = self.reconfigure(CHORD_MODE_PRESETS[mode])
        # The buffers follow on the next update once the provider reports the new size
        set_fft_size = getattr(self._provider, "set_fft_size", None)
        if callable(set_fft_size):
            set_fft_size(CHORD_MODE_FFT_SIZES[mode])
        return new

    def reset(self) -> None:
        """Forget all smoothed and held state without emitting an event."""
        with self._lock:
            cfg = self._cfg
            self._chroma.reset()
            self._tuning.reset()
            self._detections.clear()
            self._bass_history.fill(0.0)
            self._bass_seen = False
            self._features = SpectralFeatures()
            self._held = None
            self._last_change_ms = None
            self._stable_count = 0
            self._challenger = None
            self._challenger_frames = 0
            self._weak_since = None
            self._silent_since = None
            self._quiet_frames = 0
            self._confidence_history.clear()
            self._noise_floor = 0.0
            self._dynamic_gate = 0.04
            self._bass_strength = 0.0
            self._adaptive_threshold = cfg.conf_enter
            self._reset_diagnostics()

    def start(self) -> None:
        """Drive update() at most max_fps times per second until stop()."""
        with self._loop_lock:
            if self._running:
                return
            self._running = True
            self._timer_handle = self._scheduler.schedule(0.0, self._tick)
        log_event("INFO", "Detector", "Started", max_fps=self._cfg.max_fps)

    def stop(self) -> None:
        """Cancel the loop. Safe before start() and when called repeatedly."""
        with self._loop_lock:
            if not self._running:
                return
            self._running = False
            handle, self._timer_handle = self._timer_handle, None
        self._scheduler.cancel(handle)
        # Wait out a frame already in flight; later ticks see _running under _lock
        with self._lock:
            pass
        log_event("INFO", "Detector", "Stopped", frames=self._frame_count)

    def update(self) -> Optional[ChordEvent]:
        """Process one frame. Returns the emitted event, if any."""
        with self._lock:
            return self._process_frame()

    # ------------------------------------------------------------------
    # Frame pipeline
    # ------------------------------------------------------------------

    def _process_frame(self) -> Optional[ChordEvent]:
        provider = self._provider
        if provider is None:
            return None
        cfg = self._cfg
        now = self._clock()
        self._frame_count += 1

        # Resize before anything reads the buffer
        self._sync_fft_size(provider)

        if self._get_rms is not None:
            rms = float(self._get_rms())
            if rms < cfg.rms_gate:
                self._quiet_frames += 1
                if self._quiet_frames >= cfg.quiet_frames_max:
                    event = self._handle_silence(now)
                    self._reset_diagnostics()
                    return event
                return None
            self._quiet_frames = 0

        provider.fill(self._spectral_buffer)
        db_to_magnitude(self._spectral_buffer, out=self._magnitudes)
        mags = self._magnitudes

        features = compute_spectral_features(mags, self._freqs, self._mask)
        self._features = features
        self._spectral_clarity = features.clarity

        raw = pitch_class_energy(
            mags, self._freqs, self._mask,
            self._weight_table if cfg.use_tuning_map else None,
            cfg.tuning_hz,
            subharmonic_floor_hz=cfg.min_freq if cfg.enable_harmonic_analysis else None,
        )
        normed = normalize_chroma(raw, cfg.chroma_compression)
        if normed is None:
            event = self._handle_silence(now)
            self._reset_diagnostics()
            return event

        if cfg.estimate_tuning:
            self._tuning.update(mags, self._freqs, self._mask, cfg.tuning_hz)

        chroma = self._chroma.update(normed, cfg.chroma_alpha_fast, cfg.chroma_alpha_slow, cfg.stability_threshold)
        total = float(np.sum(chroma))

        # Activity gate
        self._noise_floor += cfg.noise_floor_alpha * (total - self._noise_floor)
        self._dynamic_gate = max(0.03, self._noise_floor * 1.5) / max(0.5, features.clarity)
        fail_energy = not cfg.disable_energy_gate and total < self._dynamic_gate
        min_clarity = clarity_floor(cfg, self._get_rms is not None)
        fail_clarity = min_clarity > 0 and features.clarity < min_clarity
        fail_flatness = cfg.max_spectral_flatness > 0 and features.flatness > cfg.max_spectral_flatness
        if fail_energy or fail_clarity or fail_flatness:
            event = self._handle_silence(now)
            self._reset_diagnostics()
            return event
        self._silent_since = None

        self._active_bins = int(np.count_nonzero(chroma > total * cfg.harmonic_threshold))
        self._log_levels(cfg, total)
        if self._active_bins < 2:
            self._confidence = 0.0
            return self._handle_weak_frame(now, cfg, decrement=2)

        if cfg.enable_bass_bias or cfg.inversion_detection:
            self._update_bass(mags, cfg)
        enhanced = self._apply_bass_bias(chroma, cfg)

        candidate = match_templates(enhanced, TEMPLATE_BANK, features.clarity, cfg.enable_harmonic_analysis)
        if candidate is None:
            self._confidence = 0.0
            return self._handle_weak_frame(now, cfg)
        if cfg.enable_advanced_qualities:
            candidate = detect_extensions(enhanced, candidate)
        if cfg.inversion_detection and self._bass_seen:
            candidate = detect_inversion(candidate, self._bass_history, cfg.inversion_bass_ratio, cfg.inversion_penalty)
        if cfg.enable_consensus:
            self._detections.push(now, candidate)
            candidate = self._detections.choose(candidate)

        self._confidence = candidate.confidence
        self._harmonic_strength = candidate.harmonic_strength
        enter_threshold = self._update_adaptive_threshold(candidate, cfg)
        exit_threshold = max(0.0, enter_threshold - (cfg.conf_enter - cfg.conf_exit))
        return self._advance(candidate, now, enter_threshold, exit_threshold, cfg)

    def _update_bass(self, mags: np.ndarray, cfg: ChordDetectorConfig) -> None:
        profile = bass_region_chroma(mags, self._freqs, cfg.bass_max_freq, cfg.tuning_hz)
        if profile is None:
            return
        self._bass_history += cfg.bass_alpha * (profile - self._bass_history)
        self._bass_seen = True
        self._bass_strength = float(np.max(self._bass_history))

    def _apply_bass_bias(self, chroma: np.ndarray, cfg: ChordDetectorConfig) -> np.ndarray:
        """Boost the dominant bass pitch class by a fraction of the chroma peak."""
        if not cfg.enable_bass_bias or not self._bass_seen:
            return chroma
        dominant = int(np.argmax(self._bass_history))
        strength = float(self._bass_history[dominant])
        if strength <= cfg.bass_min_strength:
            return chroma
        biased = chroma.copy()
        biased[dominant] += cfg.bass_bias * min(1.0, strength * 2.0) * float(np.max(chroma))
        return biased

    def _update_adaptive_threshold(self, candidate: DetectionCandidate, cfg: ChordDetectorConfig) -> float:
        adjustment = 0.0
        # Many active classes = ambiguous signal
        if self._active_bins > 6:
            adjustment += 0.05
        if self._spectral_clarity > 0.8 and candidate.harmonic_strength > 0.7:
            adjustment -= 0.08
        history = self._confidence_history
        if len(history) > 5 and sum(history) / len(history) > 0.6:
            adjustment -= 0.03

        low = min(cfg.adaptive_threshold_min, cfg.conf_enter)
        high = max(cfg.adaptive_threshold_max, cfg.conf_enter)
        self._adaptive_threshold = max(low, min(high, cfg.conf_enter + adjustment))
        return self._adaptive_threshold

    @staticmethod
    def _required_frames(candidate: DetectionCandidate, cfg: ChordDetectorConfig) -> int:
        needed = cfg.required_stable_frames
        if candidate.confidence > 0.8 and candidate.harmonic_strength > 0.7:
            return max(1, needed - 2)
        if candidate.confidence > 0.65:
            return min(needed, max(2, needed - 1))
        return needed

    # ------------------------------------------------------------------
    # Hysteresis
    # ------------------------------------------------------------------

    def _advance(
        self,
        candidate: DetectionCandidate,
        now: float,
        enter_threshold: float,
        exit_threshold: float,
        cfg: ChordDetectorConfig,
    ) -> Optional[ChordEvent]:
        name = candidate.name
        held = self._held

        if held is not None and name == held.name:
            if candidate.confidence >= exit_threshold:
                self._stable_count = min(self._stable_count + 1, cfg.required_stable_frames)
                self._weak_since = None
                self._challenger = None
                self._challenger_frames = 0
                self._confidence_history.append(candidate.confidence)
                return None
            return self._handle_weak_frame(now, cfg)

        if candidate.confidence >= enter_threshold:
            if name == self._challenger:
                self._challenger_frames += 1
            else:
                self._challenger = name
                self._challenger_frames = 1
            if held is not None:
                # Incumbent loses ground but is not evicted until the challenger is stable
                self._stable_count = max(0, self._stable_count - 1)
            if self._challenger_frames >= self._required_frames(candidate, cfg) and self._hold_elapsed(now, cfg):
                return self._set_chord(candidate, now, cfg)
            return None

        self._challenger_frames = max(0, self._challenger_frames - 1)
        if held is not None:
            return self._handle_weak_frame(now, cfg)
        return None

    def _hold_elapsed(self, now: float, cfg: ChordDetectorConfig) -> bool:
        return self._last_change_ms is None or (now - self._last_change_ms) > cfg.hold_ms_enter

    def _handle_weak_frame(self, now: float, cfg: ChordDetectorConfig, decrement: int = 1) -> Optional[ChordEvent]:
        self._stable_count = max(0, self._stable_count - decrement)
        if self._held is None:
            self._challenger_frames = max(0, self._challenger_frames - decrement)
            return None
        if self._weak_since is None:
            self._weak_since = now
        if now - self._weak_since > cfg.hold_ms_exit:
            return self._clear_chord(now)
        return None

    def _handle_silence(self, now: float) -> Optional[ChordEvent]:
        self._challenger = None
        self._challenger_frames = 0
        if self._held is None:
            return None
        if self._silent_since is None:
            self._silent_since = now
        if now - self._silent_since > self._cfg.hold_ms_exit * 1.5:
            return self._clear_chord(now)
        return None

    def _set_chord(self, candidate: DetectionCandidate, now: float, cfg: ChordDetectorConfig) -> ChordEvent:
        self._held = candidate
        self._last_change_ms = now
        self._stable_count = cfg.required_stable_frames
        self._challenger = None
        self._challenger_frames = 0
        self._weak_since = None
        self._silent_since = None
        self._confidence_history.clear()
        self._confidence_history.append(candidate.confidence)

        name = candidate.name
        event = ChordEvent(
            name=name,
            confidence=candidate.confidence,
            quality=candidate.quality,
            root=pitch_class_to_name(candidate.root),
            bass=pitch_class_to_name(candidate.bass) if candidate.inversion and candidate.bass is not None else None,
            inversion=candidate.inversion,
            harmonic_strength=candidate.harmonic_strength,
            spectral_clarity=self._spectral_clarity,
            category=chord_category(name),
            timestamp_ms=now,
        )
        log_event("INFO", "Chord", "Chord set", name=name, confidence=f"{candidate.confidence:.2f}",
                  consensus=candidate.consensus)
        self._on_chord(event)
        return event

    def _clear_chord(self, now: float) -> Optional[ChordEvent]:
        if self._held is None:
            return None
        previous = self._held.name
        self._held = None
        self._last_change_ms = now
        self._stable_count = 0
        self._weak_since = None
        self._silent_since = None
        self._confidence_history.clear()

        event = ChordEvent(name=None, confidence=0.0, timestamp_ms=now)
        log_event("INFO", "Chord", "Chord cleared", previous=previous)
        self._on_chord(event)
        return event

    def _reset_diagnostics(self) -> None:
        self._active_bins = 0
        self._confidence = 0.0
        self._spectral_clarity = 0.0
        self._harmonic_strength = 0.0

    # ------------------------------------------------------------------
    # Buffers / loop
    # ------------------------------------------------------------------

    def _sync_fft_size(self, provider) -> None:
        size = int(getattr(provider, 'fft_size', 0) or 0)
        if size <= 0 or size == self._fft_size:
            return
        log_event("INFO", "Spectrum", "FFT size changed", old=self._fft_size, new=size)
        self._fft_size = size
        self._allocate_buffers()

    def _allocate_buffers(self) -> None:
        num_bins = self._fft_size // 2
        self._spectral_buffer = np.full(num_bins, -np.inf, dtype=np.float64)
        self._magnitudes = np.zeros(num_bins, dtype=np.float64)
        self._build_analysis_tables()

    def _build_analysis_tables(self) -> None:
        cfg = self._cfg
        num_bins = self._spectral_buffer.shape[0]
        self._freqs = bin_frequencies(cfg.sample_rate, num_bins)
        self._mask = band_mask(self._freqs, cfg.min_freq, cfg.max_freq)
        if cfg.use_tuning_map:
            self._weight_table = build_pitch_class_weights(
                num_bins, cfg.sample_rate, cfg.min_freq, cfg.max_freq,
                cfg.tuning_hz, cfg.chroma_sigma_cents,
            )
        else:
            self._weight_table = None

    @staticmethod
    def _new_detection_history(cfg: ChordDetectorConfig) -> DetectionHistory:
        return DetectionHistory(
            capacity=cfg.detection_history_size,
            window=cfg.consensus_window,
            decay=cfg.consensus_decay,
            min_weight=cfg.consensus_min_weight,
            margin=cfg.consensus_margin,
        )

    def _log_levels(self, cfg: ChordDetectorConfig, total: float) -> None:
        interval = cfg.levels_log_interval
        if interval <= 0 or self._frame_count % interval != 0 or not is_debug_enabled():
            return
        log_event(
            "DEBUG", "Levels", "Chroma levels",
            total=f"{total:.3f}",
            noise_floor=f"{self._noise_floor:.3f}",
            gate=f"{self._dynamic_gate:.3f}",
            clarity=f"{self._spectral_clarity:.3f}",
            active=self._active_bins,
            tuning_cents=f"{self._tuning.offset_cents:+.1f}",
        )

    def _tick(self) -> None:
        started = self._clock()
        with self._lock:
            if not self._running:
                return
            try:
                self._process_frame()
            except Exception as e:
                log_event("ERROR", "Detector", "Update failed", error=e)
        with self._loop_lock:
            if not self._running:
                return
            interval_ms = 1000.0 / max(1.0, self._cfg.max_fps)
            elapsed_ms = self._clock() - started
            self._timer_handle = self._scheduler.schedule(max(0.0, interval_ms - elapsed_ms) / 1000.0, self._tick)


if __name__ == "__main__":
    from logging_utils import enable_console_logging
    from spectrum_providers import FrameBufferProvider

    enable_console_logging()

    def on_chord(event: ChordEvent):
        log_event("INFO", "Chord", "Event", name=event.name, confidence=f"{event.confidence:.2f}")

    fft_size = DEFAULT_FFT_SIZE
    bin_width = DEFAULT_CONFIG.sample_rate / fft_size

    def triad_frame(freqs_hz):
        frame = np.full(fft_size // 2, -120.0)
        for f in freqs_hz:
            frame[int(round(f / bin_width))] = 0.0
        return frame

    provider = FrameBufferProvider(fft_size)
    detector = ChordDetector(provider, on_chord=on_chord, disable_energy_gate=True)
    detector.start()
    try:
        for chord in ((261.63, 329.63, 392.0), (392.0, 493.88, 587.33), (220.0, 261.63, 329.63)):
            for _ in range(40):
                provider.push(triad_frame(chord))
                time.sleep(0.025)
    except KeyboardInterrupt:
        pass
    finally:
        detector.stop()
