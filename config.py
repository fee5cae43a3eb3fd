# chordsense configuration
# All default values and constants

from dataclasses import dataclass, fields, replace
from enum import IntEnum
from typing import Any, Dict, Optional, Tuple

from logging_utils import log_event


class ConfigError(ValueError):
    """Raised when a configuration snapshot is inconsistent."""


class ChordMode(IntEnum):
    """Detector quality presets a host can switch between at runtime"""
    LOW_CPU = 1       # Throttled loop, no energy gate, smaller FFT on the host side
    RESPONSIVE = 2    # Fast lock-in, short holds
    NORMAL = 3        # Balanced defaults for music playback
    ACCURATE = 4      # Longer holds, stricter thresholds


@dataclass(frozen=True)
class ChordDetectorConfig:
    """Chord detector parameters"""
    sample_rate: float = 44100.0
    # Analysis band (Hz)
    min_freq: float = 60.0              # Lower bound keeps bass fundamentals
    max_freq: float = 3000.0            # Upper bound keeps the first few harmonics

    # Hysteresis timing
    hold_ms_enter: float = 300.0        # Minimum dwell between chord changes (ms)
    hold_ms_exit: float = 400.0         # How long a chord survives weak frames (ms)
    required_stable_frames: int = 3     # Consecutive qualifying frames to lock a chord

    # Confidence hysteresis band
    conf_enter: float = 0.45
    conf_exit: float = 0.35
    adaptive_threshold_min: float = 0.25
    adaptive_threshold_max: float = 0.65

    # Activity gating
    harmonic_threshold: float = 0.12    # Fraction of total chroma energy for an "active" pitch class
    noise_floor_alpha: float = 0.05     # EMA rate of the noise floor
    disable_energy_gate: bool = False
    min_spectral_clarity: Optional[float] = None  # None = 0.3 with a loudness provider, else off (0 disables)
    max_spectral_flatness: float = 0.8  # Flatter spectra are treated as noise (0 disables)
    rms_gate: float = 0.015             # Loudness below this counts as a quiet frame
    quiet_frames_max: int = 2           # Consecutive quiet frames before silence handling

    # Chroma smoothing
    chroma_alpha_fast: float = 0.4      # Quick response EMA
    chroma_alpha_slow: float = 0.15     # Stability EMA
    chroma_compression: float = 0.8     # Exponent applied after max-normalisation
    chroma_history_size: int = 5        # Frames used to measure signal stability
    stability_threshold: float = 0.7    # Above this the blend favours the slow EMA

    # Tuning-aware pitch mapping
    tuning_hz: float = 440.0            # Reference frequency of A4
    chroma_sigma_cents: float = 35.0    # Width of the Gaussian bin -> pitch class spread
    use_tuning_map: bool = True         # False = nearest-semitone rounding
    estimate_tuning: bool = True        # Track the tuning offset for diagnostics

    # Bass analysis
    enable_bass_bias: bool = True
    bass_max_freq: float = 250.0
    bass_bias: float = 0.15             # Fraction of the chroma peak added to the bass pitch class
    bass_alpha: float = 0.2             # EMA rate of the bass profile
    bass_min_strength: float = 0.3      # Bass profile peak needed before biasing

    # Template matching / qualities
    enable_harmonic_analysis: bool = True   # Subharmonic chroma passes + harmonic-series alignment in scoring
    enable_advanced_qualities: bool = True  # 6/7/9/11/13 extension upgrades
    inversion_detection: bool = True
    inversion_bass_ratio: float = 1.3       # Bass note must exceed the root's bass energy by this
    inversion_penalty: float = 0.95

    # Consensus smoothing
    enable_consensus: bool = True
    detection_history_size: int = 8
    consensus_window: int = 5
    consensus_decay: float = 0.8
    consensus_min_weight: float = 1.5
    consensus_margin: float = 0.9       # Consensus wins when conf > frame conf * this
    confidence_history_size: int = 10

    # Self-driven loop
    max_fps: float = 60.0
    levels_log_interval: int = 120      # Frames between DEBUG level summaries (0 = off)


# camelCase spellings accepted in option bags
_OPTION_ALIASES = {
    'sampleRate': 'sample_rate',
    'minFreq': 'min_freq',
    'maxFreq': 'max_freq',
    'holdMsEnter': 'hold_ms_enter',
    'holdMsExit': 'hold_ms_exit',
    'requiredStableFrames': 'required_stable_frames',
    'confEnter': 'conf_enter',
    'confExit': 'conf_exit',
    'harmonicThreshold': 'harmonic_threshold',
    'noiseFloorAlpha': 'noise_floor_alpha',
    'disableEnergyGate': 'disable_energy_gate',
    'minSpectralClarity': 'min_spectral_clarity',
    'maxSpectralFlatness': 'max_spectral_flatness',
    'chromaAlphaFast': 'chroma_alpha_fast',
    'chromaAlphaSlow': 'chroma_alpha_slow',
    'rmsGate': 'rms_gate',
    'quietFramesMax': 'quiet_frames_max',
    'enableBassBias': 'enable_bass_bias',
    'bassMaxFreq': 'bass_max_freq',
    'bassBias': 'bass_bias',
    'enableHarmonicAnalysis': 'enable_harmonic_analysis',
    'enableAdvancedQualities': 'enable_advanced_qualities',
    'inversionDetection': 'inversion_detection',
    'maxFps': 'max_fps',
    'tuningHz': 'tuning_hz',
    'chromaSigmaCents': 'chroma_sigma_cents',
}

CONFIG_FIELDS = frozenset(f.name for f in fields(ChordDetectorConfig))


def normalize_options(data: Dict[str, Any]) -> Tuple[Dict[str, Any], list]:
    """Map option names to field names. Returns (known options, unknown keys)."""
    known: Dict[str, Any] = {}
    unknown = []
    for key, value in data.items():
        name = _OPTION_ALIASES.get(key, key)
        if name in CONFIG_FIELDS:
            known[name] = value
        else:
            unknown.append(key)
    return known, unknown


def config_from_dict(data, base: ChordDetectorConfig | None = None) -> ChordDetectorConfig:
    """Build a config from a flat option bag on top of ``base`` (defaults if None).
    Unknown keys are ignored."""
    base = base or ChordDetectorConfig()
    if not isinstance(data, dict):
        return base

    known, unknown = normalize_options(data)
    for key in unknown:
        log_event("WARNING", "Config", "Ignoring unknown option", key=key)
    return replace(base, **known)


def validate_config(cfg: ChordDetectorConfig) -> None:
    """Raise ConfigError if ``cfg`` cannot drive the detector."""
    if cfg.sample_rate <= 0:
        raise ConfigError(f"sample_rate must be positive, got {cfg.sample_rate}")
    if cfg.min_freq < 0 or cfg.min_freq >= cfg.max_freq:
        raise ConfigError(f"invalid analysis band {cfg.min_freq}-{cfg.max_freq} Hz")
    if cfg.conf_exit > cfg.conf_enter:
        raise ConfigError(f"conf_exit ({cfg.conf_exit}) must not exceed conf_enter ({cfg.conf_enter})")
    if cfg.adaptive_threshold_min > cfg.adaptive_threshold_max:
        raise ConfigError("adaptive_threshold_min must not exceed adaptive_threshold_max")
    for name in ('chroma_alpha_fast', 'chroma_alpha_slow', 'noise_floor_alpha', 'bass_alpha'):
        value = getattr(cfg, name)
        if not 0.0 < value <= 1.0:
            raise ConfigError(f"{name} must be in (0, 1], got {value}")
    if cfg.max_fps <= 0:
        raise ConfigError(f"max_fps must be positive, got {cfg.max_fps}")
    if cfg.tuning_hz <= 0 or cfg.chroma_sigma_cents <= 0:
        raise ConfigError("tuning_hz and chroma_sigma_cents must be positive")
    if cfg.required_stable_frames < 1:
        raise ConfigError("required_stable_frames must be at least 1")
    for name in ('chroma_history_size', 'detection_history_size', 'consensus_window',
                 'confidence_history_size', 'quiet_frames_max'):
        if getattr(cfg, name) < 1:
            raise ConfigError(f"{name} must be at least 1")


# Clarity gate applied when min_spectral_clarity is unset and a loudness provider is wired
RMS_CLARITY_FLOOR = 0.3


def clarity_floor(cfg: ChordDetectorConfig, has_rms: bool) -> float:
    """Effective minimum spectral clarity (0 = gate off)."""
    if cfg.min_spectral_clarity is None:
        return RMS_CLARITY_FLOOR if has_rms else 0.0
    return cfg.min_spectral_clarity


# Quality presets (partial option bags applied on top of the current config)
CHORD_MODE_PRESETS: Dict[ChordMode, Dict[str, Any]] = {
    ChordMode.LOW_CPU: {
        'conf_enter': 0.35,
        'conf_exit': 0.28,
        'hold_ms_enter': 450.0,
        'hold_ms_exit': 250.0,
        'required_stable_frames': 1,
        'chroma_alpha_fast': 0.4,
        'chroma_alpha_slow': 0.2,
        'harmonic_threshold': 0.1,
        'rms_gate': 0.005,
        'min_spectral_clarity': 0.0,
        'enable_harmonic_analysis': False,
        'disable_energy_gate': True,
        'max_fps': 25.0,
    },
    ChordMode.RESPONSIVE: {
        'conf_enter': 0.35,
        'conf_exit': 0.28,
        'hold_ms_enter': 300.0,
        'hold_ms_exit': 200.0,
        'required_stable_frames': 1,
        'chroma_alpha_fast': 0.5,
        'chroma_alpha_slow': 0.12,
        'harmonic_threshold': 0.12,
        'enable_harmonic_analysis': True,
        'max_fps': 45.0,
    },
    ChordMode.NORMAL: {
        'conf_enter': 0.4,
        'conf_exit': 0.32,
        'hold_ms_enter': 500.0,
        'hold_ms_exit': 250.0,
        'required_stable_frames': 2,
        'chroma_alpha_fast': 0.4,
        'chroma_alpha_slow': 0.15,
        'harmonic_threshold': 0.15,
        'enable_harmonic_analysis': True,
        'max_fps': 40.0,
    },
    ChordMode.ACCURATE: {
        'conf_enter': 0.52,
        'conf_exit': 0.42,
        'hold_ms_enter': 700.0,
        'hold_ms_exit': 350.0,
        'required_stable_frames': 3,
        'chroma_alpha_fast': 0.35,
        'chroma_alpha_slow': 0.18,
        'harmonic_threshold': 0.15,
        'enable_harmonic_analysis': True,
        'max_fps': 60.0,
    },
}

# FFT size requested from providers that support set_fft_size when a preset is
# applied (the detector always follows the size the provider reports)
CHORD_MODE_FFT_SIZES: Dict[ChordMode, int] = {
    ChordMode.LOW_CPU: 8192,
    ChordMode.RESPONSIVE: 16384,
    ChordMode.NORMAL: 16384,
    ChordMode.ACCURATE: 32768,
}


def preset_config(mode, base: ChordDetectorConfig | None = None) -> ChordDetectorConfig:
    """Return ``base`` with the preset for ``mode`` applied."""
    mode = ChordMode(mode)
    return config_from_dict(dict(CHORD_MODE_PRESETS[mode]), base)


# Default config instance
DEFAULT_CONFIG = ChordDetectorConfig()
