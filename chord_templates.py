"""
chordsense - Chord template bank and matching
Root-relative chord templates, rotation / scoring helpers, extension and
inversion analysis.
"""

from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from frequency_utils import pitch_class_to_name

# Harmonic-series positions (semitones above the root) checked by the
# alignment score: root, 5th, 3rd, flat 7th, 9th
HARMONIC_POSITIONS = (0, 7, 4, 10, 2)
HARMONIC_WEIGHTS = (1.0, 0.8, 0.6, 0.4, 0.3)

# Blend of the three template scores
DOT_WEIGHT = 0.4
COSINE_WEIGHT = 0.4
HARMONIC_WEIGHT = 0.2


@dataclass(frozen=True)
class ChordTemplate:
    """A chord quality defined with its root at index 0"""
    suffix: str                     # Quality suffix appended to the root name ("", "m", "7", ...)
    weights: Tuple[float, ...]      # Expected relative energy per semitone above the root
    chord_tones: Tuple[int, ...]    # Semitone offsets that count as chord tones
    category: str

    @property
    def profile(self) -> np.ndarray:
        return np.asarray(self.weights, dtype=np.float64)

    @property
    def vector(self) -> np.ndarray:
        """Unit-length template vector"""
        return normalize(self.profile)


TEMPLATE_BANK: Tuple[ChordTemplate, ...] = (
    # Triads
    ChordTemplate('', (1.0, 0, 0, 0, 0.85, 0, 0, 0.95, 0, 0, 0, 0), (0, 4, 7), 'major'),
    ChordTemplate('m', (1.0, 0, 0, 0.85, 0, 0, 0, 0.95, 0, 0, 0, 0), (0, 3, 7), 'minor'),
    ChordTemplate('dim', (1.0, 0, 0, 0.85, 0, 0, 0.75, 0, 0, 0, 0, 0), (0, 3, 6), 'diminished'),
    ChordTemplate('aug', (1.0, 0, 0, 0, 0.85, 0, 0, 0, 0.8, 0, 0, 0), (0, 4, 8), 'augmented'),
    # Suspended
    ChordTemplate('sus2', (1.0, 0, 0.9, 0, 0, 0, 0, 0.95, 0, 0, 0, 0), (0, 2, 7), 'suspended'),
    ChordTemplate('sus4', (1.0, 0, 0, 0, 0, 0.9, 0, 0.95, 0, 0, 0, 0), (0, 5, 7), 'suspended'),
    # Power chord
    ChordTemplate('5', (1.0, 0, 0, 0, 0, 0, 0, 0.95, 0, 0, 0, 0), (0, 7), 'power'),
    # Sixths
    ChordTemplate('6', (1.0, 0, 0, 0, 0.85, 0, 0, 0.95, 0, 0.75, 0, 0), (0, 4, 7, 9), 'sixth'),
    ChordTemplate('m6', (1.0, 0, 0, 0.85, 0, 0, 0, 0.95, 0, 0.75, 0, 0), (0, 3, 7, 9), 'minor_sixth'),
    # Sevenths
    ChordTemplate('Maj7', (1.0, 0, 0, 0, 0.85, 0, 0, 0.95, 0, 0, 0, 0.7), (0, 4, 7, 11), 'major_seventh'),
    ChordTemplate('mMaj7', (1.0, 0, 0, 0.85, 0, 0, 0, 0.95, 0, 0, 0, 0.7), (0, 3, 7, 11), 'minor_major_seventh'),
    ChordTemplate('7', (1.0, 0, 0, 0, 0.85, 0, 0, 0.95, 0, 0, 0.75, 0), (0, 4, 7, 10), 'dominant_seventh'),
    ChordTemplate('m7', (1.0, 0, 0, 0.85, 0, 0, 0, 0.95, 0, 0, 0.75, 0), (0, 3, 7, 10), 'minor_seventh'),
    ChordTemplate('m7b5', (1.0, 0, 0, 0.85, 0, 0, 0.75, 0, 0, 0, 0.7, 0), (0, 3, 6, 10), 'half_diminished'),
    ChordTemplate('dim7', (1.0, 0, 0, 0.85, 0, 0, 0.75, 0, 0, 0.75, 0, 0), (0, 3, 6, 9), 'fully_diminished'),
    ChordTemplate('7sus2', (1.0, 0, 0.9, 0, 0, 0, 0, 0.95, 0, 0, 0.75, 0), (0, 2, 7, 10), 'suspended_seventh'),
    ChordTemplate('7sus4', (1.0, 0, 0, 0, 0, 0.9, 0, 0.95, 0, 0, 0.75, 0), (0, 5, 7, 10), 'suspended_seventh'),
    # Sixth / ninth
    ChordTemplate('6/9', (1.0, 0, 0.8, 0, 0.85, 0, 0, 0.95, 0, 0.75, 0, 0), (0, 2, 4, 7, 9), 'sixth_ninth'),
    ChordTemplate('m6/9', (1.0, 0, 0.8, 0.85, 0, 0, 0, 0.95, 0, 0.75, 0, 0), (0, 2, 3, 7, 9), 'minor_sixth_ninth'),
)

TEMPLATES_BY_SUFFIX: Dict[str, ChordTemplate] = {t.suffix: t for t in TEMPLATE_BANK}

# Qualities the extension analysis may relabel
MAJOR_FAMILY = frozenset({'', '6', '7', 'Maj7', '6/9'})
MINOR_FAMILY = frozenset({'m', 'm6', 'm7', 'mMaj7', 'm6/9'})


@dataclass
class DetectionCandidate:
    """Best template match for one frame"""
    root: int                       # Pitch class 0-11
    quality: str
    confidence: float               # 0..1
    score: float = 0.0              # Blended template score (unbounded)
    harmonic_strength: float = 0.0  # Share of chroma energy on template tones
    inversion: bool = False
    bass: Optional[int] = None      # Bass pitch class when inverted
    consensus: bool = False         # Result came from the multi-frame vote

    @property
    def key(self) -> Tuple[int, str]:
        return self.root, self.quality

    @property
    def name(self) -> str:
        base = f"{pitch_class_to_name(self.root)}{self.quality}"
        if self.inversion and self.bass is not None:
            return f"{base}/{pitch_class_to_name(self.bass)}"
        return base


def rotate(vec, root: int) -> np.ndarray:
    """Shift a root-relative vector so index 0 lands on ``root``."""
    return np.roll(np.asarray(vec, dtype=np.float64), int(root) % 12)


def normalize(vec) -> np.ndarray:
    """Unit-length copy of ``vec``; a zero vector stays zero."""
    arr = np.asarray(vec, dtype=np.float64)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        return np.zeros_like(arr)
    return arr / norm


def cosine_score(a, b) -> float:
    return float(np.dot(normalize(a), normalize(b)))


def harmonic_score(chroma: np.ndarray, expected: np.ndarray, root: int) -> float:
    """How closely the energy at the harmonic-series positions follows ``expected``.

    ``expected`` is a rotated template profile. Positions the template does not
    use are skipped; each used position adds weight * min(actual/expected,
    expected/actual).
    """
    score = 0.0
    for offset, weight in zip(HARMONIC_POSITIONS, HARMONIC_WEIGHTS):
        pc = (root + offset) % 12
        want = float(expected[pc])
        have = float(chroma[pc])
        if want > 0.1 and have > 0.0:
            score += weight * min(have / want, want / have)
    return score / len(HARMONIC_POSITIONS)


def template_confidence(chroma: np.ndarray, template: ChordTemplate, root: int, clarity: float = 0.0) -> float:
    """Cosine match, minus energy off the template, plus strong chord tones and clarity."""
    rotated = rotate(template.vector, root)
    base = float(np.dot(normalize(chroma), rotated))

    off_template = (rotated < 0.1) & (chroma > 0.15)
    penalty = 0.3 * float(np.sum(chroma[off_template]))

    bonus = 0.0
    for tone in template.chord_tones:
        value = float(chroma[(root + tone) % 12])
        if value > 0.2:
            bonus += 0.1 * value

    return max(0.0, min(1.0, base - penalty + bonus + 0.05 * clarity))


def harmonic_strength(chroma: np.ndarray, expected: np.ndarray) -> float:
    total = float(np.sum(chroma))
    if total <= 0.0:
        return 0.0
    return float(np.sum(chroma[expected > 0.1])) / total


class _TemplateMatrix:
    """All 12 rotations of a template bank stacked for vectorised scoring.

    Rows are ordered root-major, so ties resolve to the lowest root and then
    the earliest template in the bank.
    """

    def __init__(self, templates: Tuple[ChordTemplate, ...]):
        self.templates = templates
        self.roots = np.repeat(np.arange(12), len(templates))
        self.vectors = np.array([rotate(t.vector, root) for root in range(12) for t in templates])
        self.profiles = np.array([rotate(t.profile, root) for root in range(12) for t in templates])
        self.harmonic_index = (self.roots[:, None] + np.array(HARMONIC_POSITIONS)[None, :]) % 12
        self.expected = np.take_along_axis(self.profiles, self.harmonic_index, axis=1)
        self.harmonic_weights = np.array(HARMONIC_WEIGHTS) / len(HARMONIC_POSITIONS)

    def template_at(self, row: int) -> ChordTemplate:
        return self.templates[row % len(self.templates)]

    def harmonic_scores(self, chroma: np.ndarray) -> np.ndarray:
        actual = chroma[self.harmonic_index]
        used = (self.expected > 0.1) & (actual > 0.0)
        have = np.where(used, actual, 1.0)
        want = np.where(used, self.expected, 1.0)
        ratio = np.where(used, np.minimum(have / want, want / have), 0.0)
        return ratio @ self.harmonic_weights


@lru_cache(maxsize=8)
def _template_matrix(templates: Tuple[ChordTemplate, ...]) -> _TemplateMatrix:
    return _TemplateMatrix(templates)


def match_templates(
    chroma: np.ndarray,
    templates: Sequence[ChordTemplate] = TEMPLATE_BANK,
    clarity: float = 0.0,
    use_harmonic_score: bool = True,
) -> DetectionCandidate | None:
    """Score every (root, template) pair and return the best as a candidate.

    Scores are computed on the peak-normalised chroma, so the result does not
    depend on the overall level. Returns None for an empty chroma.
    """
    chroma = np.asarray(chroma, dtype=np.float64)
    peak = float(np.max(chroma)) if chroma.size else 0.0
    if not peak > 0.0:
        return None
    scaled = chroma / peak

    matrix = _template_matrix(tuple(templates))
    scores = DOT_WEIGHT * (matrix.vectors @ scaled) + COSINE_WEIGHT * (matrix.vectors @ normalize(scaled))
    if use_harmonic_score:
        scores = scores + HARMONIC_WEIGHT * matrix.harmonic_scores(scaled)

    best = int(np.argmax(scores))
    root = int(matrix.roots[best])
    template = matrix.template_at(best)
    return DetectionCandidate(
        root=root,
        quality=template.suffix,
        confidence=template_confidence(scaled, template, root, clarity),
        score=float(scores[best]),
        harmonic_strength=harmonic_strength(scaled, matrix.profiles[best]),
    )


def analyze_extensions(chroma: np.ndarray, root: int, quality: str) -> Dict[str, float]:
    """Energy at the extension positions relative to the triad peak (+0.1)."""
    minor = quality in MINOR_FAMILY or (quality.startswith('m') and not quality.startswith('Maj'))
    third = (root + (3 if minor else 4)) % 12
    fifth = (root + 7) % 12
    triad_peak = max(float(chroma[root % 12]), float(chroma[third]), float(chroma[fifth]))
    scale = triad_peak + 0.1

    def rel(offset: int) -> float:
        return float(chroma[(root + offset) % 12]) / scale

    return {
        'dom7': rel(10),
        'maj7': rel(11),
        'sixth': rel(9),
        'ninth': rel(2),
        'eleventh': rel(5),
        'thirteenth': rel(9),
    }


def detect_extensions(chroma: np.ndarray, candidate: DetectionCandidate) -> DetectionCandidate:
    """Relabel a major / minor family match with its 6th, 7th or upper extensions."""
    if candidate.quality in MINOR_FAMILY:
        prefix = 'm'
    elif candidate.quality in MAJOR_FAMILY:
        prefix = ''
    else:
        return candidate

    peak = float(np.max(chroma))
    if not peak > 0.0:
        return candidate
    ext = analyze_extensions(np.asarray(chroma, dtype=np.float64) / peak, candidate.root, candidate.quality)

    if ext['maj7'] > ext['dom7'] and ext['maj7'] > 0.4:
        quality = 'Maj7'
        if ext['ninth'] > 0.35:
            quality = 'Maj9'
            if ext['eleventh'] > 0.3:
                quality = 'Maj11'
        if ext['thirteenth'] > 0.4:
            quality = 'Maj13'
        return replace(candidate, quality=prefix + quality)

    if ext['dom7'] > 0.4:
        quality = '7'
        if ext['ninth'] > 0.35:
            quality = '9'
            if ext['eleventh'] > 0.3:
                quality = '11'
        if ext['thirteenth'] > 0.4:
            quality = '13'
        return replace(candidate, quality=prefix + quality)

    if ext['sixth'] > 0.4:
        quality = '6/9' if ext['ninth'] > 0.35 else '6'
        return replace(candidate, quality=prefix + quality)

    if ext['ninth'] > 0.4:
        return replace(candidate, quality=prefix + 'add9')

    return candidate


def chord_tones(root: int, quality: str) -> list:
    """Pitch classes that belong to ``quality`` built on ``root``."""
    template = TEMPLATES_BY_SUFFIX.get(quality)
    if template is not None:
        return [(root + tone) % 12 for tone in template.chord_tones]

    # Extended labels (9, m11, Maj13, add9, ...) fall back to their triad plus 6th / 7th
    minor = quality.startswith('m') and not quality.startswith('Maj')
    intervals = [0, 3 if minor else 4, 7]
    if 'Maj' in quality:
        intervals.append(11)
    elif any(ext in quality for ext in ('7', '9', '11', '13')) and 'add' not in quality:
        intervals.append(10)
    if '6' in quality or '13' in quality:
        intervals.append(9)
    return [(root + i) % 12 for i in intervals]


def detect_inversion(
    candidate: DetectionCandidate,
    bass_profile: np.ndarray | None,
    bass_ratio: float = 1.3,
    penalty: float = 0.95,
) -> DetectionCandidate:
    """Mark ``candidate`` as inverted when a non-root chord tone dominates the bass.

    The bass note must be a chord tone and carry more than ``bass_ratio`` times
    the root's bass energy. Power chords are never inverted.
    """
    if bass_profile is None or candidate.quality == '5':
        return candidate
    strongest = int(np.argmax(bass_profile))
    if float(bass_profile[strongest]) <= 0.0 or strongest == candidate.root:
        return candidate
    if strongest not in chord_tones(candidate.root, candidate.quality):
        return candidate
    if float(bass_profile[strongest]) <= float(bass_profile[candidate.root]) * bass_ratio:
        return candidate
    return replace(
        candidate,
        inversion=True,
        bass=strongest,
        confidence=candidate.confidence * penalty,
    )


def chord_category(name: str) -> str:
    """Display category of a chord name, for colour-coding in a host UI."""
    quality = name.split('/', 1)[0]
    if quality[:1] in 'ABCDEFG' and quality:
        quality = quality[2:] if quality[1:2] == '#' else quality[1:]
    if 'dim' in quality or 'b5' in quality:
        return 'diminished'
    if 'aug' in quality:
        return 'augmented'
    if quality.startswith('m') and not quality.startswith('maj'):
        return 'minor'
    if 'sus' in quality:
        return 'suspended'
    if '6' in quality:
        return 'sixth'
    if '7' in quality or '9' in quality or '11' in quality or '13' in quality:
        return 'seventh'
    if '5' in quality:
        return 'power'
    return 'major'
