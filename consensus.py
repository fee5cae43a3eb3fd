"""
chordsense - Multi-frame consensus
Temporally weighted vote over the most recent per-frame detections.
"""

from collections import deque
from dataclasses import replace
from typing import Dict, Optional, Tuple

from chord_templates import DetectionCandidate


class DetectionHistory:
    """Bounded FIFO of (timestamp_ms, candidate) pairs.

    The newest entry in the vote window weighs 1, the one before it
    ``decay``, then ``decay**2`` and so on.
    """

    def __init__(
        self,
        capacity: int = 8,
        window: int = 5,
        decay: float = 0.8,
        min_weight: float = 1.5,
        margin: float = 0.9,
    ):
        self._entries: deque = deque(maxlen=max(1, capacity))
        self.window = window
        self.decay = decay
        self.min_weight = min_weight
        self.margin = margin

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen

    def push(self, timestamp_ms: float, candidate: DetectionCandidate) -> None:
        self._entries.append((timestamp_ms, candidate))

    def clear(self) -> None:
        self._entries.clear()

    def entries(self) -> list:
        return list(self._entries)

    def consensus(self) -> Optional[DetectionCandidate]:
        """Most consistent (root, quality) over the vote window, or None.

        A pair needs at least ``min_weight`` accumulated weight; among those the
        highest weight * mean-confidence wins. The returned candidate is that
        pair's newest detection with its confidence raised to 1.1x the weighted
        mean (capped at 1).
        """
        recent = list(self._entries)[-self.window:]
        count = len(recent)
        tallies: Dict[Tuple[int, str], list] = {}
        for index, (_, candidate) in enumerate(recent):
            weight = self.decay ** (count - 1 - index)
            tally = tallies.setdefault(candidate.key, [0.0, 0.0, candidate])
            tally[0] += weight
            tally[1] += candidate.confidence * weight
            tally[2] = candidate

        best = None
        best_score = 0.0
        best_mean = 0.0
        for weight, weighted_conf, candidate in tallies.values():
            if weight < self.min_weight:
                continue
            mean_conf = weighted_conf / weight
            score = weight * mean_conf
            if score > best_score:
                best, best_score, best_mean = candidate, score, mean_conf

        if best is None:
            return None
        return replace(best, confidence=min(1.0, best_mean * 1.1), consensus=True)

    def choose(self, current: DetectionCandidate) -> DetectionCandidate:
        """Prefer the consensus result unless it is clearly weaker than ``current``."""
        if len(self._entries) < 3:
            return current
        voted = self.consensus()
        if voted is not None and voted.confidence > current.confidence * self.margin:
            return voted
        return current
