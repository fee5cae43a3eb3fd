import unittest

from chord_templates import DetectionCandidate
from consensus import DetectionHistory


def cand(root, quality='', confidence=0.6):
    return DetectionCandidate(root=root, quality=quality, confidence=confidence)


class TestDetectionHistory(unittest.TestCase):
    def test_capacity_evicts_oldest(self):
        history = DetectionHistory(capacity=8)
        for i in range(10):
            history.push(float(i), cand(i % 12))
        self.assertEqual(len(history), 8)
        self.assertEqual(history.entries()[0][0], 2.0)

    def test_short_history_keeps_current(self):
        history = DetectionHistory()
        history.push(0.0, cand(0, confidence=0.9))
        history.push(1.0, cand(0, confidence=0.9))
        current = cand(7, confidence=0.3)
        self.assertIs(history.choose(current), current)

    def test_unanimous_window_boosts_confidence(self):
        history = DetectionHistory()
        for i in range(5):
            history.push(float(i), cand(0))
        voted = history.consensus()
        self.assertEqual(voted.key, (0, ''))
        self.assertAlmostEqual(voted.confidence, 0.66)
        self.assertTrue(voted.consensus)

    def test_recent_detections_outvote_older_ones(self):
        history = DetectionHistory()
        for i, root in enumerate((0, 0, 0, 7, 7)):
            history.push(float(i), cand(root))
        # G: 1 + 0.8 = 1.8, C: 0.64 + 0.512 + 0.4096 = 1.5616
        self.assertEqual(history.consensus().root, 7)

    def test_no_pair_reaches_min_weight(self):
        history = DetectionHistory()
        for i, root in enumerate((0, 2, 4, 5, 7)):
            history.push(float(i), cand(root))
        self.assertIsNone(history.consensus())
        current = cand(9)
        self.assertIs(history.choose(current), current)

    def test_consensus_returns_newest_detection_of_winner(self):
        history = DetectionHistory()
        history.push(0.0, cand(0))
        history.push(1.0, cand(0))
        newest = DetectionCandidate(root=0, quality='', confidence=0.6, inversion=True, bass=4)
        history.push(2.0, newest)
        voted = history.consensus()
        self.assertTrue(voted.inversion)
        self.assertEqual(voted.bass, 4)

    def test_margin_keeps_stronger_frame(self):
        history = DetectionHistory()
        for i in range(4):
            history.push(float(i), cand(0, confidence=0.6))
        current = cand(7, confidence=0.9)
        history.push(4.0, current)
        # consensus C at ~0.66 < 0.9 * 0.9
        self.assertIs(history.choose(current), current)

    def test_margin_prefers_consensus(self):
        history = DetectionHistory()
        for i in range(4):
            history.push(float(i), cand(0, confidence=0.8))
        current = cand(2, 'm', confidence=0.5)
        history.push(4.0, current)
        chosen = history.choose(current)
        self.assertEqual(chosen.key, (0, ''))
        self.assertTrue(chosen.consensus)

    def test_clear(self):
        history = DetectionHistory()
        history.push(0.0, cand(0))
        history.clear()
        self.assertEqual(len(history), 0)
        self.assertIsNone(history.consensus())


if __name__ == "__main__":
    unittest.main()
