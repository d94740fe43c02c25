import unittest

from drum_types import Detection, DrumClass
from pattern import Pattern
from practice_scorer import (
    PracticeSession,
    compare_patterns,
    detected_pattern,
    score,
    step_accuracy,
)

START = 100_000.0


def kick_pattern():
    return Pattern.from_dict({'kick': [True, False, False, False], 'length': 4})


def hit(offset_ms, drum=DrumClass.KICK, confidence=0.9):
    return Detection(timestamp_ms=START + offset_ms, type=drum, confidence=confidence)


def session_with(pattern, detections, bpm=240, tolerance_ms=100.0):
    # bpm 240 at 2 steps per beat -> 125 ms steps
    session = PracticeSession(target_pattern=pattern, bpm=bpm, tolerance_ms=tolerance_ms)
    session.start(now_ms=START)
    for detection in detections:
        session.add_detection(detection)
    session.stop()
    return session


class TestPracticeScore(unittest.TestCase):
    def test_step_duration_follows_tempo(self):
        self.assertAlmostEqual(PracticeSession(kick_pattern(), bpm=120).step_ms, 250.0)
        self.assertAlmostEqual(PracticeSession(kick_pattern(), bpm=240).step_ms, 125.0)

    def test_hit_on_inactive_step_is_not_correct(self):
        stats = score(session_with(kick_pattern(), [hit(130.0)]))
        self.assertEqual(stats.total_expected_beats, 1)
        self.assertEqual(stats.correct_beats, 0)
        self.assertEqual(stats.accuracy, 0.0)
        # False positives are not scored for timing
        self.assertEqual((stats.timing.early, stats.timing.on_time, stats.timing.late), (0, 0, 0))

    def test_hit_on_active_step_is_correct_and_on_time(self):
        stats = score(session_with(kick_pattern(), [hit(3.0)]))
        self.assertEqual(stats.correct_beats, 1)
        self.assertEqual(stats.accuracy, 100.0)
        self.assertEqual(stats.timing.on_time, 1)

    def test_timing_buckets(self):
        pattern = Pattern.from_dict({'kick': [True] * 4, 'length': 4})
        # 20 ms tolerance against 125 ms steps
        stats = score(session_with(pattern, [hit(-30.0), hit(125.0 + 10.0), hit(250.0 + 40.0)],
                                   tolerance_ms=20.0))
        self.assertEqual(stats.timing.early, 1)
        self.assertEqual(stats.timing.on_time, 1)
        self.assertEqual(stats.timing.late, 1)
        self.assertEqual(stats.correct_beats, 3)
        self.assertAlmostEqual(stats.accuracy, 75.0)

    def test_tolerance_boundary_is_on_time(self):
        pattern = Pattern.from_dict({'kick': [True] * 4, 'length': 4})
        for tolerance in (10.0, 25.0, 50.0):
            with self.subTest(tolerance=tolerance):
                stats = score(session_with(pattern, [hit(125.0 + tolerance), hit(250.0 - tolerance)],
                                           tolerance_ms=tolerance))
                self.assertEqual(stats.timing.on_time, 2)

    def test_zero_expected_beats(self):
        stats = score(session_with(Pattern.empty(8, ['kick', 'snare']), [hit(0.0)]))
        self.assertEqual(stats.total_expected_beats, 0)
        self.assertEqual(stats.accuracy, 0.0)

    def test_wrong_instrument_is_not_correct(self):
        stats = score(session_with(kick_pattern(), [hit(0.0, DrumClass.SNARE)]))
        self.assertEqual(stats.correct_beats, 0)

    def test_detections_ignored_when_inactive(self):
        session = PracticeSession(target_pattern=kick_pattern(), bpm=240)
        self.assertFalse(session.add_detection(hit(0.0)))
        session.start(now_ms=START)
        self.assertTrue(session.add_detection(hit(0.0)))
        session.stop()
        self.assertFalse(session.add_detection(hit(500.0)))
        self.assertEqual(len(session.detections), 1)

    def test_restart_clears_detections(self):
        session = session_with(kick_pattern(), [hit(0.0)])
        session.start(now_ms=START + 10_000.0)
        self.assertEqual(session.detections, [])

    def test_never_started_scores_zero(self):
        stats = score(PracticeSession(target_pattern=kick_pattern(), bpm=120))
        self.assertEqual(stats.total_expected_beats, 1)
        self.assertEqual(stats.correct_beats, 0)


class TestPracticeBreakdown(unittest.TestCase):
    def setUp(self):
        self.pattern = Pattern.from_dict({
            'kick': [True, False, True, False],
            'snare': [False, True, False, True],
            'length': 4,
        })
        self.session = session_with(self.pattern, [
            hit(0.0, DrumClass.KICK),
            hit(125.0, DrumClass.KICK),
            hit(250.0, DrumClass.KICK),
            hit(375.0, DrumClass.SNARE),
        ])

    def test_step_accuracy(self):
        first = step_accuracy(self.session, 0)
        self.assertEqual((first.expected, first.detected, first.correct), (1, 1, 1))
        self.assertEqual(first.accuracy, 100.0)
        second = step_accuracy(self.session, 1)
        self.assertEqual((second.expected, second.detected, second.correct), (1, 1, 0))
        self.assertEqual(second.accuracy, 0.0)

    def test_step_accuracy_none_when_nothing_expected(self):
        empty = session_with(Pattern.empty(4, ['kick']), [hit(0.0)])
        self.assertIsNone(step_accuracy(empty, 0))

    def test_detected_pattern(self):
        detected = detected_pattern(self.session)
        self.assertEqual(detected.length, 4)
        self.assertEqual(detected.steps('kick'), (True, True, True, False))
        self.assertEqual(detected.steps('snare'), (False, False, False, True))
        self.assertIn('hihat', detected.instruments)

    def test_compare_patterns(self):
        indicators = compare_patterns(self.pattern, detected_pattern(self.session))
        self.assertEqual([i['is_correct'] for i in indicators], [True, False, True, True])
        self.assertTrue(all(i['has_target'] for i in indicators))
        with self.assertRaises(ValueError):
            compare_patterns(self.pattern, Pattern.empty(8, ['kick']))

    def test_compare_empty_step_without_hits_is_correct(self):
        target = Pattern.empty(2, ['kick'])
        detected = Pattern.from_dict({'kick': [False, True]})
        indicators = compare_patterns(target, detected)
        self.assertEqual([i['is_correct'] for i in indicators], [True, False])


if __name__ == "__main__":
    unittest.main()
