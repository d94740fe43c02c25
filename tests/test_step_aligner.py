import unittest

from drum_types import Detection, DrumClass
from step_aligner import StepAligner, align, align_with_offset, step_duration_ms


class TestStepDuration(unittest.TestCase):
    def test_eighth_note_grid(self):
        self.assertAlmostEqual(step_duration_ms(120), 250.0)
        self.assertAlmostEqual(step_duration_ms(60), 500.0)
        self.assertAlmostEqual(step_duration_ms(120, steps_per_beat=4), 125.0)

    def test_invalid_tempo(self):
        for bpm in (0, -10):
            with self.subTest(bpm=bpm):
                with self.assertRaises(ValueError):
                    step_duration_ms(bpm)


class TestAlign(unittest.TestCase):
    def test_boundary_round_trip(self):
        start, step, length = 10_000.0, 125.0, 8
        for k in range(3 * length):
            with self.subTest(k=k):
                self.assertEqual(align(start + k * step, start, step, length), k % length)

    def test_rounds_to_nearest_step(self):
        start, step = 0.0, 125.0
        self.assertEqual(align(130.0, start, step, 4), 1)
        self.assertEqual(align(62.0, start, step, 4), 0)
        # Exactly half way rounds up
        self.assertEqual(align(62.5, start, step, 4), 1)
        self.assertEqual(align(187.5, start, step, 4), 2)

    def test_wraps_modulo_pattern_length(self):
        self.assertEqual(align(4 * 125.0 + 3.0, 0.0, 125.0, 4), 0)

    def test_before_session_start(self):
        self.assertEqual(align(-10.0, 0.0, 125.0, 4), 0)
        self.assertEqual(align(-125.0, 0.0, 125.0, 4), 3)

    def test_offset_sign(self):
        early = align_with_offset(240.0, 0.0, 125.0, 4)
        late = align_with_offset(260.0, 0.0, 125.0, 4)
        self.assertEqual((early.step_index, early.offset_ms), (2, -10.0))
        self.assertEqual((late.step_index, late.offset_ms), (2, 10.0))

    def test_offset_is_unwrapped_at_bar_end(self):
        # Late hit on the last step stays late; early hit on the next bar's step 0 stays early
        late = align_with_offset(3 * 125.0 + 40.0, 0.0, 125.0, 4)
        early = align_with_offset(4 * 125.0 - 40.0, 0.0, 125.0, 4)
        self.assertEqual(late.step_index, 3)
        self.assertAlmostEqual(late.offset_ms, 40.0)
        self.assertEqual(early.step_index, 0)
        self.assertEqual(early.absolute_step, 4)
        self.assertAlmostEqual(early.offset_ms, -40.0)

    def test_accepts_detection(self):
        detection = Detection(timestamp_ms=1130.0, type=DrumClass.KICK, confidence=0.9)
        self.assertEqual(align(detection, 1000.0, 125.0, 4), 1)

    def test_invalid_grid(self):
        with self.assertRaises(ValueError):
            align(0.0, 0.0, 0.0, 4)
        with self.assertRaises(ValueError):
            align(0.0, 0.0, 125.0, 0)
        with self.assertRaises(ValueError):
            StepAligner(0.0, 125.0, 0)


class TestStepAligner(unittest.TestCase):
    def test_bound_parameters(self):
        aligner = StepAligner(500.0, 250.0, 8)
        alignment = aligner.align(500.0 + 3 * 250.0 + 20.0)
        self.assertEqual(alignment.step_index, 3)
        self.assertAlmostEqual(alignment.offset_ms, 20.0)
        self.assertEqual(aligner.step_index(500.0 + 8 * 250.0), 0)


if __name__ == "__main__":
    unittest.main()
