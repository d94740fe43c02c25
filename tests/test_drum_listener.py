import queue
import threading
import unittest

import numpy as np

from config import ClassifierStrategy, Config
from drum_listener import DrumListener
from drum_types import AudioFrame, ClassificationResult, DrumClass
from errors import DeviceError, MicrophonePermissionError
from event_classifier import EventClassifier, HeuristicClassifier, TrainedModelClassifier
from pattern import Pattern

SR = 44100
N = 2048


def kick_frame(timestamp_ms, amplitude=0.5):
    t = np.arange(N) / SR
    return AudioFrame(amplitude * np.sin(2 * np.pi * 60.0 * t), timestamp_ms, SR)


class FakeCapture:
    def __init__(self, open_error=None):
        self.open_error = open_error
        self.frames = queue.Queue()
        self.opened = False
        self.close_calls = 0
        self.dropped_frames = 0
        self.hop_seconds = 0.01
        self.lost = None

    @property
    def level(self):
        return 0.3 if self.opened else 0.0

    def open(self):
        if self.open_error is not None:
            raise self.open_error
        self.opened = True
        return self

    def close(self):
        self.opened = False
        self.close_calls += 1

    def read(self, timeout=None):
        if self.lost is not None:
            raise self.lost
        try:
            return self.frames.get(timeout=timeout)
        except queue.Empty:
            return None


class FlakyClassifier(EventClassifier):
    name = "flaky"

    def __init__(self):
        self.calls = 0

    def classify(self, frame, features):
        self.calls += 1
        if self.calls == 1:
            raise FloatingPointError("bad frame")
        return ClassificationResult.from_probabilities({DrumClass.SNARE: 0.9})


def wait_for(predicate, timeout=2.0):
    event = threading.Event()
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return True
        event.wait(0.01)
    return predicate()


class TestDrumListenerLifecycle(unittest.TestCase):
    def setUp(self):
        self.capture = FakeCapture()
        self.listener = DrumListener(Config(), capture_factory=lambda: self.capture)
        self.addCleanup(self.listener.stop_listening)

    def test_stop_when_not_listening_is_safe(self):
        self.listener.stop_listening()
        self.listener.stop_listening()
        self.assertFalse(self.listener.is_listening)
        self.assertEqual(self.listener.audio_level, 0.0)

    def test_start_and_idempotent_stop(self):
        self.assertTrue(self.listener.start_listening())
        self.assertTrue(self.listener.is_listening)
        self.assertTrue(self.listener.start_listening())
        self.assertEqual(self.listener.audio_level, 0.3)
        self.capture.frames.put(kick_frame(1000.0))
        self.assertTrue(wait_for(lambda: len(self.listener.detected_beats) == 1))
        before = self.listener.detected_beats

        self.listener.stop_listening()
        self.listener.stop_listening()
        self.assertFalse(self.listener.is_listening)
        self.assertEqual(self.listener.audio_level, 0.0)
        self.assertEqual(self.listener.detected_beats, before)
        self.assertEqual(before[0].type, DrumClass.KICK)
        self.assertFalse(self.capture.opened)
        self.assertIsNone(self.listener.error)

    def test_worker_delivers_detections(self):
        seen = []
        self.listener.subscribe(seen.append)
        self.assertTrue(self.listener.start_listening())
        self.capture.frames.put(kick_frame(1000.0))
        self.assertTrue(wait_for(lambda: len(seen) == 1))
        self.assertEqual(seen[0].type, DrumClass.KICK)
        self.assertEqual(self.listener.detected_beats, tuple(seen))

        self.listener.clear_beats()
        self.assertEqual(self.listener.detected_beats, ())

    def test_permission_denied(self):
        capture = FakeCapture(open_error=MicrophonePermissionError("microphone access denied"))
        listener = DrumListener(Config(), capture_factory=lambda: capture)
        self.assertFalse(listener.start_listening())
        self.assertFalse(listener.is_listening)
        self.assertIn("denied", listener.error)

    def test_missing_device(self):
        capture = FakeCapture(open_error=DeviceError("no audio input device available"))
        listener = DrumListener(Config(), capture_factory=lambda: capture)
        self.assertFalse(listener.start_listening())
        self.assertIn("no audio input", listener.error)

    def test_device_loss_stops_listening(self):
        self.assertTrue(self.listener.start_listening())
        self.capture.lost = DeviceError("audio input stream stopped unexpectedly")
        self.assertTrue(wait_for(lambda: not self.listener.is_listening))
        self.assertIn("stopped unexpectedly", self.listener.error)
        self.assertGreaterEqual(self.capture.close_calls, 1)

    def test_model_failure_falls_back_to_heuristic(self):
        config = Config()
        config.classifier.strategy = ClassifierStrategy.TRAINED
        listener = DrumListener(config, capture_factory=FakeCapture)
        self.addCleanup(listener.stop_listening)
        self.assertTrue(listener.start_listening())
        self.assertIsInstance(listener.classifier, HeuristicClassifier)

    def test_model_failure_without_fallback_refuses_to_start(self):
        config = Config()
        config.classifier.fallback_to_heuristic = False
        listener = DrumListener(config, classifier=TrainedModelClassifier(),
                                capture_factory=FakeCapture)
        self.assertFalse(listener.start_listening())
        self.assertIn("Classifier not ready", listener.error)


class TestDrumListenerPipeline(unittest.TestCase):
    def test_process_frame_detects_kick(self):
        listener = DrumListener(Config())
        detection = listener.process_frame(kick_frame(5000.0))
        self.assertIsNotNone(detection)
        self.assertEqual(detection.type, DrumClass.KICK)
        self.assertEqual(detection.timestamp_ms, 5000.0)
        self.assertEqual(listener.stats()['detections'], {'kick': 1})

    def test_silence_produces_nothing(self):
        listener = DrumListener(Config())
        frame = AudioFrame(np.zeros(N), 0.0, SR)
        self.assertIsNone(listener.process_frame(frame))
        self.assertEqual(listener.stats()['frames'], 1)

    def test_frame_error_is_counted_and_pipeline_continues(self):
        listener = DrumListener(Config(), classifier=FlakyClassifier())
        self.assertIsNone(listener.process_frame(kick_frame(0.0)))
        detection = listener.process_frame(kick_frame(500.0))
        self.assertEqual(detection.type, DrumClass.SNARE)
        stats = listener.stats()
        self.assertEqual(stats['frame_errors'], 1)
        self.assertEqual(stats['frames'], 1)

    def test_set_classifier(self):
        listener = DrumListener(Config())
        listener.set_classifier(FlakyClassifier())
        self.assertEqual(listener.classifier.name, "flaky")


class TestDrumListenerPractice(unittest.TestCase):
    def setUp(self):
        self.listener = DrumListener(Config(), clock=lambda: 100.0)
        self.start_ms = 100_000.0

    def test_practice_scores_detections(self):
        pattern = Pattern.from_dict({'kick': [True, False, True, False], 'length': 4})
        session = self.listener.start_practice(pattern, bpm=240)
        self.assertEqual(session.start_time_ms, self.start_ms)
        self.assertEqual(session.step_ms, 125.0)

        self.listener.process_frame(kick_frame(self.start_ms + 3.0))
        self.listener.process_frame(kick_frame(self.start_ms + 250.0 + 30.0))
        stats = self.listener.stop_practice()

        self.assertEqual(stats.total_expected_beats, 2)
        self.assertEqual(stats.correct_beats, 2)
        self.assertEqual(stats.accuracy, 100.0)
        self.assertEqual(stats.timing.on_time, 2)

        # Detections after stop are not collected
        self.listener.process_frame(kick_frame(self.start_ms + 1000.0))
        self.assertEqual(len(session.detections), 2)

    def test_failing_subscriber_does_not_drop_practice_hits(self):
        def broken(detection):
            raise RuntimeError("display gone")

        self.listener.subscribe(broken)
        pattern = Pattern.from_dict({'kick': [True, False, True, False], 'length': 4})
        session = self.listener.start_practice(pattern, bpm=240)
        detection = self.listener.process_frame(kick_frame(self.start_ms + 3.0))

        self.assertIsNotNone(detection)
        self.assertEqual(session.detections, [detection])
        stats = self.listener.stats()
        self.assertEqual(stats['frames'], 1)
        self.assertEqual(stats['frame_errors'], 0)
        self.assertEqual(stats['detections'], {'kick': 1})

    def test_tolerance_override(self):
        pattern = Pattern.from_dict({'kick': [True, False]})
        self.listener.start_practice(pattern, bpm=240, tolerance_ms=10.0)
        self.listener.process_frame(kick_frame(self.start_ms + 30.0))
        stats = self.listener.stop_practice()
        self.assertEqual(stats.timing.late, 1)

    def test_stop_without_session(self):
        stats = self.listener.stop_practice()
        self.assertEqual(stats.total_expected_beats, 0)
        self.assertEqual(stats.accuracy, 0.0)

    def test_invalid_tempo(self):
        with self.assertRaises(ValueError):
            self.listener.start_practice(Pattern.empty(4, ['kick']), bpm=0)


if __name__ == "__main__":
    unittest.main()
