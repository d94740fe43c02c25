"""
drumcoach - Drum Listener
Runs the detection pipeline: microphone frames -> features -> classifier ->
debouncer, on one worker thread, and wires practice sessions onto it.
"""

import threading
import time
from collections import Counter
from typing import Callable, Optional

from audio_capture import AudioCapture
from config import Config
from detection_debouncer import DetectionCallback, DetectionDebouncer
from drum_types import AudioFrame, Detection
from errors import DeviceError, DrumCoachError, ModelLoadError
from event_classifier import EventClassifier, create_classifier, ensure_ready
from feature_extractor import FeatureExtractor
from logging_utils import log_event, log_throttled
from pattern import Pattern
from practice_scorer import PracticeSession, PracticeStats, score
from step_aligner import step_duration_ms


class DrumListener:
    """
    Public facade over capture, classification and debouncing.

    start_listening() opens the microphone and starts the worker; the worker
    pulls one frame at a time (timeout = one hop) and runs it through the
    whole pipeline before pulling the next. stop_listening() is idempotent.
    """

    def __init__(
        self,
        config: Config | None = None,
        classifier: EventClassifier | None = None,
        capture_factory: Callable[[], AudioCapture] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or Config()
        self._clock = clock
        self._capture_factory = capture_factory or (
            lambda: AudioCapture(self.config.audio, clock=self._clock))
        self.extractor = FeatureExtractor(self.config.features)
        self.debouncer = DetectionDebouncer(self.config.debounce)
        self._classifier = classifier or create_classifier(self.config.classifier)

        self._capture: Optional[AudioCapture] = None
        self._worker: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._listening = False
        self.error: Optional[str] = None

        self._practice: Optional[PracticeSession] = None
        self._practice_unsubscribe: Optional[Callable[[], None]] = None

        self._reset_session_stats()

    # ===== STATE =====

    @property
    def is_listening(self) -> bool:
        return self._listening

    @property
    def audio_level(self) -> float:
        capture = self._capture
        if capture is None or not self._listening:
            return 0.0
        return capture.level

    @property
    def detected_beats(self) -> tuple[Detection, ...]:
        return self.debouncer.history

    @property
    def classifier(self) -> EventClassifier:
        return self._classifier

    @property
    def practice_session(self) -> Optional[PracticeSession]:
        return self._practice

    def clear_beats(self) -> None:
        self.debouncer.clear()

    def subscribe(self, callback: DetectionCallback) -> Callable[[], None]:
        return self.debouncer.subscribe(callback)

    def set_classifier(self, classifier: EventClassifier) -> None:
        """Swap the classification strategy. Loaded right away when listening."""
        if self._listening:
            classifier = ensure_ready(classifier, self.config.classifier)
        self._classifier = classifier
        log_event("INFO", "Classifier", "Strategy set", strategy=classifier.name)

    # ===== LIFECYCLE =====

    def start_listening(self) -> bool:
        """Open the microphone and start the worker. False (with `error` set) on failure."""
        if self._listening:
            return True
        self.error = None

        try:
            self._classifier = ensure_ready(self._classifier, self.config.classifier)
        except ModelLoadError as e:
            self.error = f"Classifier not ready: {e}"
            log_event("ERROR", "Classifier", "Refusing to start", strategy=self._classifier.name, error=e)
            return False

        capture = self._capture_factory()
        try:
            capture.open()
        except DrumCoachError as e:
            self.error = str(e)
            log_event("ERROR", "AudioCapture", "Could not start listening", error=e)
            return False

        self._capture = capture
        self._stop_event.clear()
        self._reset_session_stats()
        self._listening = True
        self._worker = threading.Thread(target=self._run, args=(capture,),
                                        name='drumcoach-pipeline', daemon=True)
        self._worker.start()
        log_event("INFO", "Pipeline", "Listening", strategy=self._classifier.name)
        return True

    def stop_listening(self) -> None:
        """Stop the worker and release the microphone. Safe when not listening."""
        self._stop_event.set()
        capture, self._capture = self._capture, None
        if capture is not None:
            capture.close()
        worker, self._worker = self._worker, None
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=self.config.audio.join_timeout_s)
            if worker.is_alive():
                log_event("WARN", "Pipeline", "Worker did not stop in time",
                          timeout_s=self.config.audio.join_timeout_s)
        was_listening, self._listening = self._listening, False
        if was_listening or capture is not None:
            self._log_shutdown_summary()

    def _run(self, capture: AudioCapture) -> None:
        hop = capture.hop_seconds
        try:
            while not self._stop_event.is_set():
                try:
                    frame = capture.read(timeout=hop)
                except DeviceError as e:
                    self.error = str(e)
                    log_event("ERROR", "AudioCapture", "Audio device lost", error=e)
                    capture.close()
                    self._log_shutdown_summary()
                    break
                if frame is None:
                    continue
                self.process_frame(frame)
        finally:
            self._listening = False

    # ===== PIPELINE =====

    def process_frame(self, frame: AudioFrame) -> Optional[Detection]:
        """Run one frame through extract -> classify -> debounce."""
        started = time.perf_counter()
        try:
            features = self.extractor.extract(frame)
            result = self._classifier.classify(frame, features)
            detection = self.debouncer.offer(result, frame.timestamp_ms)
        except Exception as e:
            self._frame_errors += 1
            log_throttled("pipeline.frame_error", 1.0, "ERROR", "Pipeline", "Frame processing failed",
                          error=f"{type(e).__name__}: {e}", errors=self._frame_errors)
            return None

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        self._update_session_stats(features.rms, elapsed_ms)
        if elapsed_ms > frame.duration_ms:
            self._overruns += 1
            log_throttled("pipeline.overrun", 5.0, "DEBUG", "Pipeline", "Frame overran its hop",
                          elapsed_ms=f"{elapsed_ms:.1f}", hop_ms=f"{frame.duration_ms:.1f}")
        if detection is not None:
            self._detection_counts[detection.type.value] += 1
        return detection

    def stats(self) -> dict:
        capture = self._capture
        return {
            'frames': self._session_frame_count,
            'dropped_frames': capture.dropped_frames if capture is not None else 0,
            'frame_errors': self._frame_errors,
            'overruns': self._overruns,
            'detections': dict(self._detection_counts),
            'rejected': dict(self.debouncer.rejected_counts),
        }

    # ===== PRACTICE =====

    def start_practice(self, pattern: Pattern, bpm: float,
                       tolerance_ms: Optional[float] = None) -> PracticeSession:
        """Begin scoring detections against `pattern` from now."""
        practice_cfg = self.config.practice
        step_duration_ms(bpm, practice_cfg.steps_per_beat)  # rejects bpm <= 0 up front
        if self._practice is not None and self._practice.active:
            self.stop_practice()

        session = PracticeSession(
            target_pattern=pattern,
            bpm=bpm,
            tolerance_ms=practice_cfg.tolerance_ms if tolerance_ms is None else float(tolerance_ms),
            steps_per_beat=practice_cfg.steps_per_beat,
        )
        session.start(now_ms=self._clock() * 1000.0)
        self._practice = session
        self._practice_unsubscribe = self.debouncer.subscribe(session.add_detection)
        return session

    def stop_practice(self) -> PracticeStats:
        """Stop the current session and score it. Empty stats when none ran."""
        session = self._practice
        if session is None:
            return PracticeStats()
        if self._practice_unsubscribe is not None:
            self._practice_unsubscribe()
            self._practice_unsubscribe = None
        session.stop()
        stats = score(session)
        log_event("INFO", "Practice", "Session scored",
                  expected=stats.total_expected_beats, correct=stats.correct_beats,
                  accuracy=f"{stats.accuracy:.1f}", early=stats.timing.early,
                  on_time=stats.timing.on_time, late=stats.timing.late)
        return stats

    # ===== SESSION STATS =====

    def _reset_session_stats(self) -> None:
        self._session_started_at = time.time()
        self._session_frame_count = 0
        self._session_rms_sum = 0.0
        self._session_rms_min: Optional[float] = None
        self._session_rms_max: Optional[float] = None
        self._session_proc_ms_max = 0.0
        self._frame_errors = 0
        self._overruns = 0
        self._detection_counts: Counter = Counter()
        self._summary_pending = True

    def _update_session_stats(self, rms: float, elapsed_ms: float) -> None:
        self._session_frame_count += 1
        self._session_rms_sum += rms
        if self._session_rms_min is None or rms < self._session_rms_min:
            self._session_rms_min = rms
        if self._session_rms_max is None or rms > self._session_rms_max:
            self._session_rms_max = rms
        if elapsed_ms > self._session_proc_ms_max:
            self._session_proc_ms_max = elapsed_ms

    def _log_shutdown_summary(self) -> None:
        if not self._summary_pending:
            return
        self._summary_pending = False
        if self._session_frame_count <= 0:
            log_event("INFO", "Pipeline", "Stopped", frames=0)
            return

        elapsed_s = max(0.0, time.time() - self._session_started_at)
        rms_min = float(self._session_rms_min or 0.0)
        rms_max = float(self._session_rms_max or 0.0)
        rms_mean = self._session_rms_sum / float(self._session_frame_count)
        counts = ', '.join(f"{k}:{v}" for k, v in sorted(self._detection_counts.items())) or 'none'

        log_event(
            "INFO",
            "Pipeline",
            "Shutdown summary",
            frames=self._session_frame_count,
            seconds=f"{elapsed_s:.1f}",
            rms_min=f"{rms_min:.6f}",
            rms_max=f"{rms_max:.6f}",
            rms_mean=f"{rms_mean:.6f}",
            proc_ms_max=f"{self._session_proc_ms_max:.2f}",
            frame_errors=self._frame_errors,
            overruns=self._overruns,
            detections=counts,
        )
