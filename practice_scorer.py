"""
drumcoach - Practice Scorer
Practice session state and the statistics derived from it.
"""

import time
from dataclasses import dataclass, field
from typing import Optional

from drum_types import Detection, DrumClass
from logging_utils import log_event
from pattern import Pattern
from step_aligner import StepAligner, step_duration_ms


@dataclass(frozen=True)
class TimingHistogram:
    early: int = 0
    on_time: int = 0
    late: int = 0


@dataclass(frozen=True)
class PracticeStats:
    total_expected_beats: int = 0
    correct_beats: int = 0
    accuracy: float = 0.0            # Percent, 0 when nothing is expected
    timing: TimingHistogram = field(default_factory=TimingHistogram)


@dataclass(frozen=True)
class StepAccuracy:
    expected: int
    detected: int
    correct: int
    accuracy: float


@dataclass
class PracticeSession:
    """
    One practice run against a target pattern.

    start() stamps the wall clock and clears earlier detections; detections
    are only collected while active; stop() freezes the session for scoring.
    """
    target_pattern: Pattern
    bpm: float
    tolerance_ms: float = 100.0
    steps_per_beat: int = 2
    start_time_ms: Optional[float] = None
    detections: list[Detection] = field(default_factory=list)
    active: bool = False

    @property
    def step_ms(self) -> float:
        return step_duration_ms(self.bpm, self.steps_per_beat)

    def start(self, now_ms: Optional[float] = None) -> None:
        self.start_time_ms = time.time() * 1000.0 if now_ms is None else float(now_ms)
        self.detections = []
        self.active = True
        log_event("INFO", "Practice", "Session started",
                  bpm=self.bpm, steps=self.target_pattern.length,
                  tolerance_ms=self.tolerance_ms)

    def stop(self) -> None:
        if self.active:
            log_event("INFO", "Practice", "Session stopped", detections=len(self.detections))
        self.active = False

    def add_detection(self, detection: Detection) -> bool:
        if not self.active:
            return False
        self.detections.append(detection)
        return True

    def aligner(self) -> Optional[StepAligner]:
        if self.start_time_ms is None:
            return None
        return StepAligner(self.start_time_ms, self.step_ms, self.target_pattern.length)


def score(session: PracticeSession) -> PracticeStats:
    """Accuracy and timing histogram for a (usually stopped) session."""
    pattern = session.target_pattern
    expected = pattern.total_active()
    aligner = session.aligner()
    if expected == 0 or aligner is None:
        return PracticeStats(total_expected_beats=expected)

    correct = early = on_time = late = 0
    tolerance = session.tolerance_ms
    for detection in session.detections:
        alignment = aligner.align(detection)
        if not pattern.is_active(detection.type.value, alignment.step_index):
            continue  # false positive: not scored for timing
        correct += 1
        if abs(alignment.offset_ms) <= tolerance:
            on_time += 1
        elif alignment.offset_ms < -tolerance:
            early += 1
        else:
            late += 1

    return PracticeStats(
        total_expected_beats=expected,
        correct_beats=correct,
        accuracy=correct / expected * 100.0,
        timing=TimingHistogram(early=early, on_time=on_time, late=late),
    )


def step_accuracy(session: PracticeSession, step: int) -> Optional[StepAccuracy]:
    """Expected/detected/correct counts for one step; None when nothing is expected there."""
    aligner = session.aligner()
    if aligner is None:
        return None
    pattern = session.target_pattern
    expected = len(pattern.active_at(step))
    if expected == 0:
        return None
    at_step = [d for d in session.detections if aligner.step_index(d) == step]
    correct = sum(1 for d in at_step if pattern.is_active(d.type.value, step))
    return StepAccuracy(
        expected=expected,
        detected=len(at_step),
        correct=correct,
        accuracy=correct / expected * 100.0,
    )


def detected_pattern(session: PracticeSession) -> Pattern:
    """Fold the session's detections into a Pattern shaped like the target."""
    target = session.target_pattern
    names = list(target.instruments)
    for drum in DrumClass:
        if drum.value not in names:
            names.append(drum.value)
    rows = {name: [False] * target.length for name in names}
    aligner = session.aligner()
    if aligner is not None:
        for detection in session.detections:
            rows[detection.type.value][aligner.step_index(detection)] = True
    return Pattern(rows, target.length)


def compare_patterns(target: Pattern, detected: Pattern) -> list[dict]:
    """Per-step indicators for a target-vs-detected grid."""
    if target.length != detected.length:
        raise ValueError("patterns must have the same length to be compared")
    names = set(target.instruments) | set(detected.instruments)
    indicators = []
    for step in range(target.length):
        has_target = has_detected = False
        matches = True
        for name in names:
            t = target.is_active(name, step)
            d = detected.is_active(name, step)
            has_target = has_target or t
            has_detected = has_detected or d
            if t != d:
                matches = False
        indicators.append({
            'step': step,
            'has_target': has_target,
            'has_detected': has_detected,
            'is_correct': matches if has_target else not has_detected,
        })
    return indicators
