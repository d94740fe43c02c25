"""Quantize detection timestamps onto the sequencer step grid."""

import math
from dataclasses import dataclass
from typing import Union

from drum_types import Detection


@dataclass(frozen=True)
class StepAlignment:
    """Where a timestamp lands on the grid"""
    step_index: int       # Wrapped into [0, pattern_length)
    absolute_step: int    # Unwrapped step count since session start
    offset_ms: float      # Signed distance from the nominal step time; negative = early


def step_duration_ms(bpm: float, steps_per_beat: int = 2) -> float:
    """Step length in ms. steps_per_beat=2 gives the sequencer's 8th-note grid."""
    if bpm <= 0:
        raise ValueError(f"bpm must be positive, got {bpm}")
    if steps_per_beat <= 0:
        raise ValueError(f"steps_per_beat must be positive, got {steps_per_beat}")
    return 60000.0 / bpm / steps_per_beat


def _timestamp(detection_or_timestamp: Union[Detection, float]) -> float:
    if isinstance(detection_or_timestamp, Detection):
        return detection_or_timestamp.timestamp_ms
    return float(detection_or_timestamp)


def align_with_offset(
    detection_or_timestamp: Union[Detection, float],
    session_start_ms: float,
    step_ms: float,
    pattern_length: int,
) -> StepAlignment:
    """Nearest step (half-up rounding) and the offset from it.

    The offset comes from the unwrapped elapsed time, so a late hit on the
    last step of the bar stays positive instead of flipping sign at the wrap.
    """
    if step_ms <= 0:
        raise ValueError(f"step duration must be positive, got {step_ms}")
    if pattern_length <= 0:
        raise ValueError(f"pattern length must be positive, got {pattern_length}")

    elapsed = _timestamp(detection_or_timestamp) - session_start_ms
    absolute_step = math.floor(elapsed / step_ms + 0.5)
    offset = elapsed - absolute_step * step_ms
    return StepAlignment(
        step_index=absolute_step % pattern_length,
        absolute_step=absolute_step,
        offset_ms=offset,
    )


def align(
    detection_or_timestamp: Union[Detection, float],
    session_start_ms: float,
    step_ms: float,
    pattern_length: int,
) -> int:
    """Step index in [0, pattern_length) nearest to the detection."""
    return align_with_offset(detection_or_timestamp, session_start_ms, step_ms, pattern_length).step_index


class StepAligner:
    """align()/align_with_offset() bound to one session's grid."""

    def __init__(self, session_start_ms: float, step_ms: float, pattern_length: int):
        if step_ms <= 0:
            raise ValueError(f"step duration must be positive, got {step_ms}")
        if pattern_length <= 0:
            raise ValueError(f"pattern length must be positive, got {pattern_length}")
        self.session_start_ms = float(session_start_ms)
        self.step_ms = float(step_ms)
        self.pattern_length = int(pattern_length)

    def align(self, detection_or_timestamp: Union[Detection, float]) -> StepAlignment:
        return align_with_offset(detection_or_timestamp, self.session_start_ms,
                                 self.step_ms, self.pattern_length)

    def step_index(self, detection_or_timestamp: Union[Detection, float]) -> int:
        return self.align(detection_or_timestamp).step_index
