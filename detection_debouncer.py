"""
drumcoach - Detection Debouncer
Turns per-frame classifications into discrete, de-duplicated Detections.

One physical hit spans many frames; without these gates it would produce a
burst of identical events.
"""

import threading
from collections import deque
from typing import Callable, Optional

from config import DebounceConfig
from drum_types import ClassificationResult, Detection, DrumClass
from logging_utils import log_event, log_throttled

DetectionCallback = Callable[[Detection], None]


class DetectionDebouncer:
    """
    Gates, in order:
      1. confidence threshold (sentinel results never pass)
      2. global minimum interval since the last accepted detection of any type
      3. per-class cooldown since the last accepted detection of the same type

    Accepted detections go into a bounded rolling history (max count and max
    age) and are pushed to subscribers. Only the processing worker writes;
    readers get snapshots.
    """

    def __init__(self, config: DebounceConfig | None = None):
        self.config = config or DebounceConfig()
        self._history: deque[Detection] = deque()
        self._lock = threading.Lock()
        self._last_any_ms: Optional[float] = None
        self._last_by_class: dict[DrumClass, float] = {}
        self._subscribers: list[DetectionCallback] = []
        self.rejected_counts: dict[str, int] = {'threshold': 0, 'global': 0, 'cooldown': 0}
        self.subscriber_errors = 0

    def cooldown_for(self, drum: DrumClass) -> float:
        overrides = self.config.class_cooldown_overrides or {}
        return float(overrides.get(drum.value, self.config.class_cooldown_ms))

    def offer(self, result: ClassificationResult, timestamp_ms: float,
              predictions: tuple = ()) -> Optional[Detection]:
        """Return the accepted Detection, or None when a gate drops it."""
        cfg = self.config
        if result.label is None or result.confidence < cfg.confidence_threshold:
            self.rejected_counts['threshold'] += 1
            return None

        if self._last_any_ms is not None and timestamp_ms - self._last_any_ms < cfg.min_interval_ms:
            self.rejected_counts['global'] += 1
            return None

        last_same = self._last_by_class.get(result.label)
        if last_same is not None and timestamp_ms - last_same < self.cooldown_for(result.label):
            self.rejected_counts['cooldown'] += 1
            return None

        detection = Detection(
            timestamp_ms=float(timestamp_ms),
            type=result.label,
            confidence=float(result.confidence),
            predictions=predictions or result.top(5),
        )
        self._last_any_ms = detection.timestamp_ms
        self._last_by_class[detection.type] = detection.timestamp_ms

        with self._lock:
            self._history.append(detection)
            self._evict(detection.timestamp_ms)
            subscribers = list(self._subscribers)

        log_event("DEBUG", "Debounce", "Detection accepted",
                  type=detection.type.value, confidence=f"{detection.confidence:.2f}")
        for callback in subscribers:
            try:
                callback(detection)
            except Exception as e:
                # One broken observer must not starve the rest
                self.subscriber_errors += 1
                log_throttled("debounce.subscriber", 1.0, "ERROR", "Debounce", "Detection subscriber failed",
                              error=f"{type(e).__name__}: {e}", errors=self.subscriber_errors)
        return detection

    def _evict(self, now_ms: float) -> None:
        cutoff = now_ms - self.config.retention_ms
        while self._history and self._history[0].timestamp_ms < cutoff:
            self._history.popleft()
        max_history = max(1, int(self.config.max_history))
        while len(self._history) > max_history:
            self._history.popleft()

    @property
    def history(self) -> tuple[Detection, ...]:
        """Accepted detections, oldest first."""
        with self._lock:
            return tuple(self._history)

    def clear(self) -> None:
        """Empty the history; the gates keep their timestamps."""
        with self._lock:
            self._history.clear()

    def reset(self) -> None:
        """Empty the history and re-open every gate."""
        with self._lock:
            self._history.clear()
        self._last_any_ms = None
        self._last_by_class.clear()
        for key in self.rejected_counts:
            self.rejected_counts[key] = 0

    def subscribe(self, callback: DetectionCallback) -> Callable[[], None]:
        """Register a detection observer. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe
