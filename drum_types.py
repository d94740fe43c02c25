"""
drumcoach - Pipeline data types
Frames, feature vectors, classification results and accepted detections.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Optional

import numpy as np


class DrumClass(str, Enum):
    """Drum event categories recognised by every classifier strategy"""
    KICK = 'kick'
    SNARE = 'snare'
    HIHAT = 'hihat'       # closed hi-hat
    OPENHAT = 'openhat'

    @classmethod
    def parse(cls, value) -> Optional['DrumClass']:
        """Return the DrumClass for a name (case-insensitive), or None."""
        if isinstance(value, DrumClass):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


# Fixed output order for model strategies (4-way softmax)
DRUM_CLASSES: tuple[DrumClass, ...] = (
    DrumClass.KICK,
    DrumClass.SNARE,
    DrumClass.HIHAT,
    DrumClass.OPENHAT,
)


@dataclass(frozen=True)
class AudioFrame:
    """One fixed-length window of mono time-domain samples"""
    samples: np.ndarray       # float32, read-only
    timestamp_ms: float       # Capture wall clock (ms since epoch)
    sample_rate: int

    def __post_init__(self):
        samples = np.array(self.samples, dtype=np.float32).reshape(-1)
        samples.setflags(write=False)
        object.__setattr__(self, 'samples', samples)

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def duration_ms(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return len(self.samples) * 1000.0 / self.sample_rate


@dataclass(frozen=True)
class FeatureVector:
    """Per-frame spectral/temporal features; every value is finite"""
    band_energies: Mapping[str, float]
    spectral_centroid: float
    spectral_rolloff: float
    zero_crossing_rate: float
    rms: float
    peak: float = 0.0
    decay_ratio: float = 0.0   # Energy of the last quarter over the first quarter
    dominant_frequency: float = 0.0
    mfcc: tuple[float, ...] = ()

    def band(self, name: str) -> float:
        return float(self.band_energies.get(name, 0.0))

    def to_dict(self) -> dict[str, float]:
        """Flatten to feature name -> scalar."""
        values = {f"band_{name}": float(v) for name, v in self.band_energies.items()}
        values.update({
            'spectral_centroid': self.spectral_centroid,
            'spectral_rolloff': self.spectral_rolloff,
            'zero_crossing_rate': self.zero_crossing_rate,
            'rms': self.rms,
            'peak': self.peak,
            'decay_ratio': self.decay_ratio,
            'dominant_frequency': self.dominant_frequency,
        })
        for i, coeff in enumerate(self.mfcc):
            values[f"mfcc_{i}"] = float(coeff)
        return values


@dataclass(frozen=True)
class ClassificationResult:
    """Ranked class probabilities for one frame.

    `label` is None for the "no confident class" sentinel, in which case
    `confidence` is 0.
    """
    ranked: tuple[tuple[DrumClass, float], ...] = ()
    label: Optional[DrumClass] = None
    confidence: float = 0.0
    source_label: str = ''     # Original model label, when a remapping strategy produced it

    @classmethod
    def none(cls, ranked: Iterable[tuple[DrumClass, float]] = ()) -> 'ClassificationResult':
        return cls(ranked=tuple(ranked), label=None, confidence=0.0)

    @classmethod
    def from_probabilities(
        cls,
        probabilities: Mapping[DrumClass, float],
        confidence: Optional[float] = None,
        source_label: str = '',
    ) -> 'ClassificationResult':
        """Rank probabilities; arg-max becomes the label.

        `confidence` overrides the arg-max probability (e.g. loudness-scaled).
        All-zero input yields the sentinel.
        """
        ranked = tuple(sorted(
            ((cls_, float(np.clip(p, 0.0, 1.0))) for cls_, p in probabilities.items()),
            key=lambda item: item[1],
            reverse=True,
        ))
        if not ranked or ranked[0][1] <= 0.0:
            return cls.none(ranked)
        label, best = ranked[0]
        conf = best if confidence is None else float(np.clip(confidence, 0.0, 1.0))
        return cls(ranked=ranked, label=label, confidence=conf, source_label=source_label)

    @property
    def is_confident(self) -> bool:
        return self.label is not None

    def probability(self, drum: DrumClass) -> float:
        for cls_, p in self.ranked:
            if cls_ == drum:
                return p
        return 0.0

    def top(self, n: int = 3) -> tuple[tuple[DrumClass, float], ...]:
        return self.ranked[:max(0, n)]


@dataclass(frozen=True)
class Detection:
    """An accepted, de-duplicated drum hit"""
    timestamp_ms: float
    type: DrumClass
    confidence: float
    predictions: tuple = field(default=(), compare=False)  # Top predictions at detection time
