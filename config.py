# drumcoach Configuration
# All default values and constants

from dataclasses import dataclass, field, is_dataclass
from typing import Dict
from enum import IntEnum

from logging_utils import log_event


CURRENT_CONFIG_VERSION = 1

class ClassifierStrategy(IntEnum):
    """Which EventClassifier implementation drives the pipeline"""
    HEURISTIC = 1       # Rule cascade over band-energy ratios
    TRAINED = 2         # Small feed-forward net over cepstral coefficients
    PRETRAINED = 3      # Third-party audio model + label remapping

@dataclass
class AudioConfig:
    """Microphone capture settings"""
    sample_rate: int = 44100
    frame_size: int = 2048            # Samples per frame == hop (2048 @ 44.1kHz ~ 46ms)
    channels: int = 1
    # Device index - None means use system default input
    device_index: int | None = None
    queue_size: int = 2               # Bounded frame queue; oldest frame dropped when full
    level_scale: float = 10.0         # RMS multiplier for the 0-1 level meter
    permission_timeout_s: float = 5.0 # Fail fast if the device open hangs
    join_timeout_s: float = 2.0       # Max wait for the processing worker on stop

@dataclass
class FeatureConfig:
    """Feature extraction parameters"""
    # Frequency bands tuned to drum acoustics (Hz); None = up to Nyquist
    band_edges: Dict[str, list] = field(default_factory=lambda: {
        'kick': [20.0, 150.0],          # kick fundamental / sub
        'snare_body': [150.0, 1000.0],  # snare and tom body
        'presence': [1000.0, 6000.0],   # snare wires / stick attack
        'shimmer': [6000.0, None],      # hi-hat and cymbal shimmer
    })
    rolloff_percent: float = 0.85     # Fraction of spectral energy below the rolloff frequency
    n_mfcc: int = 13                  # Cepstral coefficients (0 = disabled)
    n_mels: int = 40                  # Mel filters feeding the cepstrum

@dataclass
class ClassifierConfig:
    """EventClassifier selection and strategy parameters"""
    strategy: ClassifierStrategy = ClassifierStrategy.HEURISTIC
    fallback_to_heuristic: bool = True  # Use the heuristic when a model fails to load

    # Heuristic rule cascade
    rms_floor: float = 0.01           # Below this RMS the frame is treated as silence
    kick_rms_floor: float = 0.03      # Kick needs a louder frame than hats
    full_scale_rms: float = 0.2       # RMS at which loudness no longer scales confidence
    min_share: float = 0.4            # Dominant class share needed for a rule to fire
    hat_zcr_min: float = 0.1          # Hi-hat family needs a noisy (high ZCR) frame
    openhat_sustain: float = 0.5      # decay_ratio above this = open hat (still ringing)

    # Trained model
    model_path: str = ""              # .npz with W0,b0,W1,b1,... (+ optional mean/scale)
    model_input_size: int = 13        # Must match FeatureConfig.n_mfcc
    model_min_rms: float = 0.005      # Skip inference on near-silent frames

    # Pretrained third-party model
    pretrained_model: str = "MIT/ast-finetuned-audioset-10-10-0.4593"
    pretrained_sample_rate: int = 16000
    pretrained_top_k: int = 10
    pretrained_min_rms: float = 0.001
    label_match: str = "substring"    # 'substring' or 'exact' (both case-insensitive)
    label_map: Dict[str, str] = field(default_factory=lambda: {
        'bass drum': 'kick',
        'kick drum': 'kick',
        'drum kit': 'kick',
        'tom-tom': 'kick',
        'timpani': 'kick',
        'thump': 'kick',
        'snare drum': 'snare',
        'rimshot': 'snare',
        'clapping': 'snare',
        'hi-hat': 'hihat',
        'wood block': 'hihat',
        'tap': 'hihat',
        'crash cymbal': 'openhat',
        'ride cymbal': 'openhat',
        'cymbal': 'openhat',
        'drum': 'kick',
    })

@dataclass
class DebounceConfig:
    """Detection debouncing and history retention"""
    confidence_threshold: float = 0.5  # Drop classifications below this (0.3-0.8 by strategy)
    min_interval_ms: float = 100.0     # Global gate between any two detections
    class_cooldown_ms: float = 200.0   # Same-class gate
    class_cooldown_overrides: Dict[str, float] = field(default_factory=dict)  # e.g. {'openhat': 250}
    max_history: int = 50              # Rolling buffer size
    retention_ms: float = 10000.0      # Rolling buffer age limit

@dataclass
class PracticeConfig:
    """Practice session scoring"""
    tolerance_ms: float = 100.0       # |offset| within this = on time
    steps_per_beat: int = 2           # 8th-note steps (8 steps per 4/4 bar)
    default_bpm: float = 120.0

@dataclass
class Config:
    """Master configuration"""
    version: int = 1                  # Schema version for persisted configs
    audio: AudioConfig = field(default_factory=AudioConfig)
    features: FeatureConfig = field(default_factory=FeatureConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    debounce: DebounceConfig = field(default_factory=DebounceConfig)
    practice: PracticeConfig = field(default_factory=PracticeConfig)

    log_level: str = "INFO"           # Logging level (DEBUG/INFO/WARNING/ERROR)


def apply_dict_to_dataclass(target, data) -> None:
    """Recursively apply values from a dict onto a dataclass instance.
    Unknown keys are ignored; IntEnum fields are coerced when possible."""
    if not isinstance(data, dict):
        return

    for key, value in data.items():
        if not hasattr(target, key):
            continue

        current = getattr(target, key)

        if is_dataclass(current) and isinstance(value, dict):
            apply_dict_to_dataclass(current, value)
            continue

        if isinstance(current, IntEnum):
            try:
                setattr(target, key, current.__class__(value))
                continue
            except (ValueError, TypeError):
                log_event("WARN", "Config", f"Could not convert {key} to {current.__class__.__name__}, keeping default")
                continue

        setattr(target, key, value)


def _clamp_float(value, default: float, low: float, high: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        value = default
    return max(low, min(high, value))


def migrate_config(config: Config, loaded_version) -> None:
    """Upgrade older config structures to the current schema.
    Fills None values with defaults, clamps ranges and bumps version."""
    try:
        version = int(loaded_version) if loaded_version is not None else 0
    except (TypeError, ValueError):
        version = 0

    if version < 1:
        if getattr(config.debounce, 'class_cooldown_overrides', None) is None:
            config.debounce.class_cooldown_overrides = {}
        if getattr(config.classifier, 'label_map', None) is None:
            config.classifier.label_map = ClassifierConfig().label_map
        if getattr(config.features, 'band_edges', None) is None:
            config.features.band_edges = FeatureConfig().band_edges

    if config.classifier.label_match not in ('substring', 'exact'):
        config.classifier.label_match = 'substring'
    if not config.log_level:
        config.log_level = "INFO"

    # Always clamp safety ranges
    config.debounce.confidence_threshold = _clamp_float(
        config.debounce.confidence_threshold, 0.5, 0.0, 1.0)
    config.debounce.min_interval_ms = _clamp_float(
        config.debounce.min_interval_ms, 100.0, 0.0, 2000.0)
    config.debounce.class_cooldown_ms = _clamp_float(
        config.debounce.class_cooldown_ms, 200.0, 0.0, 2000.0)
    config.debounce.max_history = max(1, int(config.debounce.max_history or 50))
    config.audio.queue_size = max(1, min(8, int(config.audio.queue_size or 2)))
    config.practice.tolerance_ms = _clamp_float(
        config.practice.tolerance_ms, 100.0, 0.0, 1000.0)

    config.version = CURRENT_CONFIG_VERSION
