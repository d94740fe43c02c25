"""
drumcoach - Event Classifier
Maps one frame (and its features) to a ranked drum-class distribution.

Three interchangeable strategies share the EventClassifier interface:
  * HeuristicClassifier      - rule cascade over band-energy shares
  * TrainedModelClassifier   - small feed-forward net over cepstral coefficients
  * PretrainedModelClassifier - third-party audio model + label remapping
"""

import zipfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional, Sequence

import numpy as np
from scipy.signal import resample_poly

from config import ClassifierConfig, ClassifierStrategy
from drum_types import DRUM_CLASSES, AudioFrame, ClassificationResult, DrumClass, FeatureVector
from errors import ModelLoadError
from logging_utils import log_event


class EventClassifier(ABC):
    """Strategy interface: classify() must be side-effect free per call."""

    name: str = "classifier"

    @property
    def is_ready(self) -> bool:
        return True

    def load(self) -> None:
        """Prepare the strategy. Raises ModelLoadError on failure."""

    @abstractmethod
    def classify(self, frame: AudioFrame, features: FeatureVector) -> ClassificationResult:
        ...


class HeuristicClassifier(EventClassifier):
    """
    Rank-ordered rule cascade over band-energy shares.

    Bands are grouped into low (kick), mid (snare body + presence) and
    high (shimmer). Groups are tried loudest-share first; the first group whose
    rule fires sets the label:
      - low:  share >= min_share and rms >= kick_rms_floor  -> kick
      - mid:  share >= min_share                            -> snare
      - high: share >= min_share and zcr >= hat_zcr_min     -> hihat / openhat
    Open vs closed hat is decided by decay_ratio (a ringing open hat keeps
    its energy to the end of the frame). Ties on share go to the group with
    the larger absolute energy. Nothing fires -> "no confident class".
    """

    name = "heuristic"

    def __init__(self, config: ClassifierConfig | None = None):
        self.config = config or ClassifierConfig()

    def _loudness(self, rms: float) -> float:
        floor = self.config.rms_floor
        span = max(1e-9, self.config.full_scale_rms - floor)
        return float(np.sqrt(np.clip((rms - floor) / span, 0.0, 1.0)))

    def _open_weight(self, decay_ratio: float) -> float:
        sustain = max(1e-9, self.config.openhat_sustain)
        return float(np.clip(decay_ratio / (2.0 * sustain), 0.0, 1.0))

    def classify(self, frame: AudioFrame, features: FeatureVector) -> ClassificationResult:
        cfg = self.config
        groups = {
            'low': features.band('kick'),
            'mid': features.band('snare_body') + features.band('presence'),
            'high': features.band('shimmer'),
        }
        total = sum(groups.values())
        if features.rms < cfg.rms_floor or total <= 1e-12:
            return ClassificationResult.none()

        shares = {name: energy / total for name, energy in groups.items()}
        open_w = self._open_weight(features.decay_ratio)
        probabilities = {
            DrumClass.KICK: shares['low'],
            DrumClass.SNARE: shares['mid'],
            DrumClass.HIHAT: shares['high'] * (1.0 - open_w),
            DrumClass.OPENHAT: shares['high'] * open_w,
        }
        ranked = tuple(sorted(probabilities.items(), key=lambda item: item[1], reverse=True))

        # Loudest share first; equal shares fall back to absolute band energy
        order = sorted(groups, key=lambda name: (shares[name], groups[name]), reverse=True)
        label: Optional[DrumClass] = None
        for name in order:
            share = shares[name]
            if share < cfg.min_share:
                break
            if name == 'low' and features.rms >= cfg.kick_rms_floor:
                label = DrumClass.KICK
            elif name == 'mid':
                label = DrumClass.SNARE
            elif name == 'high' and features.zero_crossing_rate >= cfg.hat_zcr_min:
                is_open = features.decay_ratio >= cfg.openhat_sustain
                label = DrumClass.OPENHAT if is_open else DrumClass.HIHAT
            if label is not None:
                confidence = share * self._loudness(features.rms)
                return ClassificationResult(ranked=ranked, label=label,
                                            confidence=float(np.clip(confidence, 0.0, 1.0)))

        return ClassificationResult.none(ranked)


def _softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


class TrainedModelClassifier(EventClassifier):
    """
    Feed-forward network (ReLU hidden layers, 4-way softmax) over a
    fixed-length cepstral vector. Parameters are an external .npz artifact
    holding W0, b0, W1, b1, ... (W shaped (in, out)) and optionally
    `mean`/`scale` for input standardization.
    """

    name = "trained"

    def __init__(
        self,
        model_path: str | Path = "",
        input_size: int = 13,
        min_rms: float = 0.005,
        layers: Sequence[tuple[np.ndarray, np.ndarray]] | None = None,
        mean: np.ndarray | None = None,
        scale: np.ndarray | None = None,
    ):
        self.model_path = Path(model_path) if model_path else None
        self.input_size = int(input_size)
        self.min_rms = float(min_rms)
        self._pending_layers = layers
        self._pending_norm = (mean, scale)
        self._layers: list[tuple[np.ndarray, np.ndarray]] = []
        self._mean: np.ndarray | None = None
        self._scale: np.ndarray | None = None
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    def load(self) -> None:
        if self._ready:
            return
        if self._pending_layers is not None:
            layers = [(np.asarray(w, dtype=np.float64), np.asarray(b, dtype=np.float64))
                      for w, b in self._pending_layers]
            mean, scale = self._pending_norm
        else:
            layers, mean, scale = self._read_artifact()

        self._validate(layers)
        self._layers = layers
        self._mean = None if mean is None else np.asarray(mean, dtype=np.float64).reshape(-1)
        self._scale = None if scale is None else np.asarray(scale, dtype=np.float64).reshape(-1)
        for name, vec in (('mean', self._mean), ('scale', self._scale)):
            if vec is not None and vec.shape != (self.input_size,):
                raise ModelLoadError(f"{name} has shape {vec.shape}, expected ({self.input_size},)")
        self._ready = True
        log_event("INFO", "Classifier", "Trained model loaded",
                  layers=len(layers), input=self.input_size,
                  path=self.model_path or "<memory>")

    def _read_artifact(self):
        if self.model_path is None:
            raise ModelLoadError("no model path configured for the trained classifier")
        try:
            data = np.load(self.model_path, allow_pickle=False)
        except (OSError, ValueError, zipfile.BadZipFile) as e:
            raise ModelLoadError(f"cannot read model artifact {self.model_path}: {e}") from e
        if not hasattr(data, 'files'):
            raise ModelLoadError(f"model artifact {self.model_path} is not an .npz archive")
        try:
            with data:
                layers = []
                i = 0
                while f"W{i}" in data.files:
                    if f"b{i}" not in data.files:
                        raise ModelLoadError(f"model artifact is missing b{i}")
                    layers.append((data[f"W{i}"].astype(np.float64), data[f"b{i}"].astype(np.float64)))
                    i += 1
                mean = data['mean'] if 'mean' in data.files else None
                scale = data['scale'] if 'scale' in data.files else None
        except (OSError, ValueError, zipfile.BadZipFile) as e:
            raise ModelLoadError(f"cannot read model artifact {self.model_path}: {e}") from e
        return layers, mean, scale

    def _validate(self, layers) -> None:
        if not layers:
            raise ModelLoadError("model has no layers")
        expected_in = self.input_size
        for i, (w, b) in enumerate(layers):
            if w.ndim != 2 or w.shape[0] != expected_in:
                raise ModelLoadError(f"layer {i} weight shape {w.shape} does not accept {expected_in} inputs")
            if b.shape != (w.shape[1],):
                raise ModelLoadError(f"layer {i} bias shape {b.shape} does not match {w.shape[1]} units")
            expected_in = w.shape[1]
        if expected_in != len(DRUM_CLASSES):
            raise ModelLoadError(f"model outputs {expected_in} classes, expected {len(DRUM_CLASSES)}")

    def predict(self, vector: Sequence[float]) -> np.ndarray:
        """Class probabilities in DRUM_CLASSES order."""
        if not self._ready:
            raise RuntimeError("trained classifier not loaded; call load() first")
        x = np.asarray(vector, dtype=np.float64).reshape(-1)
        if x.shape != (self.input_size,):
            raise ValueError(f"expected {self.input_size} features, got {x.shape[0]}")
        if self._mean is not None:
            x = x - self._mean
        if self._scale is not None:
            x = x / np.where(np.abs(self._scale) > 1e-12, self._scale, 1.0)
        last = len(self._layers) - 1
        for i, (w, b) in enumerate(self._layers):
            x = x @ w + b
            if i < last:
                x = np.maximum(x, 0.0)
        return _softmax(x)

    def classify(self, frame: AudioFrame, features: FeatureVector) -> ClassificationResult:
        if features.rms < self.min_rms:
            return ClassificationResult.none()
        probs = self.predict(features.mfcc)
        return ClassificationResult.from_probabilities(dict(zip(DRUM_CLASSES, probs)))


# (samples, sample_rate) -> [(label, score)] or [{'label': ..., 'score': ...}]
AudioModel = Callable[[np.ndarray, int], Iterable]


def load_audio_classification_pipeline(model_name: str, top_k: int = 10) -> AudioModel:
    """Load a Hugging Face audio-classification pipeline as an AudioModel."""
    try:
        from transformers import pipeline
    except ImportError as e:
        raise ModelLoadError("the pretrained strategy needs the 'transformers' package "
                             "(pip install drumcoach[pretrained])") from e
    try:
        clf = pipeline("audio-classification", model=model_name)
    except Exception as e:  # hub, network and weight errors all mean "not loaded"
        raise ModelLoadError(f"failed to load pretrained model '{model_name}': {e}") from e

    def run(samples: np.ndarray, sample_rate: int):
        return clf({"raw": samples, "sampling_rate": sample_rate}, top_k=top_k)

    return run


class PretrainedModelClassifier(EventClassifier):
    """
    Wraps a third-party audio classifier whose labels are not drum-specific.
    Labels are remapped through `label_map` (case-insensitive, 'substring' or
    'exact'); unmapped labels are ignored. The best-scoring mapped label wins.
    """

    name = "pretrained"

    def __init__(
        self,
        model: AudioModel | None = None,
        model_name: str = "",
        label_map: Mapping[str, str] | None = None,
        match: str = "substring",
        sample_rate: int = 16000,
        top_k: int = 10,
        min_rms: float = 0.001,
        loader: Callable[[str, int], AudioModel] = load_audio_classification_pipeline,
    ):
        if match not in ('substring', 'exact'):
            raise ValueError(f"match must be 'substring' or 'exact', got {match!r}")
        self._model = model
        self.model_name = model_name
        self.match = match
        self.sample_rate = int(sample_rate)
        self.top_k = int(top_k)
        self.min_rms = float(min_rms)
        self._loader = loader
        self.label_map: dict[str, DrumClass] = {}
        for source, target in (label_map or ClassifierConfig().label_map).items():
            drum = DrumClass.parse(target)
            if drum is None:
                log_event("WARN", "Classifier", "Ignoring label mapping to unknown class",
                          label=source, target=target)
                continue
            self.label_map[source.strip().lower()] = drum
        # Longest keys first so 'snare drum' wins over 'drum' in substring mode
        self._keys = sorted(self.label_map, key=len, reverse=True)

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    def load(self) -> None:
        if self._model is not None:
            return
        if not self.model_name:
            raise ModelLoadError("no pretrained model configured")
        self._model = self._loader(self.model_name, self.top_k)
        log_event("INFO", "Classifier", "Pretrained model loaded", model=self.model_name)

    def map_label(self, label: str) -> Optional[DrumClass]:
        key = str(label).strip().lower()
        if self.match == 'exact':
            return self.label_map.get(key)
        for candidate in self._keys:
            if candidate in key:
                return self.label_map[candidate]
        return None

    def _resample(self, frame: AudioFrame) -> np.ndarray:
        samples = np.asarray(frame.samples, dtype=np.float32)
        if frame.sample_rate == self.sample_rate or frame.sample_rate <= 0:
            return samples
        g = np.gcd(int(frame.sample_rate), self.sample_rate)
        up, down = self.sample_rate // g, int(frame.sample_rate) // g
        return resample_poly(samples, up, down).astype(np.float32)

    @staticmethod
    def _iter_predictions(raw) -> Iterable[tuple[str, float]]:
        for item in raw or ():
            if isinstance(item, Mapping):
                yield str(item.get('label', '')), float(item.get('score', 0.0))
            else:
                label, score = item
                yield str(label), float(score)

    def classify(self, frame: AudioFrame, features: FeatureVector) -> ClassificationResult:
        if self._model is None:
            raise RuntimeError("pretrained classifier not loaded; call load() first")
        if features.rms < self.min_rms:
            return ClassificationResult.none()

        predictions = self._model(self._resample(frame), self.sample_rate)
        best: dict[DrumClass, float] = {}
        best_label, best_source, best_score = None, '', 0.0
        for label, score in self._iter_predictions(predictions):
            drum = self.map_label(label)
            if drum is None:
                continue
            score = float(np.clip(score, 0.0, 1.0))
            if score > best.get(drum, 0.0):
                best[drum] = score
            if score > best_score:
                best_label, best_source, best_score = drum, label, score

        if best_label is None:
            return ClassificationResult.none()
        ranked = {drum: best.get(drum, 0.0) for drum in DRUM_CLASSES}
        return ClassificationResult.from_probabilities(ranked, confidence=best_score,
                                                       source_label=best_source)


def create_classifier(config: ClassifierConfig) -> EventClassifier:
    """Instantiate the configured strategy (not yet loaded)."""
    if config.strategy == ClassifierStrategy.TRAINED:
        return TrainedModelClassifier(
            model_path=config.model_path,
            input_size=config.model_input_size,
            min_rms=config.model_min_rms,
        )
    if config.strategy == ClassifierStrategy.PRETRAINED:
        return PretrainedModelClassifier(
            model_name=config.pretrained_model,
            label_map=config.label_map,
            match=config.label_match,
            sample_rate=config.pretrained_sample_rate,
            top_k=config.pretrained_top_k,
            min_rms=config.pretrained_min_rms,
        )
    return HeuristicClassifier(config)


def ensure_ready(classifier: EventClassifier, config: ClassifierConfig) -> EventClassifier:
    """Load `classifier`; on ModelLoadError fall back to the heuristic when allowed."""
    try:
        classifier.load()
        return classifier
    except ModelLoadError as e:
        if not config.fallback_to_heuristic:
            raise
        log_event("WARN", "Classifier", "Model failed to load, falling back to heuristic",
                  strategy=classifier.name, error=e)
        return HeuristicClassifier(config)
