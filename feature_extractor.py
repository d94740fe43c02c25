"""
drumcoach - Feature Extractor
Turns one AudioFrame into a FeatureVector: drum-tuned band energies,
spectral shape, zero-crossing rate, loudness, decay and cepstral coefficients.
"""

from functools import lru_cache

import librosa
import numpy as np
from scipy.fft import dct

from config import FeatureConfig
from drum_types import AudioFrame, FeatureVector
from frequency_utils import (
    band_mean_magnitude,
    bin_frequencies,
    extract_dominant_freq,
    spectral_centroid,
    spectral_rolloff,
)

# Floor for log-mel energies so silent frames stay finite
_LOG_FLOOR = 1e-10
# Cap for decay_ratio when the first quarter is nearly silent
_MAX_DECAY_RATIO = 10.0


@lru_cache(maxsize=8)
def _mel_filterbank(sample_rate: int, n_fft: int, n_mels: int) -> np.ndarray:
    return librosa.filters.mel(sr=sample_rate, n_fft=n_fft, n_mels=n_mels).astype(np.float64)


@lru_cache(maxsize=8)
def _hann_window(length: int) -> np.ndarray:
    return np.hanning(length).astype(np.float64)


def zero_crossing_rate(samples: np.ndarray) -> float:
    """Fraction of adjacent sample pairs that change sign. Silence -> 0."""
    if len(samples) < 2:
        return 0.0
    signs = np.signbit(samples)
    # Exact zeros count as non-negative, so an all-zero frame never crosses
    return float(np.mean(signs[1:] != signs[:-1]))


def decay_ratio(samples: np.ndarray) -> float:
    """Energy of the last quarter of the frame over the first quarter.

    ~0 for a hit that dies out inside the frame, ~1 for a sustained sound.
    """
    quarter = len(samples) // 4
    if quarter == 0:
        return 0.0
    first = float(np.sum(samples[:quarter] ** 2))
    last = float(np.sum(samples[-quarter:] ** 2))
    if first <= 1e-12:
        return 0.0 if last <= 1e-12 else _MAX_DECAY_RATIO
    return min(last / first, _MAX_DECAY_RATIO)


def mfcc(power_spectrum: np.ndarray, sample_rate: int, n_fft: int, n_mels: int, n_mfcc: int) -> tuple:
    """Cepstral coefficients of one power spectrum (log-mel energies -> DCT-II)."""
    if n_mfcc <= 0 or len(power_spectrum) == 0:
        return ()
    fb = _mel_filterbank(sample_rate, n_fft, n_mels)
    mel_energies = fb @ power_spectrum
    log_mel = np.log(np.maximum(mel_energies, _LOG_FLOOR))
    coeffs = dct(log_mel, type=2, norm='ortho')[:n_mfcc]
    return tuple(float(c) for c in coeffs)


class FeatureExtractor:
    """Deterministic, stateless per-frame feature computation."""

    def __init__(self, config: FeatureConfig | None = None):
        self.config = config or FeatureConfig()
        self.band_edges: dict[str, tuple] = {
            name: (float(edges[0]), None if edges[1] is None else float(edges[1]))
            for name, edges in self.config.band_edges.items()
        }

    def extract(self, frame: AudioFrame) -> FeatureVector:
        samples = np.nan_to_num(np.asarray(frame.samples, dtype=np.float64),
                                nan=0.0, posinf=0.0, neginf=0.0)
        sr = int(frame.sample_rate)
        n = len(samples)

        if n == 0 or sr <= 0:
            return FeatureVector(
                band_energies={name: 0.0 for name in self.band_edges},
                spectral_centroid=0.0,
                spectral_rolloff=0.0,
                zero_crossing_rate=0.0,
                rms=0.0,
                mfcc=tuple(0.0 for _ in range(max(0, self.config.n_mfcc))),
            )

        windowed = samples * _hann_window(n)
        raw_spectrum = np.abs(np.fft.rfft(windowed))
        # Amplitude-normalized magnitudes so band values do not grow with frame size
        spectrum = (raw_spectrum / max(1, len(raw_spectrum))) * 2.0
        freqs = bin_frequencies(len(spectrum), sr)

        bands = {
            name: band_mean_magnitude(spectrum, freqs, low, high)
            for name, (low, high) in self.band_edges.items()
        }

        return FeatureVector(
            band_energies=bands,
            spectral_centroid=spectral_centroid(spectrum, freqs),
            spectral_rolloff=spectral_rolloff(spectrum, freqs, self.config.rolloff_percent),
            zero_crossing_rate=zero_crossing_rate(samples),
            rms=float(np.sqrt(np.mean(samples ** 2))),
            peak=float(np.max(np.abs(samples))),
            decay_ratio=decay_ratio(samples),
            dominant_frequency=extract_dominant_freq(spectrum, sr, 20.0, sr / 2.0),
            mfcc=mfcc(raw_spectrum ** 2, sr, n, self.config.n_mels, self.config.n_mfcc),
        )
