import numpy as np


def bin_frequencies(n_bins: int, sample_rate: int) -> np.ndarray:
    """Center frequency (Hz) of each rfft bin for a spectrum of `n_bins` bins."""
    if n_bins <= 0 or sample_rate <= 0:
        return np.zeros(0)
    n_fft = 2 * (n_bins - 1) if n_bins > 1 else 1
    return np.arange(n_bins) * (sample_rate / n_fft)


def band_mean_magnitude(
    spectrum: np.ndarray | None,
    freqs: np.ndarray,
    freq_low: float,
    freq_high: float | None,
) -> float:
    """Mean magnitude of the bins in [freq_low, freq_high). Empty band -> 0."""
    if spectrum is None or len(spectrum) == 0:
        return 0.0

    if freq_high is None:
        mask = freqs >= freq_low
    else:
        if freq_low >= freq_high:
            return 0.0
        mask = (freqs >= freq_low) & (freqs < freq_high)
    if not np.any(mask):
        return 0.0
    return float(np.mean(spectrum[mask]))


def spectral_centroid(spectrum: np.ndarray | None, freqs: np.ndarray) -> float:
    """Magnitude-weighted mean frequency. Silent spectrum -> 0."""
    if spectrum is None or len(spectrum) == 0:
        return 0.0
    total = float(np.sum(spectrum))
    if total <= 1e-12:
        return 0.0
    return float(np.sum(freqs * spectrum) / total)


def spectral_rolloff(
    spectrum: np.ndarray | None,
    freqs: np.ndarray,
    percent: float = 0.85,
) -> float:
    """Frequency below which `percent` of the spectral energy lies. Silent spectrum -> 0."""
    if spectrum is None or len(spectrum) == 0:
        return 0.0
    energy = np.cumsum(spectrum ** 2)
    total = float(energy[-1])
    if total <= 1e-12:
        return 0.0
    idx = int(np.searchsorted(energy, percent * total))
    idx = min(idx, len(freqs) - 1)
    return float(freqs[idx])


def extract_dominant_freq(
    spectrum: np.ndarray | None,
    sample_rate: int,
    freq_low: float,
    freq_high: float,
) -> float:
    """Extract dominant frequency from a specific Hz range of the spectrum."""
    if spectrum is None or len(spectrum) == 0:
        return 0.0

    freq_per_bin = sample_rate / (2 * len(spectrum))
    if freq_per_bin <= 0:
        return 0.0

    low_bin = max(0, int(freq_low / freq_per_bin))
    high_bin = min(len(spectrum) - 1, int(freq_high / freq_per_bin))
    if low_bin >= high_bin:
        return 0.0

    band = spectrum[low_bin:high_bin + 1]
    if float(np.max(band)) <= 0.0:
        return 0.0
    peak_bin = low_bin + int(np.argmax(band))
    return peak_bin * freq_per_bin
