"""
Features derived from an HPSS result.

Describes the harmonic component (spectral shape, pitch strength, harmonic
complexity), the percussive component (onset density, attack strength,
rhythm regularity) and the separation itself, then maps them to a coarse
instrument family that can be merged into FeatureRecords.
"""

from dataclasses import dataclass, replace
from typing import Optional

import librosa
import numpy as np

from stylescope.core.records import FeatureRecord, clamp01, finite_or_zero
from stylescope.core.separation import HPSSResult
from stylescope.logging_utils import log_event

INSTRUMENT_FAMILIES = ("Percussion", "String", "Wind", "Bass", "Mixed")


@dataclass(frozen=True)
class HPSSFeatures:
    """Summary features of one separated buffer."""

    # Harmonic component
    harmonic_centroid: float = 0.0
    harmonic_bandwidth: float = 0.0
    harmonic_rolloff: float = 0.0
    pitch_strength: float = 0.0
    harmonic_complexity: float = 0.0

    # Percussive component
    onset_density: float = 0.0          # onsets per second
    attack_strength: float = 0.0
    rhythm_regularity: float = 0.0

    # Separation
    harmonic_ratio: float = 0.0
    percussive_ratio: float = 0.0
    separation_quality: float = 0.0
    energy_preservation: float = 0.0
    harmonic_percussive_ratio: float = 0.0

    instrument_family: str = "Mixed"
    is_fallback: bool = False


def _mean_spectrum(y: np.ndarray, n_fft: int, hop_length: int) -> np.ndarray:
    return np.abs(librosa.stft(y, n_fft=n_fft, hop_length=hop_length)).mean(axis=1)


def spectral_entropy(spectrum: np.ndarray) -> float:
    """Shannon entropy of *spectrum* normalized to [0, 1] by log2(n_bins)."""
    total = float(spectrum.sum())
    if total <= 0 or spectrum.size < 2:
        return 0.0
    p = spectrum / total
    p = p[p > 0]
    return clamp01(float(-(p * np.log2(p)).sum()) / np.log2(spectrum.size))


def attack_strength(y: np.ndarray, block: int = 1024) -> float:
    """Largest mean absolute sample-to-sample change over fixed blocks."""
    if y.size < 2:
        return 0.0
    block = min(block, y.size)
    n_blocks = y.size // block
    blocks = y[: n_blocks * block].reshape(n_blocks, block)
    return finite_or_zero(np.abs(np.diff(blocks, axis=1)).sum(axis=1).max() / block)


def rhythm_regularity(onset_times: np.ndarray) -> float:
    """1 - coefficient of variation of inter-onset intervals, in [0, 1]."""
    if onset_times.size < 3:
        return 0.0
    intervals = np.diff(onset_times)
    mean = float(intervals.mean())
    if mean <= 0:
        return 0.0
    return clamp01(1.0 - float(intervals.std()) / mean)


def classify_instrument_family(
    percussive_ratio: float,
    pitch_strength: float,
    harmonic_centroid: float,
) -> str:
    if percussive_ratio > 0.6:
        return "Percussion"
    if pitch_strength > 0.7:
        return "String"
    if harmonic_centroid > 2000:
        return "Wind"
    if harmonic_centroid < 1000:
        return "Bass"
    return "Mixed"


def fallback_features(result: HPSSResult) -> HPSSFeatures:
    return HPSSFeatures(
        harmonic_ratio=result.harmonic_ratio,
        percussive_ratio=result.percussive_ratio,
        separation_quality=result.separation_quality,
        instrument_family="Mixed",
        is_fallback=True,
    )


def extract_hpss_features(
    result: HPSSResult,
    n_fft: int = 2048,
    hop_length: int = 512,
) -> HPSSFeatures:
    """
    Derive HPSSFeatures from *result*.

    Args:
        result: Output of HPSSEngine.separate.
        n_fft: FFT size for the harmonic spectral descriptors.
        hop_length: Hop size for spectral and onset analysis.

    Returns:
        HPSSFeatures. Neutral features when *result* is a fallback or when
        the buffer is too short to analyze.
    """
    if result.is_fallback or result.n_samples < n_fft:
        return fallback_features(result)

    sr = result.sample_rate
    harmonic = np.asarray(result.harmonic, dtype=np.float32)
    percussive = np.asarray(result.percussive, dtype=np.float32)

    try:
        centroid = librosa.feature.spectral_centroid(y=harmonic, sr=sr, n_fft=n_fft, hop_length=hop_length)
        bandwidth = librosa.feature.spectral_bandwidth(y=harmonic, sr=sr, n_fft=n_fft, hop_length=hop_length)
        rolloff = librosa.feature.spectral_rolloff(y=harmonic, sr=sr, n_fft=n_fft, hop_length=hop_length)
        spectrum = _mean_spectrum(harmonic, n_fft, hop_length)
        total = float(spectrum.sum())
        pitch_strength = float(spectrum.max()) / total if total > 0 else 0.0

        onset_times = librosa.onset.onset_detect(
            y=percussive, sr=sr, hop_length=hop_length, units="time"
        )
    except Exception as exc:
        log_event("WARNING", "HPSSFeatures", "Feature extraction failed, using neutral values",
                  error=f"{type(exc).__name__}: {exc}")
        return fallback_features(result)

    harmonic_energy = float(np.sum(np.square(harmonic, dtype=np.float64)))
    percussive_energy = float(np.sum(np.square(percussive, dtype=np.float64)))
    residual_energy = float(np.sum(np.square(result.residual, dtype=np.float64)))
    total_energy = harmonic_energy + percussive_energy + residual_energy

    harmonic_centroid = finite_or_zero(np.mean(centroid))
    pitch_strength = clamp01(pitch_strength)
    return HPSSFeatures(
        harmonic_centroid=harmonic_centroid,
        harmonic_bandwidth=finite_or_zero(np.mean(bandwidth)),
        harmonic_rolloff=finite_or_zero(np.mean(rolloff)),
        pitch_strength=pitch_strength,
        harmonic_complexity=spectral_entropy(spectrum),
        onset_density=len(onset_times) / result.duration if result.duration > 0 else 0.0,
        attack_strength=attack_strength(percussive),
        rhythm_regularity=rhythm_regularity(np.asarray(onset_times)),
        harmonic_ratio=result.harmonic_ratio,
        percussive_ratio=result.percussive_ratio,
        separation_quality=result.separation_quality,
        energy_preservation=clamp01((harmonic_energy + percussive_energy) / total_energy)
        if total_energy > 0 else 0.0,
        harmonic_percussive_ratio=finite_or_zero(harmonic_energy / percussive_energy)
        if percussive_energy > 0 else 0.0,
        instrument_family=classify_instrument_family(
            result.percussive_ratio, pitch_strength, harmonic_centroid
        ),
    )


def enrich_record(
    record: FeatureRecord,
    result: HPSSResult,
    features: Optional[HPSSFeatures] = None,
) -> FeatureRecord:
    """
    Fill the HPSS-derived fields of *record* that it does not carry yet.

    Sets harmonic/percussive ratios from *result* and, when *features* are
    given, the dominant instrument family with the separation quality as
    its confidence. Fields already present on the record are kept.
    """
    changes: dict = {}
    if record.harmonic_ratio is None:
        changes["harmonic_ratio"] = result.harmonic_ratio
    if record.percussive_ratio is None:
        changes["percussive_ratio"] = result.percussive_ratio
    if features is not None and record.dominant_instrument is None:
        changes["dominant_instrument"] = features.instrument_family
        changes["instrument_confidence"] = result.separation_quality
    return replace(record, **changes) if changes else record
