"""
Data model of the decision engine.

``FeatureRecord`` is one analysis frame as emitted by a feature source;
``FeatureWindow`` is the immutable statistical summary of many records.
All optional fields default to None so that absent features can be told
apart from measured zeros.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping, Optional, Sequence

from stylescope.logging_utils import log_event

# Scalar features summarized by mean/variance in every window.
SCALAR_FEATURES = (
    "rms",
    "spectral_centroid",
    "zero_crossing_rate",
    "spectral_flatness",
    "spectral_flux",
    "spectral_bandwidth",
    "spectral_rolloff",
    "spectral_spread",
    "spectral_skewness",
    "spectral_kurtosis",
    "loudness",
    "perceptual_spread",
    "perceptual_sharpness",
    "voice_probability",
    "percussive_ratio",
    "harmonic_ratio",
    "instrument_confidence",
)

# Fixed-length vector features and their declared dimension.
VECTOR_FEATURES = {
    "mfcc": 13,
    "chroma": 12,
    "spectral_contrast": 6,
}

# Scalars that are probabilities/ratios and are clamped to [0, 1].
RATIO_FEATURES = (
    "voice_probability",
    "percussive_ratio",
    "harmonic_ratio",
    "instrument_confidence",
)

PITCH_CLASSES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]


def clamp01(value: float) -> float:
    """Clamp to [0, 1]; non-finite input becomes 0."""
    if value is None or not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


def finite_or_zero(value: Optional[float]) -> float:
    """Replace None/NaN/Inf by 0.0."""
    if value is None:
        return 0.0
    value = float(value)
    return value if math.isfinite(value) else 0.0


# ---------------------------------------------------------------------------
# Model collaborator outputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PitchEstimate:
    """Output of an external pitch detector for one frame."""

    frequency_hz: float
    confidence: float
    voiced: bool
    pitch_class: Optional[str] = None

    @classmethod
    def from_frequency(cls, frequency_hz: float, confidence: float, voiced: bool = True):
        """Build an estimate and derive the pitch class from the frequency."""
        pitch_class = None
        if frequency_hz and frequency_hz > 0 and math.isfinite(frequency_hz):
            midi = 69 + 12 * math.log2(frequency_hz / 440.0)
            pitch_class = PITCH_CLASSES[int(round(midi)) % 12]
        return cls(frequency_hz, clamp01(confidence), voiced, pitch_class)


@dataclass(frozen=True)
class TempoEstimate:
    """Output of an external tempo detector."""

    bpm: float
    confidence: float
    steady: bool


@dataclass(frozen=True)
class InstrumentEstimate:
    """Output of an external instrument classifier."""

    probabilities: Mapping[str, float]
    dominant: str
    confidence: float


# ---------------------------------------------------------------------------
# Per-frame record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeatureRecord:
    """
    One analysis frame of measurements.

    ``timestamp_ms`` is required; every other field is optional. Ratio
    fields are clamped to [0, 1] on construction. Vector fields are stored
    as given: a vector whose length differs from ``VECTOR_FEATURES`` is
    treated as absent by the aggregator.
    """

    timestamp_ms: float

    rms: Optional[float] = None
    spectral_centroid: Optional[float] = None
    zero_crossing_rate: Optional[float] = None
    spectral_flatness: Optional[float] = None
    spectral_flux: Optional[float] = None
    spectral_bandwidth: Optional[float] = None
    spectral_rolloff: Optional[float] = None
    spectral_spread: Optional[float] = None
    spectral_skewness: Optional[float] = None
    spectral_kurtosis: Optional[float] = None
    loudness: Optional[float] = None
    perceptual_spread: Optional[float] = None
    perceptual_sharpness: Optional[float] = None
    voice_probability: Optional[float] = None
    percussive_ratio: Optional[float] = None
    harmonic_ratio: Optional[float] = None

    mfcc: Optional[Sequence[float]] = None               # 13
    chroma: Optional[Sequence[float]] = None             # 12
    spectral_contrast: Optional[Sequence[float]] = None  # 6

    instrument_probabilities: Optional[Mapping[str, float]] = None
    dominant_instrument: Optional[str] = None
    instrument_confidence: Optional[float] = None

    pitch: Optional[PitchEstimate] = None
    tempo: Optional[TempoEstimate] = None

    def __post_init__(self):
        for name in RATIO_FEATURES:
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, clamp01(value))
        for name in VECTOR_FEATURES:
            value = getattr(self, name)
            if value is not None:
                try:
                    value = tuple(float(v) for v in value)
                except (TypeError, ValueError):
                    log_event("WARNING", "Records", "Malformed vector treated as absent", feature=name)
                    value = None
                object.__setattr__(self, name, value)
        if self.instrument_probabilities is not None:
            object.__setattr__(self, "instrument_probabilities", _freeze(self.instrument_probabilities))

    def has(self, name: str) -> bool:
        """True when feature *name* is present (vectors: with valid length)."""
        value = getattr(self, name, None)
        if value is None:
            return False
        if name in VECTOR_FEATURES:
            return len(value) == VECTOR_FEATURES[name]
        return True


def merge_model_results(
    record: FeatureRecord,
    pitch: Optional[PitchEstimate] = None,
    tempo: Optional[TempoEstimate] = None,
    instruments: Optional[InstrumentEstimate] = None,
    voice_probability: Optional[float] = None,
) -> FeatureRecord:
    """
    Return a copy of *record* carrying model-collaborator results.

    Only the results that are given replace fields of the record.
    """
    changes: dict = {}
    if pitch is not None:
        changes["pitch"] = pitch
    if tempo is not None:
        changes["tempo"] = tempo
    if instruments is not None:
        changes["instrument_probabilities"] = dict(instruments.probabilities)
        changes["dominant_instrument"] = instruments.dominant
        changes["instrument_confidence"] = instruments.confidence
    if voice_probability is not None:
        changes["voice_probability"] = voice_probability
    if not changes:
        return record
    return replace(record, **changes)


# ---------------------------------------------------------------------------
# Window summary
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScalarStats:
    """Mean/population variance of one scalar feature over a window."""

    mean: float = 0.0
    variance: float = 0.0
    count: int = 0


@dataclass(frozen=True)
class VectorStats:
    """Per-dimension mean/variance of one vector feature over a window."""

    mean: tuple = ()
    variance: tuple = ()
    count: int = 0

    @classmethod
    def empty(cls, dim: int) -> "VectorStats":
        zeros = (0.0,) * dim
        return cls(zeros, zeros, 0)


@dataclass(frozen=True)
class PitchSummary:
    """Window summary of voiced pitch estimates."""

    mean_frequency_hz: float = 0.0
    stability: float = 0.0
    range_hz: float = 0.0
    confidence: float = 0.0
    voiced_fraction: float = 0.0
    dominant_pitch_class: Optional[str] = None


def _freeze(mapping: Mapping) -> Mapping:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class FeatureWindow:
    """
    Immutable statistical summary of the records inside the minimum window.

    Every scalar in ``SCALAR_FEATURES`` and every vector in
    ``VECTOR_FEATURES`` has an entry; features with no samples report
    zeros and a count of 0.
    """

    window_ms: float
    timestamp_ms: float
    n_records: int
    scalars: Mapping[str, ScalarStats]
    vectors: Mapping[str, VectorStats]
    rms_peak: float = 0.0
    tempo_bpm: float = 120.0
    beat_strength: float = 0.0
    dynamic_range: float = 0.0
    loudness_lkfs: float = 0.0
    dominant_instrument: str = "unknown"
    instrument_histogram: Mapping[str, float] = field(default_factory=dict)
    instrument_confidence: float = 0.0
    pitch: PitchSummary = field(default_factory=PitchSummary)
    model_tempo_bpm: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "scalars", _freeze(self.scalars))
        object.__setattr__(self, "vectors", _freeze(self.vectors))
        object.__setattr__(self, "instrument_histogram", _freeze(self.instrument_histogram))

    def mean(self, name: str) -> float:
        stats = self.scalars.get(name)
        return stats.mean if stats is not None else 0.0

    def variance(self, name: str) -> float:
        stats = self.scalars.get(name)
        return stats.variance if stats is not None else 0.0

    def count(self, name: str) -> int:
        if name in self.vectors:
            return self.vectors[name].count
        stats = self.scalars.get(name)
        return stats.count if stats is not None else 0

    def vector_mean(self, name: str) -> tuple:
        stats = self.vectors.get(name)
        if stats is None:
            return (0.0,) * VECTOR_FEATURES.get(name, 0)
        return stats.mean

    def vector_variance(self, name: str) -> tuple:
        stats = self.vectors.get(name)
        if stats is None:
            return (0.0,) * VECTOR_FEATURES.get(name, 0)
        return stats.variance

    def has_vector(self, name: str) -> bool:
        stats = self.vectors.get(name)
        return stats is not None and stats.count > 0
