"""
Windowed feature aggregation.

Turns a jittery stream of per-frame ``FeatureRecord`` objects into
``FeatureWindow`` snapshots: per-feature mean and population variance,
an RMS peak, a flux-based tempo estimate, beat strength, dynamic range,
a loudness estimate and instrument statistics.

The aggregator never raises on bad data. Absent fields are skipped,
malformed vectors are ignored, and any non-finite intermediate result is
replaced by 0 before it leaves this module.
"""

from __future__ import annotations

import math
import threading
from collections import Counter, deque
from typing import Iterable, Optional, Sequence

import numpy as np

from stylescope.config import AggregatorConfig
from stylescope.core.records import (
    SCALAR_FEATURES,
    VECTOR_FEATURES,
    FeatureRecord,
    FeatureWindow,
    PitchSummary,
    ScalarStats,
    VectorStats,
    clamp01,
    finite_or_zero,
)
from stylescope.logging_utils import log_event

_EPS = 1e-3
_LOG_EVERY_N_FRAMES = 50


def _finite_values(values: Iterable[Optional[float]]) -> np.ndarray:
    """Collect present, finite values as a float array."""
    arr = np.array([v for v in values if v is not None], dtype=float)
    if arr.size == 0:
        return arr
    return arr[np.isfinite(arr)]


def scalar_stats(values: np.ndarray) -> ScalarStats:
    """Mean and population variance (divide by N) of *values*."""
    if values.size == 0:
        return ScalarStats()
    mean = finite_or_zero(np.mean(values))
    variance = max(0.0, finite_or_zero(np.var(values)))
    return ScalarStats(mean=mean, variance=variance, count=int(values.size))


def vector_stats(vectors: Sequence[Sequence[float]], dim: int) -> VectorStats:
    """
    Per-dimension mean/variance over the vectors of length *dim*.

    Vectors of any other length are excluded. Non-finite components are
    excluded from their own dimension only.
    """
    valid = [v for v in vectors if v is not None and len(v) == dim]
    if not valid:
        return VectorStats.empty(dim)
    matrix = np.asarray(valid, dtype=float)
    finite = np.isfinite(matrix)
    means = np.zeros(dim)
    variances = np.zeros(dim)
    for d in range(dim):
        column = matrix[finite[:, d], d]
        if column.size:
            means[d] = finite_or_zero(column.mean())
            variances[d] = max(0.0, finite_or_zero(column.var()))
    return VectorStats(
        mean=tuple(float(m) for m in means),
        variance=tuple(float(v) for v in variances),
        count=len(valid),
    )


def detect_flux_peaks(flux: np.ndarray, threshold_std: float = 0.5) -> np.ndarray:
    """
    Indices of local maxima above ``mean + threshold_std * std``.

    A sample is a peak when it exceeds the threshold and both of its
    immediate neighbours. The first and last samples are never peaks.
    """
    if flux.size < 3:
        return np.array([], dtype=int)
    threshold = flux.mean() + threshold_std * flux.std()
    center = flux[1:-1]
    is_peak = (center > threshold) & (center > flux[:-2]) & (center > flux[2:])
    return np.nonzero(is_peak)[0] + 1


class FeatureAggregator:
    """
    Sliding-window feature aggregator for one stream.

    Records are kept in a deque ordered by timestamp. ``add_frame`` evicts
    records older than ``max_window_ms`` relative to the newest timestamp;
    ``compute_window_features`` summarizes the records newer than
    ``min_window_ms``. Both methods are guarded by a lock and the window is
    computed from a copy, so a consumer thread may read snapshots while the
    producer keeps appending.
    """

    def __init__(self, config: Optional[AggregatorConfig] = None):
        self.config = config or AggregatorConfig()
        self._records: deque[FeatureRecord] = deque()
        self._lock = threading.Lock()
        self._frames_seen = 0
        self._dropped = 0

    # ------------------------------------------------------------------
    # Buffer management
    # ------------------------------------------------------------------

    def add_frame(self, record: FeatureRecord) -> bool:
        """
        Append *record* and evict expired records.

        Returns False (and keeps the buffer unchanged) when the record's
        timestamp is not finite or is older than the newest buffered record.
        """
        ts = record.timestamp_ms
        with self._lock:
            if not math.isfinite(ts):
                self._dropped += 1
                log_event("WARNING", "Aggregator", "Dropped record with non-finite timestamp", timestamp=ts)
                return False
            if self._records and ts < self._records[-1].timestamp_ms:
                self._dropped += 1
                log_event(
                    "WARNING", "Aggregator", "Dropped out-of-order record",
                    timestamp=ts, newest=self._records[-1].timestamp_ms,
                )
                return False
            self._records.append(record)
            self._evict(ts)
            self._frames_seen += 1
            if self._frames_seen % _LOG_EVERY_N_FRAMES == 0:
                log_event(
                    "DEBUG", "Aggregator", "Frames buffered",
                    buffered=len(self._records), seen=self._frames_seen,
                    rms=record.rms,
                )
        return True

    def _evict(self, now_ms: float) -> None:
        cutoff = now_ms - self.config.max_window_ms
        while self._records and self._records[0].timestamp_ms < cutoff:
            self._records.popleft()

    def reset(self) -> None:
        """Drop every buffered record."""
        with self._lock:
            self._records.clear()
            self._frames_seen = 0
            self._dropped = 0

    @property
    def frame_count(self) -> int:
        return len(self._records)

    @property
    def dropped_count(self) -> int:
        return self._dropped

    @property
    def latest_timestamp(self) -> Optional[float]:
        with self._lock:
            return self._records[-1].timestamp_ms if self._records else None

    def snapshot(self) -> list[FeatureRecord]:
        """Copy of the buffered records, oldest first."""
        with self._lock:
            return list(self._records)

    # ------------------------------------------------------------------
    # Window computation
    # ------------------------------------------------------------------

    def compute_window_features(self, now_ms: Optional[float] = None) -> Optional[FeatureWindow]:
        """
        Summarize the records newer than ``min_window_ms``.

        Args:
            now_ms: Reference time. Defaults to the newest record timestamp.

        Returns:
            A FeatureWindow, or None when no record lies in the window.
        """
        records = self.snapshot()
        if not records:
            return None
        if now_ms is None:
            now_ms = records[-1].timestamp_ms
        cutoff = now_ms - self.config.min_window_ms
        window_records = [r for r in records if cutoff < r.timestamp_ms <= now_ms]
        if not window_records:
            log_event("DEBUG", "Aggregator", "No records inside the minimum window",
                      buffered=len(records))
            return None
        return self.summarize(window_records, now_ms)

    def summarize(self, records: Sequence[FeatureRecord], now_ms: float) -> FeatureWindow:
        """Build a FeatureWindow from an explicit list of records."""
        scalars = {
            name: scalar_stats(_finite_values(getattr(r, name) for r in records))
            for name in SCALAR_FEATURES
        }
        vectors = {
            name: vector_stats([getattr(r, name) for r in records], dim)
            for name, dim in VECTOR_FEATURES.items()
        }

        rms = _finite_values(r.rms for r in records)
        flux = _finite_values(r.spectral_flux for r in records)
        histogram, dominant, instrument_conf = self.instrument_statistics(records)

        return FeatureWindow(
            window_ms=self.config.min_window_ms,
            timestamp_ms=float(now_ms),
            n_records=len(records),
            scalars=scalars,
            vectors=vectors,
            rms_peak=finite_or_zero(rms.max()) if rms.size else 0.0,
            tempo_bpm=self.estimate_tempo(flux),
            beat_strength=self.beat_strength(flux),
            dynamic_range=self.dynamic_range(rms),
            loudness_lkfs=self.loudness_lkfs(rms),
            dominant_instrument=dominant,
            instrument_histogram=histogram,
            instrument_confidence=instrument_conf,
            pitch=self.pitch_summary(records),
            model_tempo_bpm=self.model_tempo(records),
        )

    # ------------------------------------------------------------------
    # Derived scalars
    # ------------------------------------------------------------------

    def estimate_tempo(self, flux: np.ndarray) -> float:
        """
        Tempo from spectral-flux peak spacing.

        BPM = 60000 / (mean peak interval in frames * frame period), clamped
        to the configured bounds. Falls back to the default tempo when there
        are too few flux samples or fewer than two peaks.
        """
        cfg = self.config
        if flux.size < cfg.min_flux_samples:
            return cfg.default_tempo_bpm
        peaks = detect_flux_peaks(flux, cfg.peak_threshold_std)
        if peaks.size < 2:
            return cfg.default_tempo_bpm
        mean_interval = float(np.mean(np.diff(peaks)))
        bpm = finite_or_zero(60000.0 / (mean_interval * cfg.frame_period_ms))
        if bpm <= 0:
            return cfg.default_tempo_bpm
        return float(np.clip(bpm, cfg.tempo_min_bpm, cfg.tempo_max_bpm))

    @staticmethod
    def beat_strength(flux: np.ndarray) -> float:
        """Flux variance over mean, capped at 1."""
        if flux.size == 0:
            return 0.0
        ratio = float(np.var(flux)) / (abs(float(np.mean(flux))) + _EPS)
        return clamp01(ratio)

    @staticmethod
    def dynamic_range(rms: np.ndarray) -> float:
        if rms.size == 0:
            return 0.0
        return max(0.0, finite_or_zero(rms.max() - rms.min()))

    @staticmethod
    def loudness_lkfs(rms: np.ndarray) -> float:
        """Rough LKFS estimate from mean RMS, clamped to [-70, -10]."""
        if rms.size == 0:
            return 0.0
        db = 20.0 * math.log10(max(float(np.mean(rms)), 1e-10))
        return float(np.clip(db - 20.0, -70.0, -10.0))

    @staticmethod
    def instrument_statistics(records: Sequence[FeatureRecord]) -> tuple[dict, str, float]:
        """
        Normalized instrument histogram over the window.

        Each record contributes its probability map plus a bonus for its
        dominant instrument (its instrument confidence, or 0.1).
        """
        histogram: dict[str, float] = {}
        total = 0.0
        for r in records:
            if r.instrument_probabilities:
                for label, value in r.instrument_probabilities.items():
                    if value is None or not math.isfinite(value) or value <= 0:
                        continue
                    histogram[label] = histogram.get(label, 0.0) + float(value)
                    total += float(value)
            if r.dominant_instrument:
                bonus = r.instrument_confidence if r.instrument_confidence is not None else 0.1
                if bonus > 0:
                    histogram[r.dominant_instrument] = histogram.get(r.dominant_instrument, 0.0) + bonus
                    total += bonus

        if total <= 0:
            return {}, "unknown", 0.0
        normalized = {label: value / total for label, value in histogram.items()}
        dominant = max(normalized, key=lambda label: (normalized[label], label))
        return normalized, dominant, clamp01(normalized[dominant])

    @staticmethod
    def pitch_summary(records: Sequence[FeatureRecord]) -> PitchSummary:
        """Summary of voiced pitch estimates carried by the records."""
        with_pitch = [r.pitch for r in records if r.pitch is not None]
        voiced = [
            p for p in with_pitch
            if p.voiced and p.frequency_hz and math.isfinite(p.frequency_hz) and p.frequency_hz > 0
        ]
        if not voiced:
            return PitchSummary()
        freqs = np.array([p.frequency_hz for p in voiced], dtype=float)
        mean_f = float(freqs.mean())
        stability = max(0.0, 1.0 - float(freqs.std()) / mean_f) if mean_f > 0 else 0.0
        classes = Counter(p.pitch_class for p in voiced if p.pitch_class)
        return PitchSummary(
            mean_frequency_hz=mean_f,
            stability=clamp01(stability),
            range_hz=float(freqs.max() - freqs.min()),
            confidence=clamp01(float(np.mean([p.confidence for p in voiced]))),
            voiced_fraction=clamp01(len(voiced) / len(with_pitch)),
            dominant_pitch_class=classes.most_common(1)[0][0] if classes else None,
        )

    @staticmethod
    def model_tempo(records: Sequence[FeatureRecord]) -> float:
        """Mean BPM of steady model tempo estimates, 0 when there are none."""
        bpms = _finite_values(r.tempo.bpm for r in records if r.tempo is not None and r.tempo.steady)
        return finite_or_zero(bpms.mean()) if bpms.size else 0.0
