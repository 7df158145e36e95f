"""
Decision serialization module.

Converts engine outputs (windows, stability metrics, style results, HPSS
summaries, decisions and offline reports) into rounded plain dictionaries
and JSON. Sample arrays are never inlined in JSON; use
:meth:`DecisionExporter.export_numpy` for separated signals.
"""

import json
import math
from dataclasses import asdict
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import numpy as np

from stylescope.core.classifier import StyleResult
from stylescope.core.hpss_features import HPSSFeatures
from stylescope.core.records import (
    SCALAR_FEATURES,
    VECTOR_FEATURES,
    FeatureWindow,
    PitchSummary,
    ScalarStats,
    VectorStats,
)
from stylescope.core.separation import HPSSResult
from stylescope.core.stability import StabilityMetrics

SCHEMA_VERSION = "1.0"

# Keys a serialized window must carry to be rebuilt
WINDOW_REQUIRED_KEYS = ("window_ms", "timestamp_ms", "n_records", "scalars", "vectors")


class DecisionExporter:
    """
    Exports decision-engine outputs to dictionaries and JSON.

    All floats are rounded to ``precision`` decimals; non-finite floats are
    written as None.
    """

    def __init__(self, precision: int = 4):
        """
        Initialize the exporter.

        Args:
            precision: Decimal places for floating point values.
        """
        self.precision = precision

    def _round(self, value: Any) -> Optional[float]:
        """Round to configured precision; None for missing or non-finite values."""
        if value is None:
            return None
        try:
            f = float(value)
        except (TypeError, ValueError):
            return None
        if math.isnan(f) or math.isinf(f):
            return None
        return round(f, self.precision)

    def _round_seq(self, values) -> list:
        return [self._round(v) for v in values]

    # ------------------------------------------------------------------
    # Windows
    # ------------------------------------------------------------------

    def window_to_dict(self, window: Optional[FeatureWindow]) -> Optional[dict[str, Any]]:
        if window is None:
            return None
        return {
            "window_ms": self._round(window.window_ms),
            "timestamp_ms": self._round(window.timestamp_ms),
            "n_records": window.n_records,
            "scalars": {
                name: {
                    "mean": self._round(stats.mean),
                    "variance": self._round(stats.variance),
                    "count": stats.count,
                }
                for name, stats in window.scalars.items()
            },
            "vectors": {
                name: {
                    "mean": self._round_seq(stats.mean),
                    "variance": self._round_seq(stats.variance),
                    "count": stats.count,
                }
                for name, stats in window.vectors.items()
            },
            "rms_peak": self._round(window.rms_peak),
            "tempo_bpm": self._round(window.tempo_bpm),
            "beat_strength": self._round(window.beat_strength),
            "dynamic_range": self._round(window.dynamic_range),
            "loudness_lkfs": self._round(window.loudness_lkfs),
            "dominant_instrument": window.dominant_instrument,
            "instrument_histogram": {
                label: self._round(value) for label, value in window.instrument_histogram.items()
            },
            "instrument_confidence": self._round(window.instrument_confidence),
            "pitch": {
                key: (self._round(value) if isinstance(value, float) else value)
                for key, value in asdict(window.pitch).items()
            },
            "model_tempo_bpm": self._round(window.model_tempo_bpm),
        }

    def window_from_dict(self, data: Mapping[str, Any]) -> Optional[FeatureWindow]:
        """
        Rebuild a FeatureWindow from :meth:`window_to_dict` output.

        Returns None when a required key is missing or malformed.
        """
        if not isinstance(data, Mapping) or any(key not in data for key in WINDOW_REQUIRED_KEYS):
            return None
        try:
            scalars = {}
            for name in SCALAR_FEATURES:
                entry = data["scalars"].get(name)
                scalars[name] = (
                    ScalarStats(float(entry["mean"] or 0.0), float(entry["variance"] or 0.0), int(entry["count"]))
                    if entry else ScalarStats()
                )
            vectors = {}
            for name, dim in VECTOR_FEATURES.items():
                entry = data["vectors"].get(name)
                if entry and len(entry["mean"]) == dim and len(entry["variance"]) == dim:
                    vectors[name] = VectorStats(
                        tuple(float(v or 0.0) for v in entry["mean"]),
                        tuple(float(v or 0.0) for v in entry["variance"]),
                        int(entry["count"]),
                    )
                else:
                    vectors[name] = VectorStats.empty(dim)
            pitch = data.get("pitch") or {}
            return FeatureWindow(
                window_ms=float(data["window_ms"]),
                timestamp_ms=float(data["timestamp_ms"]),
                n_records=int(data["n_records"]),
                scalars=scalars,
                vectors=vectors,
                rms_peak=float(data.get("rms_peak") or 0.0),
                tempo_bpm=float(data.get("tempo_bpm") or 120.0),
                beat_strength=float(data.get("beat_strength") or 0.0),
                dynamic_range=float(data.get("dynamic_range") or 0.0),
                loudness_lkfs=float(data.get("loudness_lkfs") or 0.0),
                dominant_instrument=data.get("dominant_instrument") or "unknown",
                instrument_histogram={
                    label: float(value or 0.0)
                    for label, value in (data.get("instrument_histogram") or {}).items()
                },
                instrument_confidence=float(data.get("instrument_confidence") or 0.0),
                pitch=PitchSummary(
                    mean_frequency_hz=float(pitch.get("mean_frequency_hz") or 0.0),
                    stability=float(pitch.get("stability") or 0.0),
                    range_hz=float(pitch.get("range_hz") or 0.0),
                    confidence=float(pitch.get("confidence") or 0.0),
                    voiced_fraction=float(pitch.get("voiced_fraction") or 0.0),
                    dominant_pitch_class=pitch.get("dominant_pitch_class"),
                ),
                model_tempo_bpm=float(data.get("model_tempo_bpm") or 0.0),
            )
        except (KeyError, TypeError, ValueError, AttributeError):
            return None

    # ------------------------------------------------------------------
    # Metrics and results
    # ------------------------------------------------------------------

    def stability_to_dict(self, metrics: Optional[StabilityMetrics]) -> Optional[dict[str, Any]]:
        if metrics is None:
            return None
        out: dict[str, Any] = {}
        for key, value in asdict(metrics).items():
            if isinstance(value, bool):
                out[key] = value
            elif isinstance(value, (int, float)):
                out[key] = self._round(value)
            else:
                out[key] = list(value)
        return out

    def style_to_dict(self, style: StyleResult) -> dict[str, Any]:
        return {
            "label": style.label,
            "base_style": style.base_style,
            "confidence": self._round(style.confidence),
            "talking_points": list(style.talking_points),
            "subgenres": list(style.subgenres),
        }

    def hpss_to_dict(self, result: Optional[HPSSResult]) -> Optional[dict[str, Any]]:
        """Summary of an HPSS result; the sample arrays are left out."""
        if result is None:
            return None
        return {
            "n_samples": result.n_samples,
            "sample_rate": result.sample_rate,
            "duration": self._round(result.duration),
            "harmonic_ratio": self._round(result.harmonic_ratio),
            "percussive_ratio": self._round(result.percussive_ratio),
            "separation_quality": self._round(result.separation_quality),
            "is_fallback": result.is_fallback,
            "processing_ms": self._round(result.processing_ms),
        }

    def hpss_features_to_dict(self, features: Optional[HPSSFeatures]) -> Optional[dict[str, Any]]:
        if features is None:
            return None
        return {
            key: (self._round(value) if isinstance(value, float) else value)
            for key, value in asdict(features).items()
        }

    def decision_to_dict(self, decision) -> dict[str, Any]:
        return {
            "timestamp_ms": self._round(decision.timestamp_ms),
            "state": decision.state.value,
            "style": self.style_to_dict(decision.style),
            "stability": self.stability_to_dict(decision.stability),
            "window": self.window_to_dict(decision.window),
        }

    def report_to_dict(self, report) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "duration_s": self._round(report.duration_s),
            "sample_rate": report.sample_rate,
            "n_records": report.n_records,
            "final_style": self.style_to_dict(report.final_style),
            "final_window": self.window_to_dict(report.final_window),
            "final_stability": self.stability_to_dict(report.final_stability),
            "hpss": self.hpss_to_dict(report.hpss),
            "hpss_features": self.hpss_features_to_dict(report.hpss_features),
            "decisions": [self.decision_to_dict(d) for d in report.decisions],
            "state_history": [
                {"timestamp_ms": self._round(ts), "state": state} for ts, state in report.state_history
            ],
        }

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def to_json(self, report, indent: int = 2) -> str:
        return json.dumps(self.report_to_dict(report), indent=indent)

    def export_json(
        self,
        report,
        output_path: Union[str, Path],
        indent: int = 2,
    ) -> Path:
        """
        Export an AnalysisReport to a JSON file.

        Args:
            report: AnalysisReport from DecisionEngine.analyze_signal/analyze_file.
            output_path: Path for output JSON file.
            indent: JSON indentation level.

        Returns:
            Path to written file.
        """
        output_path = Path(output_path)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(self.report_to_dict(report), f, indent=indent)
        return output_path

    def export_numpy(
        self,
        result: HPSSResult,
        output_path: Union[str, Path],
    ) -> Path:
        """
        Export separated signals as a NumPy .npz archive.

        Args:
            result: HPSS result.
            output_path: Path for output .npz file.

        Returns:
            Path to written file.
        """
        output_path = Path(output_path)
        np.savez_compressed(
            output_path,
            harmonic=result.harmonic,
            percussive=result.percussive,
            residual=result.residual,
            original=result.original,
            sample_rate=np.array(result.sample_rate),
            harmonic_ratio=np.array(result.harmonic_ratio),
            percussive_ratio=np.array(result.percussive_ratio),
            separation_quality=np.array(result.separation_quality),
        )
        return output_path
