"""
Engine configuration.

Every tunable of the decision engine lives in one of the dataclasses below.
Each dataclass validates itself in ``__post_init__`` so that an invalid
combination (for example an exit threshold above the enter threshold) is
rejected when the configuration is built rather than silently breaking the
engine later.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Mapping, Optional, Union

TRIGGER_MODES = ("all", "weighted")
MISSING_DIMENSION_POLICIES = ("skip", "fail")


class ConfigurationError(ValueError):
    """Raised when a configuration value breaks an engine invariant."""


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigurationError(message)


@dataclass(frozen=True)
class AggregatorConfig:
    """Sliding-window parameters for the feature aggregator (milliseconds)."""

    max_window_ms: float = 4000.0
    min_window_ms: float = 2000.0
    frame_period_ms: float = 23.2        # assumed spacing of flux samples
    min_flux_samples: int = 10           # below this the tempo defaults
    peak_threshold_std: float = 0.5      # flux peak = mean + k * std
    tempo_min_bpm: float = 60.0
    tempo_max_bpm: float = 180.0
    default_tempo_bpm: float = 120.0

    def __post_init__(self):
        _require(self.max_window_ms > 0, "max_window_ms must be positive")
        _require(self.min_window_ms > 0, "min_window_ms must be positive")
        _require(
            self.min_window_ms <= self.max_window_ms,
            f"min_window_ms ({self.min_window_ms}) must not exceed "
            f"max_window_ms ({self.max_window_ms})",
        )
        _require(self.frame_period_ms > 0, "frame_period_ms must be positive")
        _require(self.min_flux_samples >= 3, "min_flux_samples must be at least 3")
        _require(
            0 < self.tempo_min_bpm < self.tempo_max_bpm,
            "tempo bounds must satisfy 0 < tempo_min_bpm < tempo_max_bpm",
        )
        _require(
            self.tempo_min_bpm <= self.default_tempo_bpm <= self.tempo_max_bpm,
            "default_tempo_bpm must lie inside the tempo bounds",
        )


@dataclass(frozen=True)
class TriggerWeights:
    """Weights of the per-dimension flags in the weighted trigger score."""

    centroid: float = 0.3
    chroma: float = 0.3
    tempo: float = 0.2
    energy: float = 0.2

    def __post_init__(self):
        for f in fields(self):
            _require(getattr(self, f.name) >= 0, f"trigger weight {f.name} must be >= 0")

    def as_dict(self) -> dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class StabilityConfig:
    """Thresholds and state-machine timings of the stability detector."""

    centroid_threshold: float = 0.15     # variance / mean^2
    chroma_threshold: float = 0.08       # mean per-bin variance
    tempo_change_threshold: float = 18.0  # BPM
    energy_enter: float = 0.08
    energy_exit: float = 0.035
    min_ready_ms: float = 1500.0
    min_confidence: float = 0.6
    trigger_mode: str = "all"
    trigger_threshold: float = 0.6
    trigger_weights: TriggerWeights = field(default_factory=TriggerWeights)
    missing_dimension_policy: str = "skip"
    bpm_history_size: int = 8

    def __post_init__(self):
        _require(self.centroid_threshold >= 0, "centroid_threshold must be >= 0")
        _require(self.chroma_threshold >= 0, "chroma_threshold must be >= 0")
        _require(self.tempo_change_threshold >= 0, "tempo_change_threshold must be >= 0")
        _require(
            self.energy_exit < self.energy_enter,
            f"energy_exit ({self.energy_exit}) must be strictly below "
            f"energy_enter ({self.energy_enter}) for hysteresis",
        )
        _require(self.energy_exit >= 0, "energy_exit must be >= 0")
        _require(self.min_ready_ms >= 0, "min_ready_ms must be >= 0")
        _require(0 <= self.min_confidence <= 1, "min_confidence must lie in [0, 1]")
        _require(
            self.trigger_mode in TRIGGER_MODES,
            f"trigger_mode must be one of {TRIGGER_MODES}, got {self.trigger_mode!r}",
        )
        _require(0 <= self.trigger_threshold <= 1, "trigger_threshold must lie in [0, 1]")
        _require(
            self.missing_dimension_policy in MISSING_DIMENSION_POLICIES,
            "missing_dimension_policy must be one of "
            f"{MISSING_DIMENSION_POLICIES}, got {self.missing_dimension_policy!r}",
        )
        _require(self.bpm_history_size >= 1, "bpm_history_size must be >= 1")


@dataclass(frozen=True)
class HPSSConfig:
    """Median-filtering HPSS parameters."""

    kernel_size: int = 17
    iterations: int = 10
    power: float = 2.0
    window_size: int = 2048
    hop_size: int = 512

    def __post_init__(self):
        _require(self.kernel_size >= 1, "kernel_size must be >= 1")
        _require(self.iterations >= 1, "iterations must be >= 1")
        _require(self.power > 0, "power must be positive")
        _require(self.window_size >= 16, "window_size must be >= 16")
        _require(self.hop_size >= 1, "hop_size must be >= 1")
        _require(
            self.hop_size <= self.window_size,
            f"hop_size ({self.hop_size}) must not exceed window_size ({self.window_size})",
        )


@dataclass(frozen=True)
class MatchWeights:
    """Per-feature weights of the style template match score."""

    tempo: float = 0.25
    rms: float = 0.2
    centroid: float = 0.2
    zcr: float = 0.15
    flatness: float = 0.1
    contrast: float = 0.08
    voice: float = 0.07
    percussive: float = 0.07
    harmonic: float = 0.07

    def __post_init__(self):
        for f in fields(self):
            _require(getattr(self, f.name) >= 0, f"match weight {f.name} must be >= 0")


@dataclass(frozen=True)
class ClassifierConfig:
    """Style classifier parameters."""

    weights: MatchWeights = field(default_factory=MatchWeights)
    confidence_scale: float = 1.2
    silence_rms: float = 1e-4
    max_talking_points: int = 4
    # Optional path to a JSON template catalog replacing the packaged one
    templates_path: Optional[str] = None

    def __post_init__(self):
        _require(self.confidence_scale > 0, "confidence_scale must be positive")
        _require(self.silence_rms >= 0, "silence_rms must be >= 0")
        _require(self.max_talking_points >= 1, "max_talking_points must be >= 1")


@dataclass(frozen=True)
class EngineConfig:
    """Top-level configuration of one decision-engine stream."""

    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    stability: StabilityConfig = field(default_factory=StabilityConfig)
    hpss: HPSSConfig = field(default_factory=HPSSConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    tick_interval_ms: float = 250.0
    hpss_interval_s: float = 1.0
    hpss_buffer_s: float = 1.5
    auto_complete: bool = False

    def __post_init__(self):
        _require(self.tick_interval_ms >= 0, "tick_interval_ms must be >= 0")
        _require(self.hpss_interval_s > 0, "hpss_interval_s must be positive")
        _require(self.hpss_buffer_s > 0, "hpss_buffer_s must be positive")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EngineConfig":
        """Build a config from nested overrides applied on top of the defaults."""
        return _apply_overrides(cls(), data, "engine")

    @classmethod
    def load(cls, path: Union[str, Path]) -> "EngineConfig":
        """Load nested overrides from a JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path}: top-level JSON value must be an object")
        return cls.from_dict(data)


def _apply_overrides(base: Any, overrides: Mapping[str, Any], path: str) -> Any:
    """Return a copy of dataclass *base* with *overrides* applied recursively."""
    known = {f.name: f for f in fields(base)}
    changes: dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in known:
            raise ConfigurationError(f"unknown configuration key {path}.{key}")
        current = getattr(base, key)
        if is_dataclass(current):
            if not isinstance(value, Mapping):
                raise ConfigurationError(f"{path}.{key} must be an object")
            changes[key] = _apply_overrides(current, value, f"{path}.{key}")
        else:
            changes[key] = value
    try:
        return replace(base, **changes)
    except TypeError as exc:
        raise ConfigurationError(f"invalid value under {path}: {exc}") from exc
