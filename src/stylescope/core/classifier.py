"""
Rule-based style classifier.

Scores every template of the style catalog against a FeatureWindow, picks
the best base style, refines it into a compound label from the
voice/percussive/harmonic balance and assembles talking points and
sub-genres. Scoring is fully deterministic.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from functools import lru_cache
from importlib import resources
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from stylescope.config import ClassifierConfig, ConfigurationError
from stylescope.core.records import FeatureWindow, clamp01
from stylescope.logging_utils import log_event

UNKNOWN = "unknown"
FALLBACK_POINT = "No clear style characteristics"

# Scalars of which most must be present before a window can be classified
CORE_FEATURES = ("rms", "spectral_centroid", "zero_crossing_rate", "spectral_flatness")

SUFFIX_OPENERS = {
    "vocal": "Expressive, prominent vocals",
    "percussive": "Strong rhythmic backbone, made for moving",
    "instrumental": "Purely instrumental, stretched-out atmosphere",
    "harmonic": "Stacked harmonies, full-bodied tone",
}


@lru_cache(maxsize=None)
def load_style_templates(path: Optional[str] = None) -> Dict[str, Any]:
    """Load the style catalog from *path*, or from the packaged JSON file."""
    if path is None:
        with resources.files("stylescope.core").joinpath("style_templates.json").open(
            "r", encoding="utf-8"
        ) as f:
            return json.load(f)
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


@dataclass(frozen=True)
class Gate:
    """Optional [min, max] bounds on a ratio; either side may be open."""

    min: Optional[float] = None
    max: Optional[float] = None

    def admits(self, value: float) -> bool:
        if self.min is not None and value < self.min:
            return False
        if self.max is not None and value > self.max:
            return False
        return True


@dataclass(frozen=True)
class StyleTemplate:
    name: str
    tempo_range: tuple
    rms_range: tuple
    centroid_range: tuple
    zcr_range: tuple
    flatness_threshold: float
    contrast_threshold: float
    voice: Optional[Gate] = None
    percussive: Optional[Gate] = None
    harmonic: Optional[Gate] = None
    keywords: tuple = ()
    description: str = ""

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "StyleTemplate":
        try:
            gates = {
                key: Gate(data[key].get("min"), data[key].get("max")) if key in data else None
                for key in ("voice", "percussive", "harmonic")
            }
            return cls(
                name=name,
                tempo_range=tuple(data["tempo_range"]),
                rms_range=tuple(data["rms_range"]),
                centroid_range=tuple(data["centroid_range"]),
                zcr_range=tuple(data["zcr_range"]),
                flatness_threshold=float(data["flatness_threshold"]),
                contrast_threshold=float(data["contrast_threshold"]),
                keywords=tuple(data.get("keywords", ())),
                description=data.get("description", ""),
                **gates,
            )
        except (KeyError, TypeError, AttributeError, ValueError) as exc:
            raise ConfigurationError(f"invalid style template {name!r}: {exc}") from exc

    @property
    def tempo_span(self) -> float:
        return self.tempo_range[1] - self.tempo_range[0]


@dataclass(frozen=True)
class StyleResult:
    """Classification of one window."""

    label: str = UNKNOWN
    confidence: float = 0.0
    talking_points: tuple = (FALLBACK_POINT,)
    subgenres: tuple = ()
    base_style: str = UNKNOWN
    scores: Mapping[str, float] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "scores", MappingProxyType(dict(self.scores)))

    @property
    def is_unknown(self) -> bool:
        return self.base_style == UNKNOWN


def _in_range(value: float, bounds: tuple) -> bool:
    return bounds[0] <= value <= bounds[1]


class StyleClassifier:
    """
    Weighted template matcher.

    Each template scores ``satisfied weight / applicable weight``; the
    optional voice/percussive/harmonic gates only count towards the
    applicable weight when the template declares them. Ties go to the
    template with the narrowest tempo range, then to catalog order.
    """

    def __init__(self, config: Optional[ClassifierConfig] = None):
        self.config = config or ClassifierConfig()
        catalog = load_style_templates(self.config.templates_path)
        styles = catalog.get("styles", {})
        if not styles:
            raise ConfigurationError("style catalog defines no styles")
        self.templates = {name: StyleTemplate.from_dict(name, data) for name, data in styles.items()}
        self.variants = dict(catalog.get("variants", {}))

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score_template(self, template: StyleTemplate, window: FeatureWindow) -> float:
        w = self.config.weights
        voice = window.mean("voice_probability")
        percussive = window.mean("percussive_ratio")
        harmonic = window.mean("harmonic_ratio")
        contrast = window.vector_mean("spectral_contrast")

        score = 0.0
        total = w.tempo + w.rms + w.centroid + w.zcr + w.flatness + w.contrast
        if _in_range(window.tempo_bpm, template.tempo_range):
            score += w.tempo
        if _in_range(window.mean("rms"), template.rms_range):
            score += w.rms
        if _in_range(window.mean("spectral_centroid"), template.centroid_range):
            score += w.centroid
        if _in_range(window.mean("zero_crossing_rate"), template.zcr_range):
            score += w.zcr
        if window.mean("spectral_flatness") < template.flatness_threshold:
            score += w.flatness
        if window.has_vector("spectral_contrast") and contrast[0] > template.contrast_threshold:
            score += w.contrast

        for gate, value, weight in (
            (template.voice, voice, w.voice),
            (template.percussive, percussive, w.percussive),
            (template.harmonic, harmonic, w.harmonic),
        ):
            if gate is None:
                continue
            total += weight
            if gate.admits(value):
                score += weight

        return clamp01(score / total) if total > 0 else 0.0

    def score_all(self, window: FeatureWindow) -> Dict[str, float]:
        return {name: self.score_template(t, window) for name, t in self.templates.items()}

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _is_classifiable(self, window: Optional[FeatureWindow]) -> bool:
        if window is None or window.n_records == 0:
            return False
        if window.mean("rms") <= self.config.silence_rms:
            return False
        present = sum(1 for name in CORE_FEATURES if window.count(name) > 0)
        return present > len(CORE_FEATURES) // 2

    def detect_style(self, window: Optional[FeatureWindow]) -> StyleResult:
        """
        Classify *window*.

        Returns ``"unknown"`` with confidence 0 and a single fallback
        talking point for empty, silent or mostly featureless windows.
        """
        if not self._is_classifiable(window):
            log_event("DEBUG", "Classifier", "Window not classifiable",
                      records=window.n_records if window is not None else 0)
            return StyleResult()

        scores = self.score_all(window)
        best_name, best_score = UNKNOWN, 0.0
        for name, score in scores.items():
            if score > best_score or (
                score == best_score and best_name != UNKNOWN
                and self.templates[name].tempo_span < self.templates[best_name].tempo_span
            ):
                best_name, best_score = name, score

        if best_name == UNKNOWN:
            return StyleResult(scores=scores)

        label = self.resolve_label(best_name, window)
        confidence = clamp01(min(1.0, best_score * self.config.confidence_scale))
        result = StyleResult(
            label=label,
            confidence=confidence,
            talking_points=tuple(self.talking_points(best_name, window, label)),
            subgenres=tuple(self.detect_subgenres(best_name, window)),
            base_style=best_name,
            scores=scores,
        )
        log_event("DEBUG", "Classifier", "Style detected",
                  label=label, score=round(best_score, 3), confidence=round(confidence, 3))
        return result

    @staticmethod
    def resolve_label(base: str, window: FeatureWindow) -> str:
        """Apply at most one suffix, in fixed priority order."""
        voice = window.mean("voice_probability")
        percussive = window.mean("percussive_ratio")
        harmonic = window.mean("harmonic_ratio")
        if voice > 0.6:
            return f"{base}_vocal"
        if voice < 0.2 and base in ("pop", "edm", "trance"):
            return f"{base}_instrumental"
        if percussive > 0.6:
            return f"{base}_percussive"
        if harmonic > 0.6 and base in ("ambient", "classical"):
            return f"{base}_harmonic"
        return base

    def talking_points(self, base: str, window: FeatureWindow, label: Optional[str] = None) -> list[str]:
        template = self.templates.get(base)
        if template is None:
            return [FALLBACK_POINT]

        points: list[str] = []
        tempo = window.tempo_bpm
        if tempo > 130:
            points.append("Fast tempo, made for dancing")
        elif tempo < 80:
            points.append("Slow tempo, strong atmosphere")
        else:
            points.append("Moderate tempo, well balanced")

        if window.mean("spectral_flatness") > 0.5:
            points.append("Flat spectrum, stable timbre")
        else:
            points.append("Rich spectral movement, strong layering")

        centroid = window.mean("spectral_centroid")
        if centroid > 4000:
            points.append("Rich highs, bright tone")
        elif centroid < 1500:
            points.append("Prominent lows, heavy tone")
        else:
            points.append("Balanced bands, natural tone")

        if window.mean("rms") > 0.5:
            points.append("High loudness, full of energy")
        else:
            points.append("Moderate loudness, clear layers")

        voice = window.mean("voice_probability")
        if voice > 0.6:
            points.append("Vocals lead with vivid expression")
        elif voice < 0.2:
            points.append("Barely any lead vocal, instrumental feel")
        else:
            points.append("Vocals and instruments in balance")

        percussive = window.mean("percussive_ratio")
        if percussive > 0.6:
            points.append("Prominent percussion, rhythm-driven")
        elif percussive < 0.3:
            points.append("Soft percussion, focus on texture")

        points.extend(template.keywords[:2])

        suffix = _suffix(label or base)
        if suffix in SUFFIX_OPENERS:
            points.insert(0, SUFFIX_OPENERS[suffix])

        return points[: self.config.max_talking_points]

    @staticmethod
    def detect_subgenres(base: str, window: FeatureWindow) -> list[str]:
        voice = window.mean("voice_probability")
        percussive = window.mean("percussive_ratio")
        harmonic = window.mean("harmonic_ratio")
        tempo = window.tempo_bpm

        if base == "edm":
            if voice > 0.55:
                return ["Vocal House"]
            return ["Progressive House"] if tempo > 135 else ["Deep House"]
        if base == "techno":
            if percussive > 0.65:
                return ["Percussive Techno"]
            if window.mean("spectral_flatness") > 0.5:
                return ["Minimal Techno"]
            return ["Industrial Techno"]
        if base == "rock":
            if harmonic > 0.55:
                return ["Symphonic Rock"]
            return ["Hard Rock"] if tempo > 120 else ["Alternative Rock"]
        if base == "jazz":
            if voice > 0.5:
                return ["Vocal Jazz"]
            contrast = window.vector_mean("spectral_contrast")
            if window.has_vector("spectral_contrast") and any(c > 0.8 for c in contrast):
                return ["Free Jazz"]
            return ["Smooth Jazz"]
        if base == "classical":
            return ["Choral Works"] if voice > 0.3 else ["Symphonic"]
        if base == "hiphop":
            if voice > 0.6:
                return ["Rap Vocal"]
            return ["Trap"] if tempo > 100 else ["Boom Bap"]
        return []

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def supported_styles(self) -> list[str]:
        return list(self.templates)

    def describe_style(self, label: str) -> str:
        """Human readable description of a (possibly compound) label."""
        base, _, suffix = label.partition("_")
        template = self.templates.get(base)
        description = template.description if template and template.description else "Unknown style"
        note = self.variants.get(suffix) if suffix else None
        return f"{description} ({note})" if note else description


def _suffix(label: str) -> str:
    return label.partition("_")[2]

