"""Core decision-engine modules."""

from stylescope.core.aggregator import FeatureAggregator
from stylescope.core.classifier import StyleClassifier, StyleResult
from stylescope.core.records import FeatureRecord, FeatureWindow
from stylescope.core.separation import HPSSEngine, HPSSResult, SeparationCancelled
from stylescope.core.stability import EngineState, StabilityDetector, StabilityMetrics

__all__ = [
    "FeatureAggregator",
    "StyleClassifier",
    "StyleResult",
    "FeatureRecord",
    "FeatureWindow",
    "HPSSEngine",
    "HPSSResult",
    "SeparationCancelled",
    "EngineState",
    "StabilityDetector",
    "StabilityMetrics",
]
