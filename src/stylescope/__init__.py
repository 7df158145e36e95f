"""Decision engine turning streaming audio features into musical style decisions."""

from stylescope.config import ConfigurationError, EngineConfig
from stylescope.core.aggregator import FeatureAggregator
from stylescope.core.classifier import StyleClassifier
from stylescope.core.separation import HPSSEngine
from stylescope.core.stability import StabilityDetector
from stylescope.io.exporter import DecisionExporter
from stylescope.pipeline import DecisionEngine

__version__ = "0.1.0"
__all__ = [
    "ConfigurationError",
    "EngineConfig",
    "FeatureAggregator",
    "StabilityDetector",
    "StyleClassifier",
    "HPSSEngine",
    "DecisionExporter",
    "DecisionEngine",
]
