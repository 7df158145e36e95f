"""
Stability detection.

Decides when the aggregated signal has settled enough to commit to a style
decision. Owns all per-stream history (energy gate, BPM history, stability
streak), so each stream gets its own ``StabilityDetector`` instance.

State machine::

    IDLE --energy >= enter--> READY --held min_ready_ms--> ANALYZING
      ^                         |                              |
      +------energy < exit------+------------------------------+
      |                                                        |
      +-------complete_generation()<--- GENERATING <--stable---+
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from stylescope.config import StabilityConfig
from stylescope.core.records import FeatureWindow, clamp01, finite_or_zero
from stylescope.logging_utils import log_event

DIMENSIONS = ("centroid", "chroma", "tempo")


class EngineState(str, Enum):
    IDLE = "idle"
    READY = "ready"
    ANALYZING = "analyzing"
    GENERATING = "generating"


class EnergyHysteresis:
    """
    Two-threshold energy gate.

    The gate opens when energy reaches ``enter`` and closes only once energy
    falls below ``exit``. Values between the two thresholds keep whatever
    state the gate is already in.
    """

    def __init__(self, enter: float, exit: float):
        if not exit < enter:
            raise ValueError(f"exit ({exit}) must be strictly below enter ({enter})")
        self.enter = enter
        self.exit = exit
        self.above = False
        self.flips = 0

    def update(self, energy: float) -> bool:
        energy = finite_or_zero(energy)
        if not self.above and energy >= self.enter:
            self.above = True
            self.flips += 1
        elif self.above and energy < self.exit:
            self.above = False
            self.flips += 1
        return self.above

    def reset(self) -> None:
        self.above = False
        self.flips = 0


@dataclass(frozen=True)
class StabilityMetrics:
    """Per-tick stability verdict."""

    centroid_stable: bool = False
    chroma_stable: bool = False
    tempo_stable: bool = False
    energy_stable: bool = False
    overall_stable: bool = False
    stability_duration_ms: float = 0.0
    confidence: float = 0.0
    trigger_score: float = 0.0

    # Raw measurements behind the flags
    centroid_ratio: float = 0.0
    chroma_variance: float = 0.0
    tempo_bpm: float = 0.0
    tempo_change: float = 0.0
    energy: float = 0.0
    dimensions_with_data: tuple = field(default_factory=tuple)

    def flags(self) -> dict[str, bool]:
        return {
            "centroid": self.centroid_stable,
            "chroma": self.chroma_stable,
            "tempo": self.tempo_stable,
            "energy": self.energy_stable,
        }


class StabilityDetector:
    """
    Per-stream stability detector and decision state machine.

    ``evaluate`` measures one window. ``update`` measures it and advances the
    state machine; it is what the engine calls every aggregation tick.
    """

    def __init__(self, config: Optional[StabilityConfig] = None):
        self.config = config or StabilityConfig()
        self.gate = EnergyHysteresis(self.config.energy_enter, self.config.energy_exit)
        self.state = EngineState.IDLE
        self.bpm_history: deque[float] = deque(maxlen=self.config.bpm_history_size)
        self._stable_since: Optional[float] = None
        self._ready_since: Optional[float] = None
        self._now_ms = 0.0
        self.last_metrics = StabilityMetrics()
        self._last_missing: list[str] = []

    # ------------------------------------------------------------------
    # Measurement
    # ------------------------------------------------------------------

    def evaluate(self, window: Optional[FeatureWindow], energy: Optional[float] = None) -> StabilityMetrics:
        """
        Measure per-dimension stability of *window*.

        Args:
            window: Current FeatureWindow, or None when no window was emitted.
            energy: Energy value for the hysteresis gate. Defaults to the
                window's mean RMS.

        Returns:
            StabilityMetrics for this tick. Updates the BPM history, the
            energy gate and the stability streak.
        """
        cfg = self.config
        if window is None:
            log_event("DEBUG", "Stability", "No window available")
            above = self.gate.update(finite_or_zero(energy))
            self._stable_since = None
            self.last_metrics = StabilityMetrics(energy_stable=above, energy=finite_or_zero(energy))
            return self.last_metrics

        self._now_ms = window.timestamp_ms
        energy = finite_or_zero(window.mean("rms") if energy is None else energy)
        above = self.gate.update(energy)

        with_data: list[str] = []
        flags = {name: False for name in DIMENSIONS}

        # Centroid: relative variance
        centroid_mean = window.mean("spectral_centroid")
        centroid_ratio = 0.0
        if window.count("spectral_centroid") > 0 and centroid_mean != 0:
            centroid_ratio = finite_or_zero(window.variance("spectral_centroid") / centroid_mean ** 2)
            flags["centroid"] = centroid_ratio <= cfg.centroid_threshold
            with_data.append("centroid")

        # Chroma: mean per-bin variance
        chroma_variance = 0.0
        if window.has_vector("chroma"):
            variances = window.vector_variance("chroma")
            chroma_variance = finite_or_zero(sum(variances) / len(variances))
            flags["chroma"] = chroma_variance <= cfg.chroma_threshold
            with_data.append("chroma")

        # Tempo: change against the most recent recorded BPM
        tempo_change = 0.0
        bpm = finite_or_zero(window.tempo_bpm)
        if window.count("spectral_flux") > 0:
            if self.bpm_history:
                tempo_change = abs(bpm - self.bpm_history[-1])
            flags["tempo"] = tempo_change <= cfg.tempo_change_threshold
            self.bpm_history.append(bpm)
            with_data.append("tempo")

        missing = [name for name in DIMENSIONS if name not in with_data]
        if missing and missing != self._last_missing:
            log_event("WARNING", "Stability", "Dimensions without data", missing=",".join(missing))
        self._last_missing = missing

        if cfg.missing_dimension_policy == "skip":
            considered = with_data
        else:
            considered = list(DIMENSIONS)
        overall = bool(with_data) and all(flags[name] for name in considered)

        if overall:
            if self._stable_since is None:
                self._stable_since = self._now_ms
            duration = self._now_ms - self._stable_since
        else:
            self._stable_since = None
            duration = 0.0

        confidence = self.confidence(window, tempo_change)
        metrics = StabilityMetrics(
            centroid_stable=flags["centroid"],
            chroma_stable=flags["chroma"],
            tempo_stable=flags["tempo"],
            energy_stable=above,
            overall_stable=overall,
            stability_duration_ms=max(0.0, duration),
            confidence=confidence,
            centroid_ratio=centroid_ratio,
            chroma_variance=chroma_variance,
            tempo_bpm=bpm,
            tempo_change=tempo_change,
            energy=energy,
            dimensions_with_data=tuple(with_data),
        )
        metrics = replace(metrics, trigger_score=self.trigger_score(metrics))
        self.last_metrics = metrics
        return metrics

    @staticmethod
    def confidence(window: FeatureWindow, tempo_change: float = 0.0) -> float:
        """
        Confidence from feature completeness and signal quality.

        Starts at 0.5, gains 0.2 for a non-trivial RMS level, 0.1 for each of
        chroma/MFCC/contrast present and 0.05 for a confident instrument
        estimate, then loses ``tempo_change / 400``.
        """
        score = 0.5
        if window.mean("rms") > 0.01:
            score += 0.2
        for name in ("chroma", "mfcc", "spectral_contrast"):
            if window.has_vector(name):
                score += 0.1
        if window.instrument_confidence > 0.4:
            score += 0.05
        score = min(1.0, score)
        return clamp01(score - finite_or_zero(tempo_change) / 400.0)

    def trigger_score(self, metrics: StabilityMetrics) -> float:
        """Weighted sum of the dimension flags, scaled by confidence."""
        weights = self.config.trigger_weights.as_dict()
        flags = metrics.flags()
        total = sum(weight for name, weight in weights.items() if flags.get(name))
        return clamp01(total * metrics.confidence)

    def is_triggered(self, metrics: StabilityMetrics) -> bool:
        cfg = self.config
        if cfg.trigger_mode == "weighted":
            return metrics.trigger_score >= cfg.trigger_threshold
        return metrics.overall_stable and metrics.confidence >= cfg.min_confidence

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def update(self, window: Optional[FeatureWindow], energy: Optional[float] = None) -> StabilityMetrics:
        """Evaluate *window* and advance the state machine by at most one step."""
        metrics = self.evaluate(window, energy)
        now = self._now_ms
        above = metrics.energy_stable

        if self.state is EngineState.IDLE:
            if above:
                self._transition(EngineState.READY, now, energy=metrics.energy)
                self._ready_since = now
        elif self.state is EngineState.READY:
            if not above:
                self._transition(EngineState.IDLE, now, energy=metrics.energy)
            elif now - self._ready_since >= self.config.min_ready_ms:
                self._transition(EngineState.ANALYZING, now)
        elif self.state is EngineState.ANALYZING:
            if not above:
                self._transition(EngineState.IDLE, now, energy=metrics.energy)
            elif window is not None and self.is_triggered(metrics):
                self._transition(
                    EngineState.GENERATING, now,
                    confidence=round(metrics.confidence, 3),
                    score=round(metrics.trigger_score, 3),
                )
        return metrics

    def complete_generation(self) -> None:
        """External completion signal: GENERATING returns to IDLE."""
        if self.state is not EngineState.GENERATING:
            log_event("WARNING", "Stability", "Completion signalled outside GENERATING",
                      state=self.state.value)
            return
        self._ready_since = None
        self._transition(EngineState.IDLE, self._now_ms)

    def reset(self) -> None:
        """Forget every piece of per-stream history."""
        self.state = EngineState.IDLE
        self.gate.reset()
        self.bpm_history.clear()
        self._stable_since = None
        self._ready_since = None
        self._now_ms = 0.0
        self.last_metrics = StabilityMetrics()
        self._last_missing = []

    def _transition(self, new_state: EngineState, now_ms: float, **fields) -> None:
        log_event("INFO", "Stability", f"{self.state.value} -> {new_state.value}",
                  t_ms=round(now_ms, 1), **fields)
        self.state = new_state

