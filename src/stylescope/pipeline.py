"""
Decision engine: one instance per stream.

Wires the feature aggregator, stability detector, style classifier and
(optionally) the HPSS scheduler together. Live callers push FeatureRecords
with :meth:`DecisionEngine.push_frame`; offline callers hand a whole signal
to :meth:`DecisionEngine.analyze_signal` or a file to
:meth:`DecisionEngine.analyze_file`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

import numpy as np

from stylescope.config import EngineConfig
from stylescope.core.aggregator import FeatureAggregator
from stylescope.core.classifier import StyleClassifier, StyleResult
from stylescope.core.frames import FrameFeatureExtractor
from stylescope.core.hpss_features import HPSSFeatures, enrich_record, extract_hpss_features
from stylescope.core.records import FeatureRecord, FeatureWindow
from stylescope.core.separation import HPSSEngine, HPSSResult, load_audio
from stylescope.core.stability import EngineState, StabilityDetector, StabilityMetrics
from stylescope.core.stream import HPSSScheduler
from stylescope.logging_utils import log_event


@dataclass(frozen=True)
class Decision:
    """A committed style decision, emitted on entering GENERATING."""

    style: StyleResult
    window: FeatureWindow
    stability: StabilityMetrics
    state: EngineState
    timestamp_ms: float


@dataclass
class AnalysisReport:
    """Result of an offline run over a whole signal."""

    duration_s: float
    sample_rate: int
    n_records: int
    decisions: list[Decision] = field(default_factory=list)
    final_style: StyleResult = field(default_factory=StyleResult)
    final_window: Optional[FeatureWindow] = None
    final_stability: Optional[StabilityMetrics] = None
    hpss: Optional[HPSSResult] = None
    hpss_features: Optional[HPSSFeatures] = None
    state_history: list[tuple[float, str]] = field(default_factory=list)


class DecisionEngine:
    """
    Per-stream decision engine.

    ``push_frame`` appends a record and runs :meth:`tick` whenever
    ``tick_interval_ms`` of stream time has passed since the previous tick.
    A Decision is produced once per entry into GENERATING; the engine stays
    there until :meth:`complete_generation` is called (or immediately
    returns to IDLE when ``auto_complete`` is set).
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        scheduler: Optional[HPSSScheduler] = None,
    ):
        self.config = config or EngineConfig()
        self.aggregator = FeatureAggregator(self.config.aggregator)
        self.detector = StabilityDetector(self.config.stability)
        self.classifier = StyleClassifier(self.config.classifier)
        self.scheduler = scheduler
        self.decisions: list[Decision] = []
        self.last_window: Optional[FeatureWindow] = None
        self._last_tick_ms: Optional[float] = None

    @property
    def state(self) -> EngineState:
        return self.detector.state

    # ------------------------------------------------------------------
    # Live path
    # ------------------------------------------------------------------

    def push_audio(self, chunk: np.ndarray) -> bool:
        """Feed raw samples to the HPSS scheduler, if one is attached."""
        if self.scheduler is None:
            return False
        return self.scheduler.push_audio(chunk)

    def push_frame(self, record: FeatureRecord) -> Optional[Decision]:
        """
        Append *record* and tick when the tick interval has elapsed.

        Returns:
            The Decision produced by this call, if any.
        """
        if self.scheduler is not None:
            record = self.scheduler.enrich(record)
        if not self.aggregator.add_frame(record):
            return None
        ts = record.timestamp_ms
        if self._last_tick_ms is None or ts - self._last_tick_ms >= self.config.tick_interval_ms:
            return self.tick(ts)
        return None

    def tick(self, now_ms: Optional[float] = None) -> Optional[Decision]:
        """Compute a window, advance the detector and classify on commit."""
        window = self.aggregator.compute_window_features(now_ms)
        previous = self.detector.state
        metrics = self.detector.update(window)
        self.last_window = window
        if window is not None:
            self._last_tick_ms = window.timestamp_ms
        elif now_ms is not None:
            self._last_tick_ms = now_ms

        if previous is EngineState.GENERATING or self.detector.state is not EngineState.GENERATING:
            return None

        style = self.classifier.detect_style(window)
        decision = Decision(
            style=style,
            window=window,
            stability=metrics,
            state=self.detector.state,
            timestamp_ms=window.timestamp_ms,
        )
        self.decisions.append(decision)
        log_event(
            "INFO", "Engine", "Decision committed",
            label=style.label, confidence=round(style.confidence, 3),
            t_ms=round(decision.timestamp_ms, 1),
        )
        if self.config.auto_complete:
            self.detector.complete_generation()
        return decision

    def classify(self) -> StyleResult:
        """Classify the current window regardless of the detector state."""
        return self.classifier.detect_style(self.aggregator.compute_window_features())

    def complete_generation(self) -> None:
        """Downstream consumer finished with the last decision."""
        self.detector.complete_generation()

    def reset(self) -> None:
        self.aggregator.reset()
        self.detector.reset()
        self.decisions = []
        self.last_window = None
        self._last_tick_ms = None

    def close(self) -> None:
        """Shut down the attached HPSS scheduler, joining its worker."""
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=True)

    def __enter__(self) -> "DecisionEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Offline path
    # ------------------------------------------------------------------

    def _offline_hpss(self, y: np.ndarray, sr: int) -> list[tuple[float, HPSSResult, HPSSFeatures]]:
        """HPSS over the trailing buffer at every interval boundary."""
        engine = HPSSEngine(self.config.hpss)
        interval = max(1, int(round(self.config.hpss_interval_s * sr)))
        buffer_len = max(1, int(round(self.config.hpss_buffer_s * sr)))
        results = []
        for end in range(interval, len(y) + 1, interval):
            segment = y[max(0, end - buffer_len):end]
            result = engine.separate(segment, sr)
            features = extract_hpss_features(
                result, n_fft=self.config.hpss.window_size, hop_length=self.config.hpss.hop_size
            )
            results.append((1000.0 * end / sr, result, features))
        return results

    def analyze_signal(
        self,
        y: np.ndarray,
        sr: int,
        extractor: Optional[FrameFeatureExtractor] = None,
    ) -> AnalysisReport:
        """
        Run the full chain over *y*.

        Resets the engine, extracts FeatureRecords, runs HPSS once per
        ``hpss_interval_s`` and merges each result into the records that
        follow it, then replays the records through :meth:`push_frame`.
        Every decision is completed immediately so that later sections of
        the signal can produce their own decisions.

        Args:
            y: Mono audio signal.
            sr: Sample rate.
            extractor: Feature source (default: FrameFeatureExtractor()).

        Returns:
            AnalysisReport.
        """
        self.reset()
        y = np.asarray(y, dtype=np.float32).reshape(-1)
        extractor = extractor or FrameFeatureExtractor()
        records = extractor.extract(y, sr)
        hpss_runs = self._offline_hpss(y, sr)
        log_event("INFO", "Engine", "Offline analysis",
                  seconds=round(len(y) / sr, 2) if sr else 0, records=len(records),
                  hpss_runs=len(hpss_runs))

        history: list[tuple[float, str]] = [(0.0, self.state.value)]
        run_index = -1
        for record in records:
            while run_index + 1 < len(hpss_runs) and hpss_runs[run_index + 1][0] <= record.timestamp_ms:
                run_index += 1
            if run_index >= 0:
                _, result, features = hpss_runs[run_index]
                record = enrich_record(record, result, features)
            before = self.state
            decision = self.push_frame(record)
            if self.state is not before:
                history.append((record.timestamp_ms, self.state.value))
            if decision is not None and self.state is EngineState.GENERATING:
                self.complete_generation()
                history.append((record.timestamp_ms, self.state.value))

        final_window = self.aggregator.compute_window_features()
        last_run = hpss_runs[-1] if hpss_runs else None
        return AnalysisReport(
            duration_s=len(y) / sr if sr else 0.0,
            sample_rate=sr,
            n_records=len(records),
            decisions=list(self.decisions),
            final_style=self.classifier.detect_style(final_window),
            final_window=final_window,
            final_stability=self.detector.last_metrics,
            hpss=last_run[1] if last_run else None,
            hpss_features=last_run[2] if last_run else None,
            state_history=history,
        )

    def analyze_file(
        self,
        audio_path: Union[str, Path],
        sr: int | None = 22050,
        max_duration: float | None = None,
    ) -> AnalysisReport:
        """Load *audio_path* and run :meth:`analyze_signal` on it."""
        y, sr_out = load_audio(audio_path, sr=sr, duration=max_duration)
        return self.analyze_signal(y, sr_out)
