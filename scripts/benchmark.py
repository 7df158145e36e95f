"""
Stylescope HPSS / decision-engine benchmark.

Usage:
    python scripts/benchmark.py [--quick]

Modes:
    default   1.0 / 1.5 / 2.0 s buffers, 3 warm-up + 5 timed runs per case
    --quick   1.0 s buffer only, 1 warm-up + 3 timed runs (CI-friendly)

Output: timing table printed to stdout.

Each HPSS case is timed at the default 10 iterations and at a single
iteration, which shows how much of the cost is the median-filter loop
rather than the STFT/ISTFT pair.
"""

import argparse
import os
import sys
import time
from typing import List

import numpy as np

# Make sure the installed package is on the path when run from repo root
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from stylescope.config import HPSSConfig
from stylescope.core.aggregator import FeatureAggregator
from stylescope.core.classifier import StyleClassifier
from stylescope.core.records import FeatureRecord
from stylescope.core.separation import HPSSEngine

_SEP = "─" * 72
SR = 22050


def _hdr(title: str) -> None:
    print(f"\n{_SEP}")
    print(f"  {title}")
    print(_SEP)


def _timeit(fn, *args, warmup: int = 2, runs: int = 5, **kwargs) -> List[float]:
    """Run fn(*args, **kwargs), discard warmup iterations, return timed samples."""
    for _ in range(warmup):
        fn(*args, **kwargs)
    times = []
    for _ in range(runs):
        t0 = time.perf_counter()
        fn(*args, **kwargs)
        times.append(time.perf_counter() - t0)
    return times


def _stats(times: List[float]) -> str:
    arr = np.array(times)
    return f"mean={arr.mean()*1000:.1f} ms  min={arr.min()*1000:.1f} ms  max={arr.max()*1000:.1f} ms"


def _test_signal(seconds: float) -> np.ndarray:
    """440 Hz sine plus clicks every 0.25 s."""
    t = np.linspace(0, seconds, int(SR * seconds), endpoint=False)
    y = 0.5 * np.sin(2 * np.pi * 440.0 * t)
    y[:: SR // 4] += 0.8
    return y.astype(np.float32)


def _records(n: int) -> List[FeatureRecord]:
    rng = np.random.RandomState(0)
    return [
        FeatureRecord(
            timestamp_ms=i * 23.2,
            rms=float(0.5 + 0.1 * rng.rand()),
            spectral_centroid=float(2500 + 200 * rng.rand()),
            zero_crossing_rate=0.15,
            spectral_flatness=0.1,
            spectral_flux=1.0 if i % 20 == 0 else 0.1,
            voice_probability=0.1,
            percussive_ratio=0.7,
            harmonic_ratio=0.3,
            mfcc=tuple(rng.rand(13)),
            chroma=tuple(rng.rand(12)),
            spectral_contrast=tuple(rng.rand(6)),
        )
        for i in range(n)
    ]


def _window_and_classify(records: List[FeatureRecord], classifier: StyleClassifier) -> None:
    agg = FeatureAggregator()
    for r in records:
        agg.add_frame(r)
    classifier.detect_style(agg.compute_window_features())


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> None:
    parser = argparse.ArgumentParser(description="Stylescope HPSS benchmark")
    parser.add_argument(
        "--quick",
        action="store_true",
        help="Only time the 1.0 s buffer, with fewer runs",
    )
    args = parser.parse_args()

    if args.quick:
        durations = [1.0]
        WARMUP, RUNS = 1, 3
        label = "quick mode"
    else:
        durations = [1.0, 1.5, 2.0]
        WARMUP, RUNS = 3, 5
        label = "full mode"

    print(f"\nStylescope Benchmark  ({label})")
    print(f"Sample rate: {SR} Hz")
    print(f"Warm-up runs: {WARMUP}  |  Timed runs: {RUNS}")

    full = HPSSEngine()
    single = HPSSEngine(HPSSConfig(iterations=1))

    # ------------------------------------------------------------------
    # 1. HPSSEngine.separate
    # ------------------------------------------------------------------
    _hdr("1. HPSSEngine.separate")
    for seconds in durations:
        y = _test_signal(seconds)
        t = _timeit(full.separate, y, SR, warmup=WARMUP, runs=RUNS)
        t_one = _timeit(single.separate, y, SR, warmup=1, runs=RUNS)
        print(f"  {seconds:.1f} s  iterations={full.config.iterations:<2}  {_stats(t)}")
        print(f"  {seconds:.1f} s  iterations=1   {_stats(t_one)}")

    # ------------------------------------------------------------------
    # 2. Aggregation + classification (one tick)
    # ------------------------------------------------------------------
    _hdr("2. Window + classify (~4 s of records)")
    classifier = StyleClassifier()
    records = _records(172)
    t = _timeit(_window_and_classify, records, classifier, warmup=WARMUP, runs=RUNS)
    print(f"  {_stats(t)}")

    print(f"\n{_SEP}\n")


if __name__ == "__main__":
    main()
