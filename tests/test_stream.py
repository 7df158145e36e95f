"""Tests for the background HPSS scheduler."""

import threading

import numpy as np
import pytest

from stylescope.core.records import FeatureRecord
from stylescope.core.separation import HPSSEngine
from stylescope.core.stream import HPSSScheduler


class BlockingEngine(HPSSEngine):
    """HPSSEngine that waits for ``release`` before separating."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def separate(self, y, sr, cancel_event=None):
        self.release.wait(timeout=10)
        return super().separate(y, sr, cancel_event=cancel_event)


def _chunks(y, size):
    for start in range(0, len(y), size):
        yield y[start:start + size]


class TestScheduling:
    def test_submits_once_per_interval(self, mixed_signal):
        y, sr = mixed_signal
        with HPSSScheduler(sample_rate=sr, buffer_seconds=1.5, interval_seconds=1.0) as scheduler:
            submitted = []
            for chunk in _chunks(y, sr // 10):
                submitted.append(scheduler.push_audio(chunk))
                scheduler.wait(timeout=30)
            # 2 s of audio, one submission per second
            assert submitted.count(True) == 2
            assert scheduler.completed == 2
            assert scheduler.latest is not None
            assert scheduler.latest.n_samples == int(1.5 * sr)

    def test_first_job_uses_available_samples(self, mixed_signal):
        y, sr = mixed_signal
        with HPSSScheduler(sample_rate=sr, buffer_seconds=1.5, interval_seconds=1.0) as scheduler:
            assert scheduler.push_audio(y[:sr]) is True
            result = scheduler.wait(timeout=30)
            assert result.n_samples == sr
            assert not result.is_fallback
            assert scheduler.latest_features is not None

    def test_large_chunk_fills_buffer(self, mixed_signal):
        y, sr = mixed_signal
        with HPSSScheduler(sample_rate=sr, buffer_seconds=1.5, interval_seconds=1.0) as scheduler:
            assert scheduler.push_audio(y) is True
            assert scheduler.wait(timeout=30).n_samples == int(1.5 * sr)

    def test_empty_chunk(self):
        with HPSSScheduler() as scheduler:
            assert scheduler.push_audio(np.zeros(0)) is False
            assert scheduler.wait() is None

    def test_skips_while_busy(self, mixed_signal):
        y, sr = mixed_signal
        engine = BlockingEngine()
        with HPSSScheduler(engine, sample_rate=sr) as scheduler:
            assert scheduler.push_audio(y[:sr]) is True
            assert scheduler.busy
            assert scheduler.push_audio(y[sr:]) is False
            assert scheduler.skipped == 1
            assert scheduler.submitted == 1
            engine.release.set()
            scheduler.wait(timeout=30)
            assert not scheduler.busy

    def test_cancel_discards_result(self, mixed_signal):
        y, sr = mixed_signal
        engine = BlockingEngine()
        with HPSSScheduler(engine, sample_rate=sr) as scheduler:
            scheduler.push_audio(y[:sr])
            scheduler.cancel()
            engine.release.set()
            assert scheduler.wait(timeout=30) is None
            assert scheduler.latest is None
            assert scheduler.completed == 0


class TestEnrichment:
    def test_record_unchanged_before_first_result(self):
        record = FeatureRecord(timestamp_ms=0.0, rms=0.1)
        with HPSSScheduler() as scheduler:
            assert scheduler.enrich(record) is record

    def test_record_enriched_after_result(self, mixed_signal):
        y, sr = mixed_signal
        with HPSSScheduler(sample_rate=sr) as scheduler:
            scheduler.push_audio(y)
            result = scheduler.wait(timeout=30)
            enriched = scheduler.enrich(FeatureRecord(timestamp_ms=0.0, rms=0.1))
            assert enriched.harmonic_ratio == pytest.approx(result.harmonic_ratio)
            assert enriched.dominant_instrument == scheduler.latest_features.instrument_family
