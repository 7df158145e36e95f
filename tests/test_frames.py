"""Tests for the librosa-based FeatureRecord source."""

import numpy as np
import pytest

from stylescope.core.aggregator import FeatureAggregator
from stylescope.core.frames import FrameFeatureExtractor


class TestExtraction:
    def test_record_count_and_spacing(self, pure_sine):
        y, sr = pure_sine
        extractor = FrameFeatureExtractor()
        records = extractor.extract(y, sr)
        assert len(records) == 1 + len(y) // 512
        step = records[1].timestamp_ms - records[0].timestamp_ms
        assert step == pytest.approx(extractor.frame_period_ms(sr))
        assert step == pytest.approx(23.22, abs=0.01)

    def test_start_offset(self, pure_sine):
        y, sr = pure_sine
        records = FrameFeatureExtractor().extract(y, sr, start_ms=500.0)
        assert records[0].timestamp_ms == pytest.approx(500.0)

    def test_vector_dimensions(self, mixed_signal):
        y, sr = mixed_signal
        record = FrameFeatureExtractor().extract(y, sr)[10]
        assert record.has("mfcc")
        assert record.has("chroma")
        assert record.has("spectral_contrast")
        assert all(0.0 <= v <= 1.0 for v in record.spectral_contrast)

    def test_sine_descriptors(self, pure_sine):
        y, sr = pure_sine
        records = FrameFeatureExtractor().extract(y, sr)
        middle = records[len(records) // 2]
        assert middle.rms == pytest.approx(0.5 / np.sqrt(2), rel=0.05)
        assert middle.spectral_centroid < 1000.0
        assert middle.voice_probability is None
        assert middle.pitch is None

    def test_empty_buffer(self):
        assert FrameFeatureExtractor().extract(np.zeros(0), 22050) == []

    def test_timestamps_increase(self, mixed_signal):
        y, sr = mixed_signal
        records = FrameFeatureExtractor().extract(y, sr)
        times = [r.timestamp_ms for r in records]
        assert times == sorted(times)


class TestPitch:
    def test_sine_pitch_class(self, pure_sine):
        y, sr = pure_sine
        records = FrameFeatureExtractor(use_pitch=True).extract(y, sr)
        assert all(r.voice_probability is not None for r in records)
        voiced = [r for r in records if r.pitch is not None]
        assert voiced
        assert voiced[len(voiced) // 2].pitch.pitch_class == "A"

        agg = FeatureAggregator()
        for r in records:
            agg.add_frame(r)
        window = agg.compute_window_features()
        assert window.pitch.dominant_pitch_class == "A"
        assert window.pitch.mean_frequency_hz == pytest.approx(440.0, rel=0.05)
