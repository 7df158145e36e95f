"""Tests for the windowed feature aggregator."""

import math

import numpy as np
import pytest

from stylescope.config import AggregatorConfig
from stylescope.core.aggregator import FeatureAggregator, detect_flux_peaks, scalar_stats
from stylescope.core.records import (
    RATIO_FEATURES,
    FeatureRecord,
    PitchEstimate,
    TempoEstimate,
)


@pytest.fixture
def aggregator():
    return FeatureAggregator()


def _feed(aggregator, records):
    for r in records:
        aggregator.add_frame(r)
    return aggregator


class TestBuffer:
    def test_empty_aggregator_has_no_window(self, aggregator):
        assert aggregator.compute_window_features() is None

    def test_eviction_keeps_only_max_window(self, aggregator):
        for i in range(400):
            aggregator.add_frame(FeatureRecord(timestamp_ms=i * 25.0, rms=0.1))
            now = i * 25.0
            oldest = aggregator.snapshot()[0].timestamp_ms
            assert oldest >= now - aggregator.config.max_window_ms
        assert aggregator.frame_count <= 4000 / 25 + 1

    def test_out_of_order_record_dropped(self, aggregator):
        aggregator.add_frame(FeatureRecord(timestamp_ms=100.0, rms=0.1))
        assert aggregator.add_frame(FeatureRecord(timestamp_ms=50.0, rms=0.9)) is False
        assert aggregator.frame_count == 1
        assert aggregator.dropped_count == 1

    @pytest.mark.parametrize("bad", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_timestamp_dropped(self, aggregator, bad):
        assert aggregator.add_frame(FeatureRecord(timestamp_ms=bad, rms=0.5)) is False
        assert aggregator.dropped_count == 1
        for i in range(400):
            aggregator.add_frame(FeatureRecord(timestamp_ms=i * 23.2, rms=0.1))
        oldest = aggregator.snapshot()[0].timestamp_ms
        assert oldest >= 399 * 23.2 - aggregator.config.max_window_ms
        assert aggregator.frame_count < 400

    def test_equal_timestamps_accepted(self, aggregator):
        aggregator.add_frame(FeatureRecord(timestamp_ms=100.0, rms=0.1))
        assert aggregator.add_frame(FeatureRecord(timestamp_ms=100.0, rms=0.2))

    def test_reset(self, aggregator, techno_records):
        _feed(aggregator, techno_records)
        aggregator.reset()
        assert aggregator.frame_count == 0
        assert aggregator.compute_window_features() is None

    def test_no_window_when_reference_is_past_min_window(self, aggregator):
        aggregator.add_frame(FeatureRecord(timestamp_ms=0.0, rms=0.1))
        assert aggregator.compute_window_features(now_ms=5000.0) is None


class TestStatistics:
    def test_population_variance(self):
        stats = scalar_stats(np.array([1.0, 2.0, 3.0, 4.0]))
        assert stats.mean == pytest.approx(2.5)
        assert stats.variance == pytest.approx(1.25)
        assert stats.count == 4

    def test_window_uses_min_window_only(self, aggregator):
        _feed(aggregator, [FeatureRecord(timestamp_ms=t, rms=1.0) for t in (0.0, 500.0)])
        _feed(aggregator, [FeatureRecord(timestamp_ms=t, rms=0.2) for t in (2600.0, 3000.0)])
        window = aggregator.compute_window_features()
        assert window.n_records == 2
        assert window.mean("rms") == pytest.approx(0.2)

    def test_missing_fields_excluded(self, aggregator):
        _feed(aggregator, [
            FeatureRecord(timestamp_ms=0.0, rms=0.2, spectral_centroid=1000.0),
            FeatureRecord(timestamp_ms=10.0, rms=0.4),
        ])
        window = aggregator.compute_window_features()
        assert window.mean("spectral_centroid") == pytest.approx(1000.0)
        assert window.count("spectral_centroid") == 1
        assert window.mean("rms") == pytest.approx(0.3)

    def test_absent_feature_defaults_to_zero(self, aggregator):
        aggregator.add_frame(FeatureRecord(timestamp_ms=0.0, rms=0.2))
        window = aggregator.compute_window_features()
        assert window.mean("spectral_flatness") == 0.0
        assert window.variance("spectral_flatness") == 0.0
        assert window.vector_mean("chroma") == (0.0,) * 12
        assert not window.has_vector("chroma")

    def test_wrong_length_vectors_excluded(self, aggregator):
        _feed(aggregator, [
            FeatureRecord(timestamp_ms=0.0, chroma=[1.0] * 12),
            FeatureRecord(timestamp_ms=10.0, chroma=[5.0] * 6),
        ])
        window = aggregator.compute_window_features()
        assert window.vectors["chroma"].count == 1
        assert window.vector_mean("chroma") == pytest.approx((1.0,) * 12)

    def test_per_dimension_vector_stats(self, aggregator):
        _feed(aggregator, [
            FeatureRecord(timestamp_ms=0.0, spectral_contrast=[0, 1, 0, 1, 0, 1]),
            FeatureRecord(timestamp_ms=10.0, spectral_contrast=[1, 1, 0, 1, 0, 1]),
        ])
        window = aggregator.compute_window_features()
        assert window.vector_mean("spectral_contrast")[0] == pytest.approx(0.5)
        assert window.vector_variance("spectral_contrast")[0] == pytest.approx(0.25)
        assert window.vector_variance("spectral_contrast")[1] == 0.0

    def test_non_finite_values_never_escape(self, aggregator):
        _feed(aggregator, [
            FeatureRecord(timestamp_ms=0.0, rms=float("nan"), spectral_centroid=float("inf")),
            FeatureRecord(timestamp_ms=10.0, rms=0.5, spectral_flux=float("nan")),
        ])
        window = aggregator.compute_window_features()
        for stats in window.scalars.values():
            assert math.isfinite(stats.mean) and math.isfinite(stats.variance)
        assert window.mean("rms") == pytest.approx(0.5)
        assert math.isfinite(window.tempo_bpm)

    def test_rms_peak_and_dynamic_range(self, aggregator):
        _feed(aggregator, [FeatureRecord(timestamp_ms=i * 10.0, rms=v) for i, v in enumerate([0.1, 0.7, 0.3])])
        window = aggregator.compute_window_features()
        assert window.rms_peak == pytest.approx(0.7)
        assert window.dynamic_range == pytest.approx(0.6)


class TestIdempotence:
    def test_repeated_computation_is_identical(self, aggregator, techno_records):
        _feed(aggregator, techno_records)
        first = aggregator.compute_window_features()
        second = aggregator.compute_window_features()
        assert first == second


class TestRangeInvariants:
    def test_random_stream_respects_ranges(self, aggregator):
        rng = np.random.default_rng(7)
        for i in range(300):
            aggregator.add_frame(FeatureRecord(
                timestamp_ms=i * 20.0,
                rms=float(rng.uniform(0, 1)),
                spectral_centroid=float(rng.uniform(200, 8000)),
                spectral_flux=float(rng.uniform(0, 3)),
                voice_probability=float(rng.uniform(-0.5, 1.5)),
                percussive_ratio=float(rng.uniform(0, 1)),
                harmonic_ratio=float(rng.uniform(0, 1)),
                chroma=rng.uniform(0, 1, 12).tolist(),
            ))
            window = aggregator.compute_window_features()
            assert 60.0 <= window.tempo_bpm <= 180.0
            assert 0.0 <= window.beat_strength <= 1.0
            assert window.dynamic_range >= 0.0
            for stats in window.scalars.values():
                assert stats.variance >= 0.0
            for stats in window.vectors.values():
                assert all(v >= 0.0 for v in stats.variance)
            for name in RATIO_FEATURES:
                assert 0.0 <= window.mean(name) <= 1.0


class TestTempo:
    def test_flux_peaks_are_strict_local_maxima(self):
        flux = np.array([0.1, 1.0, 0.1, 0.1, 1.0, 1.0, 0.1, 0.1, 1.0, 0.1])
        peaks = detect_flux_peaks(flux)
        assert list(peaks) == [1, 8]

    def test_tempo_from_regular_spikes(self, aggregator, techno_records):
        _feed(aggregator, techno_records)
        window = aggregator.compute_window_features()
        assert window.tempo_bpm == pytest.approx(60000.0 / (20 * 23.2), rel=1e-6)

    def test_too_few_flux_samples_default(self, aggregator):
        _feed(aggregator, [FeatureRecord(timestamp_ms=i * 23.2, spectral_flux=float(i % 2)) for i in range(5)])
        assert aggregator.compute_window_features().tempo_bpm == 120.0

    def test_flat_flux_defaults_to_120(self, aggregator):
        _feed(aggregator, [FeatureRecord(timestamp_ms=i * 23.2, spectral_flux=0.5) for i in range(50)])
        window = aggregator.compute_window_features()
        assert window.tempo_bpm == 120.0
        assert window.beat_strength == 0.0

    def test_tempo_is_clamped(self, aggregator):
        # A spike every other frame would be ~1293 BPM
        _feed(aggregator, [FeatureRecord(timestamp_ms=i * 23.2, spectral_flux=float(i % 2)) for i in range(60)])
        assert aggregator.compute_window_features().tempo_bpm == 180.0

    def test_custom_default_tempo(self):
        agg = FeatureAggregator(AggregatorConfig(default_tempo_bpm=100.0))
        agg.add_frame(FeatureRecord(timestamp_ms=0.0, rms=0.1))
        assert agg.compute_window_features().tempo_bpm == 100.0


class TestSilence:
    def test_all_zero_records(self, aggregator, silent_records):
        _feed(aggregator, silent_records)
        window = aggregator.compute_window_features()
        for stats in window.scalars.values():
            assert stats.mean == 0.0
            assert stats.variance == 0.0
        for stats in window.vectors.values():
            assert all(v == 0.0 for v in stats.mean)
        assert window.tempo_bpm == 120.0
        assert window.loudness_lkfs == -70.0


class TestSupplementaryStatistics:
    def test_loudness_estimate(self, aggregator):
        _feed(aggregator, [FeatureRecord(timestamp_ms=i * 10.0, rms=0.1) for i in range(5)])
        # 20*log10(0.1) - 20 = -40
        assert aggregator.compute_window_features().loudness_lkfs == pytest.approx(-40.0)

    def test_loudness_without_rms_is_zero(self, aggregator):
        aggregator.add_frame(FeatureRecord(timestamp_ms=0.0, spectral_centroid=100.0))
        assert aggregator.compute_window_features().loudness_lkfs == 0.0

    def test_instrument_histogram(self, aggregator):
        _feed(aggregator, [
            FeatureRecord(timestamp_ms=0.0, instrument_probabilities={"drums": 0.6, "bass": 0.2},
                          dominant_instrument="drums", instrument_confidence=0.6),
            FeatureRecord(timestamp_ms=10.0, instrument_probabilities={"drums": 0.5, "synth": 0.3},
                          dominant_instrument="drums"),
        ])
        window = aggregator.compute_window_features()
        # drums: 0.6 + 0.6 + 0.5 + 0.1 = 1.8 of 2.3 in total
        assert window.dominant_instrument == "drums"
        assert window.instrument_confidence == pytest.approx(1.8 / 2.3)
        assert sum(window.instrument_histogram.values()) == pytest.approx(1.0)

    def test_no_instruments(self, aggregator):
        aggregator.add_frame(FeatureRecord(timestamp_ms=0.0, rms=0.1))
        window = aggregator.compute_window_features()
        assert window.dominant_instrument == "unknown"
        assert window.instrument_confidence == 0.0
        assert dict(window.instrument_histogram) == {}

    def test_pitch_summary(self, aggregator):
        _feed(aggregator, [
            FeatureRecord(timestamp_ms=0.0, pitch=PitchEstimate.from_frequency(440.0, 0.8)),
            FeatureRecord(timestamp_ms=10.0, pitch=PitchEstimate.from_frequency(440.0, 0.6)),
            FeatureRecord(timestamp_ms=20.0, pitch=PitchEstimate(0.0, 0.1, voiced=False)),
        ])
        pitch = aggregator.compute_window_features().pitch
        assert pitch.mean_frequency_hz == pytest.approx(440.0)
        assert pitch.stability == pytest.approx(1.0)
        assert pitch.range_hz == 0.0
        assert pitch.confidence == pytest.approx(0.7)
        assert pitch.voiced_fraction == pytest.approx(2 / 3)
        assert pitch.dominant_pitch_class == "A"

    def test_model_tempo_uses_steady_estimates(self, aggregator):
        _feed(aggregator, [
            FeatureRecord(timestamp_ms=0.0, tempo=TempoEstimate(128.0, 0.9, True)),
            FeatureRecord(timestamp_ms=10.0, tempo=TempoEstimate(90.0, 0.2, False)),
            FeatureRecord(timestamp_ms=20.0, tempo=TempoEstimate(130.0, 0.9, True)),
        ])
        assert aggregator.compute_window_features().model_tempo_bpm == pytest.approx(129.0)
