"""Tests for HPSS-derived features and record enrichment."""

import numpy as np
import pytest

from stylescope.core.hpss_features import (
    INSTRUMENT_FAMILIES,
    HPSSFeatures,
    attack_strength,
    classify_instrument_family,
    enrich_record,
    extract_hpss_features,
    rhythm_regularity,
    spectral_entropy,
)
from stylescope.core.records import FeatureRecord
from stylescope.core.separation import HPSSEngine, HPSSResult


@pytest.fixture(scope="module")
def separated_mix():
    sr = 22050
    t = np.linspace(0, 2.0, int(sr * 2.0), endpoint=False)
    y = (0.5 * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32)
    y[:: sr // 4] += 0.8
    return HPSSEngine().separate(y, sr)


class TestHelpers:
    def test_entropy_of_flat_spectrum_is_one(self):
        assert spectral_entropy(np.ones(64)) == pytest.approx(1.0)

    def test_entropy_of_single_peak_is_zero(self):
        spectrum = np.zeros(64)
        spectrum[10] = 1.0
        assert spectral_entropy(spectrum) == 0.0

    def test_entropy_of_empty_spectrum(self):
        assert spectral_entropy(np.zeros(16)) == 0.0

    def test_attack_strength_of_constant_is_zero(self):
        assert attack_strength(np.ones(4096)) == 0.0

    def test_attack_strength_detects_jump(self):
        y = np.zeros(4096)
        y[2000:] = 1.0
        assert attack_strength(y) == pytest.approx(1.0 / 1024)

    def test_regular_onsets(self):
        assert rhythm_regularity(np.array([0.0, 0.5, 1.0, 1.5])) == pytest.approx(1.0)

    def test_irregular_onsets_score_lower(self):
        assert rhythm_regularity(np.array([0.0, 0.1, 1.0, 1.2])) < 0.5

    def test_too_few_onsets(self):
        assert rhythm_regularity(np.array([0.0, 0.5])) == 0.0

    @pytest.mark.parametrize("args,family", [
        ((0.7, 0.9, 3000.0), "Percussion"),
        ((0.3, 0.8, 3000.0), "String"),
        ((0.3, 0.2, 2500.0), "Wind"),
        ((0.3, 0.2, 500.0), "Bass"),
        ((0.3, 0.2, 1500.0), "Mixed"),
    ])
    def test_instrument_family(self, args, family):
        assert classify_instrument_family(*args) == family
        assert family in INSTRUMENT_FAMILIES


class TestExtraction:
    def test_features_of_real_separation(self, separated_mix):
        features = extract_hpss_features(separated_mix)
        assert not features.is_fallback
        assert features.harmonic_centroid > 0
        assert 0.0 <= features.pitch_strength <= 1.0
        assert 0.0 <= features.harmonic_complexity <= 1.0
        assert 0.0 <= features.energy_preservation <= 1.0
        assert features.onset_density > 0
        assert features.instrument_family in INSTRUMENT_FAMILIES
        assert features.harmonic_ratio == separated_mix.harmonic_ratio

    def test_fallback_result_gives_neutral_features(self):
        result = HPSSResult.fallback(np.ones(100, dtype=np.float32), 22050)
        features = extract_hpss_features(result)
        assert features.is_fallback
        assert features.instrument_family == "Mixed"
        assert features.harmonic_ratio == pytest.approx(0.8)
        assert features.onset_density == 0.0


class TestEnrichment:
    def test_fills_missing_fields(self, separated_mix):
        features = extract_hpss_features(separated_mix)
        record = FeatureRecord(timestamp_ms=0.0, rms=0.2)
        enriched = enrich_record(record, separated_mix, features)
        assert enriched.harmonic_ratio == pytest.approx(separated_mix.harmonic_ratio)
        assert enriched.percussive_ratio == pytest.approx(separated_mix.percussive_ratio)
        assert enriched.dominant_instrument == features.instrument_family
        assert enriched.instrument_confidence == pytest.approx(separated_mix.separation_quality)
        assert enriched.rms == 0.2

    def test_keeps_existing_fields(self, separated_mix):
        record = FeatureRecord(timestamp_ms=0.0, harmonic_ratio=0.9, percussive_ratio=0.1,
                               dominant_instrument="piano", instrument_confidence=0.7)
        enriched = enrich_record(record, separated_mix, HPSSFeatures())
        assert enriched is record

    def test_without_features_only_ratios(self, separated_mix):
        enriched = enrich_record(FeatureRecord(timestamp_ms=0.0), separated_mix)
        assert enriched.harmonic_ratio is not None
        assert enriched.dominant_instrument is None
