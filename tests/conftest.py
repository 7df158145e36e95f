"""Shared fixtures: synthetic signals and FeatureRecord factories."""

import numpy as np
import pytest

from stylescope.core.records import FeatureRecord

TEST_SR = 22050
FRAME_MS = 23.2


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

@pytest.fixture
def pure_sine():
    """A 440 Hz sine lasting 2 seconds."""
    sr = TEST_SR
    t = np.linspace(0, 2.0, int(sr * 2.0), endpoint=False)
    y = (0.5 * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32)
    return y, sr


@pytest.fixture
def impulse_train():
    """Clicks every 0.25 s for 2 seconds."""
    sr = TEST_SR
    y = np.zeros(int(sr * 2.0), dtype=np.float32)
    y[:: sr // 4] = 1.0
    return y, sr


@pytest.fixture
def mixed_signal(pure_sine, impulse_train):
    """Sine plus impulse train: one harmonic and one percussive component."""
    y_sine, sr = pure_sine
    y_click, _ = impulse_train
    return (y_sine + 0.8 * y_click).astype(np.float32), sr


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def techno_record(i: int, spike_every: int = 20, **overrides) -> FeatureRecord:
    """
    Frame ``i`` of a steady techno-like stream.

    Flux spikes every ``spike_every`` frames: at 23.2 ms per frame, 20
    frames give ~129 BPM.
    """
    values = dict(
        timestamp_ms=i * FRAME_MS,
        rms=0.8,
        spectral_centroid=2500.0,
        zero_crossing_rate=0.15,
        spectral_flatness=0.1,
        spectral_flux=1.0 if i % spike_every == 0 else 0.1,
        voice_probability=0.1,
        percussive_ratio=0.7,
        harmonic_ratio=0.3,
        mfcc=tuple(float(k) for k in range(13)),
        chroma=tuple([0.4] * 12),
        spectral_contrast=(0.6, 0.5, 0.4, 0.3, 0.2, 0.1),
    )
    values.update(overrides)
    return FeatureRecord(**values)


def silent_record(i: int) -> FeatureRecord:
    return FeatureRecord(
        timestamp_ms=i * FRAME_MS,
        rms=0.0,
        spectral_centroid=0.0,
        zero_crossing_rate=0.0,
        spectral_flatness=0.0,
        spectral_flux=0.0,
        voice_probability=0.0,
        percussive_ratio=0.0,
        harmonic_ratio=0.0,
        mfcc=(0.0,) * 13,
        chroma=(0.0,) * 12,
        spectral_contrast=(0.0,) * 6,
    )


@pytest.fixture
def techno_records():
    """~3 seconds of steady techno-like records."""
    return [techno_record(i) for i in range(130)]


@pytest.fixture
def silent_records():
    """~3 seconds of all-zero records."""
    return [silent_record(i) for i in range(130)]


@pytest.fixture
def make_techno_record():
    return techno_record


@pytest.fixture
def make_silent_record():
    return silent_record
