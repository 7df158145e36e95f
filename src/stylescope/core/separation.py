"""
Harmonic-Percussive Source Separation (HPSS) engine.

Iterative median-filtering HPSS: the magnitude spectrogram is repeatedly
smoothed along time (harmonic estimate) and along frequency (percussive
estimate), and the two estimates are recombined through a soft mask. Both
components are resynthesized with the phase of the input.

``HPSSEngine.separate`` never propagates an internal failure: degenerate
buffers and exceptions yield the documented fallback result. The only
exception that escapes is :class:`SeparationCancelled`.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Union

import librosa
import numpy as np
from scipy import ndimage

from stylescope.config import HPSSConfig
from stylescope.logging_utils import log_event

FALLBACK_HARMONIC_RATIO = 0.8
FALLBACK_PERCUSSIVE_RATIO = 0.2
FALLBACK_QUALITY = 0.5


class SeparationCancelled(Exception):
    """Raised when the caller's cancel event is set between iterations."""


@dataclass(frozen=True)
class HPSSResult:
    """Separated components of one waveform buffer."""

    harmonic: np.ndarray
    percussive: np.ndarray
    residual: np.ndarray
    original: np.ndarray
    harmonic_ratio: float
    percussive_ratio: float
    separation_quality: float
    sample_rate: int
    is_fallback: bool = False
    processing_ms: float = 0.0

    @property
    def n_samples(self) -> int:
        """Total number of samples in the original signal."""
        return len(self.original)

    @property
    def duration(self) -> float:
        return self.n_samples / self.sample_rate if self.sample_rate else 0.0

    @classmethod
    def fallback(cls, y: np.ndarray, sr: int) -> "HPSSResult":
        """Harmonic = input, percussive = silence, fixed neutral metrics."""
        original = np.asarray(y, dtype=np.float32).copy()
        zeros = np.zeros_like(original)
        return cls(
            harmonic=original.copy(),
            percussive=zeros,
            residual=zeros.copy(),
            original=original,
            harmonic_ratio=FALLBACK_HARMONIC_RATIO,
            percussive_ratio=FALLBACK_PERCUSSIVE_RATIO,
            separation_quality=FALLBACK_QUALITY,
            sample_rate=sr,
            is_fallback=True,
        )


def load_audio(
    audio_path: Union[str, Path],
    sr: int | None = 22050,
    mono: bool = True,
    duration: float | None = None,
) -> tuple[np.ndarray, int]:
    """
    Load audio from file.

    Args:
        audio_path: Path to audio file (wav, mp3, flac).
        sr: Target sample rate. None preserves original.
        mono: Convert to mono if True.
        duration: Only load up to this many seconds.

    Returns:
        Tuple of (audio_signal, sample_rate).
    """
    y, sr_out = librosa.load(audio_path, sr=sr, mono=mono, duration=duration)
    return y, sr_out


def _energy(x: np.ndarray) -> float:
    return float(np.sum(np.square(x, dtype=np.float64)))


def _correlation(a: np.ndarray, b: np.ndarray) -> float:
    if a.size < 2 or np.std(a) == 0 or np.std(b) == 0:
        return 0.0
    corr = float(np.corrcoef(a, b)[0, 1])
    return corr if np.isfinite(corr) else 0.0


class HPSSEngine:
    """
    Median-filtering HPSS with a soft mask.

    Each call to :meth:`separate` is a pure function of its input buffer and
    the engine configuration, so one engine may serve several threads.
    """

    def __init__(self, config: Optional[HPSSConfig] = None):
        self.config = config or HPSSConfig()

    def separate(
        self,
        y: np.ndarray,
        sr: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> HPSSResult:
        """
        Separate *y* into harmonic, percussive and residual components.

        Args:
            y: Mono audio buffer.
            sr: Sample rate.
            cancel_event: Checked once per iteration; when set the call
                raises SeparationCancelled.

        Returns:
            HPSSResult. The fallback result when the buffer is degenerate or
            the computation fails.
        """
        y = np.asarray(y, dtype=np.float32).reshape(-1)
        reason = self._degenerate_reason(y)
        if reason is not None:
            log_event("WARNING", "HPSS", "Using fallback separation", reason=reason, samples=len(y))
            return HPSSResult.fallback(np.nan_to_num(y), sr)

        start = time.perf_counter()
        try:
            result = self._separate(y, sr, cancel_event)
        except SeparationCancelled:
            log_event("INFO", "HPSS", "Separation cancelled", samples=len(y))
            raise
        except Exception as exc:
            log_event("ERROR", "HPSS", "Separation failed, using fallback",
                      error=f"{type(exc).__name__}: {exc}")
            return HPSSResult.fallback(y, sr)

        elapsed_ms = (time.perf_counter() - start) * 1000.0
        log_event(
            "DEBUG", "HPSS", "Separation done",
            samples=len(y), ms=round(elapsed_ms, 1),
            harmonic=round(result.harmonic_ratio, 3),
            percussive=round(result.percussive_ratio, 3),
            quality=round(result.separation_quality, 3),
        )
        return replace(result, processing_ms=elapsed_ms)

    def _degenerate_reason(self, y: np.ndarray) -> Optional[str]:
        if y.size == 0:
            return "empty buffer"
        if not np.all(np.isfinite(y)):
            return "non-finite samples"
        if y.size < self.config.window_size:
            return f"buffer shorter than window ({y.size} < {self.config.window_size})"
        if np.max(np.abs(y)) == 0:
            return "silent buffer"
        return None

    def _separate(self, y: np.ndarray, sr: int, cancel_event: Optional[threading.Event]) -> HPSSResult:
        cfg = self.config
        peak = float(np.max(np.abs(y)))
        y_norm = y / peak

        stft = librosa.stft(
            y_norm, n_fft=cfg.window_size, hop_length=cfg.hop_size, window="hann", center=True
        )
        magnitude, phase = librosa.magphase(stft)
        harmonic_mag, percussive_mag = self.masked_magnitudes(magnitude, cancel_event)

        istft_kwargs = dict(
            hop_length=cfg.hop_size, n_fft=cfg.window_size, window="hann",
            center=True, length=len(y),
        )
        harmonic = librosa.istft(harmonic_mag * phase, **istft_kwargs) * peak
        percussive = librosa.istft(percussive_mag * phase, **istft_kwargs) * peak
        harmonic = harmonic.astype(np.float32)
        percussive = percussive.astype(np.float32)
        residual = y - harmonic - percussive

        harmonic_ratio, percussive_ratio, quality = self.separation_metrics(y, harmonic, percussive)
        return HPSSResult(
            harmonic=harmonic,
            percussive=percussive,
            residual=residual,
            original=y.copy(),
            harmonic_ratio=harmonic_ratio,
            percussive_ratio=percussive_ratio,
            separation_quality=quality,
            sample_rate=sr,
        )

    def masked_magnitudes(
        self,
        magnitude: np.ndarray,
        cancel_event: Optional[threading.Event] = None,
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        Run the median-filter / soft-mask iterations on a magnitude spectrogram.

        Args:
            magnitude: Array of shape (n_freq, n_frames).
            cancel_event: Optional event checked before every iteration.

        Returns:
            (harmonic_magnitude, percussive_magnitude); they sum to *magnitude*.
        """
        cfg = self.config
        k = cfg.kernel_size

        # Working buffers, reused in place by every iteration
        harmonic = magnitude.copy()
        percussive = magnitude.copy()
        h_filtered = np.empty_like(magnitude)
        p_filtered = np.empty_like(magnitude)
        denominator = np.empty_like(magnitude)
        mask = np.empty_like(magnitude)

        for iteration in range(cfg.iterations):
            if cancel_event is not None and cancel_event.is_set():
                raise SeparationCancelled(f"cancelled before iteration {iteration + 1}")

            ndimage.median_filter(harmonic, size=(1, k), mode="nearest", output=h_filtered)
            ndimage.median_filter(percussive, size=(k, 1), mode="nearest", output=p_filtered)

            np.power(h_filtered, cfg.power, out=h_filtered)
            np.power(p_filtered, cfg.power, out=p_filtered)
            np.add(h_filtered, p_filtered, out=denominator)
            mask.fill(0.5)
            np.divide(h_filtered, denominator, out=mask, where=denominator > 0)

            np.multiply(magnitude, mask, out=harmonic)
            np.subtract(magnitude, harmonic, out=percussive)

        return harmonic, percussive

    @staticmethod
    def separation_metrics(
        original: np.ndarray,
        harmonic: np.ndarray,
        percussive: np.ndarray,
    ) -> tuple[float, float, float]:
        """
        Energy ratios and separation quality.

        The ratios are energy fractions of the original; when their sum
        exceeds 1 both are scaled down proportionally. Quality blends energy
        preservation (0.6) with decorrelation of the two components (0.4).
        """
        original_energy = _energy(original)
        if original_energy <= 0:
            return 0.0, 0.0, 0.0
        harmonic_ratio = _energy(harmonic) / original_energy
        percussive_ratio = _energy(percussive) / original_energy
        total = harmonic_ratio + percussive_ratio
        if total > 1.0:
            harmonic_ratio /= total
            percussive_ratio /= total

        preservation = float(np.clip(total, 0.0, 1.0))
        separation = 1.0 - abs(_correlation(harmonic, percussive))
        quality = float(np.clip(0.6 * preservation + 0.4 * separation, 0.0, 1.0))
        return (
            float(np.clip(harmonic_ratio, 0.0, 1.0)),
            float(np.clip(percussive_ratio, 0.0, 1.0)),
            quality,
        )

    def separate_file(
        self,
        audio_path: Union[str, Path],
        sr: int | None = 22050,
        duration: float | None = None,
    ) -> HPSSResult:
        """
        Load and separate an audio file in one step.

        Args:
            audio_path: Path to audio file.
            sr: Target sample rate (default 22050 for efficiency).
            duration: Only load up to this many seconds.

        Returns:
            HPSSResult with separated components.
        """
        y, sr_out = load_audio(audio_path, sr=sr, duration=duration)
        return self.separate(y, sr_out)
