"""
Reference per-frame feature source.

Turns a waveform into the FeatureRecord stream the decision engine
consumes, using librosa for every descriptor. At the default 22050 Hz and
a 512-sample hop one record is emitted every ~23.2 ms.
"""

from typing import Optional

import librosa
import numpy as np

from stylescope.core.records import FeatureRecord, PitchEstimate
from stylescope.logging_utils import log_event

# Spectral contrast is reported in dB; this span maps it onto [0, 1]
CONTRAST_DB_SPAN = 60.0


class FrameFeatureExtractor:
    """
    Extracts FeatureRecords from audio buffers.

    All descriptors share one hop length so that frame ``i`` of every
    feature describes the same slice of audio.
    """

    def __init__(
        self,
        n_fft: int = 2048,
        hop_length: int = 512,
        use_pitch: bool = False,
    ):
        """
        Initialize the extractor.

        Args:
            n_fft: FFT window size.
            hop_length: Samples between consecutive records.
            use_pitch: If True, run pyin to fill voice probability and pitch.
        """
        self.n_fft = n_fft
        self.hop_length = hop_length
        self.use_pitch = use_pitch

    def frame_period_ms(self, sr: int) -> float:
        return 1000.0 * self.hop_length / sr

    def extract(self, y: np.ndarray, sr: int, start_ms: float = 0.0) -> list[FeatureRecord]:
        """
        Compute one FeatureRecord per frame of *y*.

        Args:
            y: Mono audio buffer.
            sr: Sample rate.
            start_ms: Timestamp of the first sample.

        Returns:
            Records ordered by timestamp; empty for an empty buffer.
        """
        y = np.asarray(y, dtype=np.float32)
        if y.size == 0:
            return []
        hop = self.hop_length
        n_fft = min(self.n_fft, max(16, y.size))

        rms = librosa.feature.rms(y=y, frame_length=n_fft, hop_length=hop)[0]
        centroid = librosa.feature.spectral_centroid(y=y, sr=sr, n_fft=n_fft, hop_length=hop)[0]
        bandwidth = librosa.feature.spectral_bandwidth(y=y, sr=sr, n_fft=n_fft, hop_length=hop)[0]
        rolloff = librosa.feature.spectral_rolloff(y=y, sr=sr, n_fft=n_fft, hop_length=hop)[0]
        flatness = librosa.feature.spectral_flatness(y=y, n_fft=n_fft, hop_length=hop)[0]
        zcr = librosa.feature.zero_crossing_rate(y=y, frame_length=n_fft, hop_length=hop)[0]
        flux = librosa.onset.onset_strength(y=y, sr=sr, n_fft=n_fft, hop_length=hop)
        mfcc = librosa.feature.mfcc(y=y, sr=sr, n_mfcc=13, n_fft=n_fft, hop_length=hop)
        chroma = librosa.feature.chroma_stft(y=y, sr=sr, n_fft=n_fft, hop_length=hop)

        # 5 bands -> 6 rows (5 band contrasts + residual band)
        try:
            contrast = librosa.feature.spectral_contrast(
                y=y, sr=sr, n_fft=n_fft, hop_length=hop, n_bands=5
            )
            contrast = np.clip(contrast / CONTRAST_DB_SPAN, 0.0, 1.0)
        except Exception as exc:
            log_event("WARNING", "Frames", "Spectral contrast unavailable",
                      error=f"{type(exc).__name__}: {exc}")
            contrast = None

        n = min(len(rms), len(centroid), len(flux), mfcc.shape[1], chroma.shape[1])
        voice, f0, voiced = self._pitch(y, sr, n)

        times_ms = start_ms + librosa.frames_to_time(np.arange(n), sr=sr, hop_length=hop) * 1000.0
        records = []
        for i in range(n):
            pitch: Optional[PitchEstimate] = None
            if f0 is not None and voiced[i] and np.isfinite(f0[i]):
                pitch = PitchEstimate.from_frequency(float(f0[i]), float(voice[i]), voiced=True)
            records.append(
                FeatureRecord(
                    timestamp_ms=float(times_ms[i]),
                    rms=float(rms[i]),
                    spectral_centroid=float(centroid[i]),
                    zero_crossing_rate=float(zcr[i]),
                    spectral_flatness=float(flatness[i]),
                    spectral_flux=float(flux[i]),
                    spectral_bandwidth=float(bandwidth[i]),
                    spectral_rolloff=float(rolloff[i]),
                    voice_probability=float(voice[i]) if voice is not None else None,
                    mfcc=tuple(float(v) for v in mfcc[:, i]),
                    chroma=tuple(float(v) for v in chroma[:, i]),
                    spectral_contrast=(
                        tuple(float(v) for v in contrast[:, i])
                        if contrast is not None and i < contrast.shape[1] else None
                    ),
                    pitch=pitch,
                )
            )
        return records

    def _pitch(self, y: np.ndarray, sr: int, n: int):
        """pyin voiced probability and f0, nearest-resized to *n* frames."""
        if not self.use_pitch:
            return None, None, None
        try:
            f0, voiced, probs = librosa.pyin(
                y=y,
                fmin=float(librosa.note_to_hz("C2")),
                fmax=float(librosa.note_to_hz("C7")),
                sr=sr,
                frame_length=self.n_fft,
                hop_length=self.hop_length,
            )
        except Exception as exc:
            log_event("WARNING", "Frames", "Pitch tracking failed",
                      error=f"{type(exc).__name__}: {exc}")
            return None, None, None
        idx = np.round(np.linspace(0, len(f0) - 1, n)).astype(int)
        return (
            np.nan_to_num(probs[idx]),
            f0[idx],
            voiced[idx],
        )
