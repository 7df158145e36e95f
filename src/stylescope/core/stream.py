"""
Background HPSS scheduling for one live stream.

Architecture Overview
---------------------
::

    Audio source
        │
        ▼  (ring buffer, hpss_buffer_s seconds)
    HPSSScheduler.push_audio(chunk)
        │
        ├─► every hpss_interval_s: submit one job to a single worker
        │        └─► HPSSEngine.separate → extract_hpss_features
        │            (skipped while the previous job is still running)
        │
        └─► HPSSScheduler.enrich(record)
                 └─► latest HPSS ratios / instrument family merged into
                     the FeatureRecords that follow

The producer thread only copies samples and reads the latest result under
a lock; the separation itself never runs on the producer thread.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

import numpy as np

from stylescope.core.hpss_features import HPSSFeatures, enrich_record, extract_hpss_features
from stylescope.core.records import FeatureRecord
from stylescope.core.separation import HPSSEngine, HPSSResult, SeparationCancelled
from stylescope.logging_utils import log_event


class HPSSScheduler:
    """
    At-most-one-job-per-stream HPSS runner.

    Parameters
    ----------
    engine:
        HPSS engine to run (default: ``HPSSEngine()``).
    sample_rate:
        Sample rate of the pushed audio.
    buffer_seconds:
        Length of the ring buffer handed to each job.
    interval_seconds:
        Audio time between two submissions.
    """

    def __init__(
        self,
        engine: Optional[HPSSEngine] = None,
        sample_rate: int = 22050,
        buffer_seconds: float = 1.5,
        interval_seconds: float = 1.0,
    ):
        self.engine = engine or HPSSEngine()
        self.sample_rate = sample_rate
        self.interval_samples = max(1, int(round(interval_seconds * sample_rate)))

        self._buffer = np.zeros(max(1, int(round(buffer_seconds * sample_rate))), dtype=np.float32)
        self._filled = 0
        self._since_submit = 0

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stylescope-hpss")
        self._future: Optional[Future] = None
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._latest: Optional[HPSSResult] = None
        self._latest_features: Optional[HPSSFeatures] = None

        self.submitted = 0
        self.skipped = 0
        self.completed = 0

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def push_audio(self, chunk: np.ndarray) -> bool:
        """
        Append samples to the ring buffer; submit a job when one is due.

        Returns True when a job was submitted by this call.
        """
        chunk = np.asarray(chunk, dtype=np.float32).reshape(-1)
        k = chunk.size
        if k == 0:
            return False
        size = self._buffer.size
        if k >= size:
            self._buffer[:] = chunk[-size:]
        else:
            self._buffer[:-k] = self._buffer[k:]
            self._buffer[-k:] = chunk
        self._filled = min(size, self._filled + k)
        self._since_submit += k

        if self._since_submit >= self.interval_samples and self._filled >= self.engine.config.window_size:
            return self.submit()
        return False

    @property
    def busy(self) -> bool:
        return self._future is not None and not self._future.done()

    def submit(self) -> bool:
        """Submit the current buffer unless a job is still running."""
        if self.busy:
            self.skipped += 1
            log_event("DEBUG", "Scheduler", "HPSS job still running, skipping", skipped=self.skipped)
            return False
        self._since_submit = 0
        self._cancel.clear()
        buffer = self._buffer[-self._filled:].copy()
        self._future = self._executor.submit(self._run, buffer)
        self.submitted += 1
        return True

    def _run(self, buffer: np.ndarray) -> Optional[HPSSResult]:
        try:
            result = self.engine.separate(buffer, self.sample_rate, cancel_event=self._cancel)
        except SeparationCancelled:
            return None
        cfg = self.engine.config
        features = extract_hpss_features(result, n_fft=cfg.window_size, hop_length=cfg.hop_size)
        with self._lock:
            self._latest = result
            self._latest_features = features
            self.completed += 1
        return result

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    @property
    def latest(self) -> Optional[HPSSResult]:
        with self._lock:
            return self._latest

    @property
    def latest_features(self) -> Optional[HPSSFeatures]:
        with self._lock:
            return self._latest_features

    def enrich(self, record: FeatureRecord) -> FeatureRecord:
        """Merge the latest HPSS outputs into *record* (unchanged if none yet)."""
        with self._lock:
            result, features = self._latest, self._latest_features
        if result is None:
            return record
        return enrich_record(record, result, features)

    def wait(self, timeout: Optional[float] = None) -> Optional[HPSSResult]:
        """Block until the current job finishes and return its result."""
        if self._future is None:
            return None
        return self._future.result(timeout=timeout)

    def cancel(self) -> None:
        """Ask the running job to stop at its next iteration boundary."""
        self._cancel.set()

    def shutdown(self, wait: bool = True) -> None:
        if not wait:
            self.cancel()
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "HPSSScheduler":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown(wait=True)
