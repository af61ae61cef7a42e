"""Throughput estimation for transfers."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable

Clock = Callable[[], float]


class RateWindow:
    """Bytes-per-second over a sliding window of cumulative byte samples."""

    def __init__(self, window_seconds: float = 2.0, *, clock: Clock = time.monotonic) -> None:
        self._window = window_seconds
        self._clock = clock
        self._samples: deque[tuple[float, int]] = deque()
        self._lock = threading.Lock()

    def add(self, total_bytes: int) -> float:
        """Record the cumulative byte count and return the current rate."""
        now = self._clock()
        with self._lock:
            self._samples.append((now, total_bytes))
            while len(self._samples) > 2 and now - self._samples[0][0] > self._window:
                self._samples.popleft()
            first_time, first_bytes = self._samples[0]
            elapsed = now - first_time
            if elapsed <= 0:
                return 0.0
            return max(0.0, (total_bytes - first_bytes) / elapsed)


class SpeedEstimator:
    """Smoothed aggregate throughput across all active transfers.

    Samples are cumulative byte counts. A raw rate is only computed once the
    window spans ``min_span`` seconds; it is capped at ``spike_factor`` times
    the previous estimate, folded in with an exponential moving average, and
    the estimate reads as zero once no update arrived for ``decay_after``
    seconds.
    """

    def __init__(
        self,
        *,
        window: float = 3.0,
        min_span: float = 0.8,
        alpha: float = 0.2,
        spike_factor: float = 3.0,
        decay_after: float = 1.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self._window = window
        self._min_span = min_span
        self._alpha = alpha
        self._spike_factor = spike_factor
        self._decay_after = decay_after
        self._clock = clock
        self._samples: deque[tuple[float, int]] = deque()
        self._speed = 0.0
        self._last_update: float | None = None

    def update(self, total_bytes: int) -> float:
        """Fold in a new cumulative byte total and return the smoothed speed."""
        now = self._clock()
        if self._samples and total_bytes < self._samples[-1][1]:
            # The set of active tasks shrank; restart the window from here.
            self._samples.clear()
        self._samples.append((now, total_bytes))
        while self._samples and now - self._samples[0][0] > self._window:
            self._samples.popleft()
        self._last_update = now

        first_time, first_bytes = self._samples[0]
        span = now - first_time
        if span < self._min_span:
            return self._speed

        raw = max(0.0, (total_bytes - first_bytes) / span)
        if self._speed > 0:
            raw = min(raw, self._speed * self._spike_factor)
            self._speed = self._alpha * raw + (1 - self._alpha) * self._speed
        else:
            self._speed = raw
        return self._speed

    def current(self) -> float:
        """Return the estimate, decayed to zero when updates stopped."""
        if self._last_update is None:
            return 0.0
        if self._clock() - self._last_update > self._decay_after:
            self._speed = 0.0
            self._samples.clear()
        return self._speed

    def reset(self) -> None:
        self._samples.clear()
        self._speed = 0.0
        self._last_update = None


__all__ = ["Clock", "RateWindow", "SpeedEstimator"]
