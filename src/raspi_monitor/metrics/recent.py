"""
In-memory buffer of the most recent raw samples.

Serves "recent trend" reads without touching SQLite. The buffer is bounded by
age (at most one hour) and by count, so memory stays flat even if the clock
jumps or the interval is misconfigured.
"""

from __future__ import annotations

from collections import deque

from raspi_monitor.metrics.storage import RawSample

MAX_WINDOW_MS = 3_600_000


class RecentSamples:
    """
    Age-bounded ring buffer of RawSample, oldest first.

    Args:
        window_ms: Samples older than ``newest - window_ms`` are evicted
            (capped at one hour).
        interval_ms: Expected sampling interval, used to size the deque.
    """

    def __init__(self, window_ms: int = MAX_WINDOW_MS, interval_ms: int = 1000) -> None:
        self.window_ms = max(1, min(int(window_ms), MAX_WINDOW_MS))
        # A little headroom above window/interval for tick jitter
        self.maxlen = self.window_ms // max(1, int(interval_ms)) + 2
        self._dq: deque[RawSample] = deque(maxlen=self.maxlen)

    def __len__(self) -> int:
        return len(self._dq)

    def append(self, sample: RawSample) -> None:
        """Add a sample and evict everything that fell out of the window."""
        self._dq.append(sample)
        cutoff = sample.time_ms - self.window_ms
        while self._dq and self._dq[0].time_ms < cutoff:
            self._dq.popleft()

    def latest(self) -> RawSample | None:
        """Most recently appended sample."""
        return self._dq[-1] if self._dq else None

    def since(self, from_ms: int) -> list[RawSample]:
        """Samples with ``time_ms >= from_ms``, oldest first."""
        return [s for s in self._dq if s.time_ms >= from_ms]

    def snapshot(self) -> list[RawSample]:
        """Copy of the whole buffer, oldest first."""
        return list(self._dq)

    def clear(self) -> None:
        self._dq.clear()
