from __future__ import annotations

import time


class Clock:
    """Elapsed milliseconds relative to the start of one check."""

    def __init__(self) -> None:
        # Wall clock for the stored start timestamp, monotonic clock for offsets.
        self.start_time = time.time()
        self._started = time.perf_counter()

    def elapsed(self) -> int:
        return int(round((time.perf_counter() - self._started) * 1000.0))
