"""Stage timing for ingestion runs - latency focused."""

import time
from contextlib import contextmanager
from typing import Iterator

from .models import FetchResult


class MetricsCollector:
    """Accumulates elapsed time per named stage across a run."""

    def __init__(self):
        self.totals: dict[str, float] = {}
        self._start_times: dict[str, float] = {}
        self._run_started = time.perf_counter()

    def start_timer(self, name: str) -> None:
        """Start a named timer."""
        self._start_times[name] = time.perf_counter()

    def stop_timer(self, name: str) -> float:
        """Stop a named timer, add it to the stage total and return elapsed time."""
        if name not in self._start_times:
            return 0.0
        elapsed = time.perf_counter() - self._start_times.pop(name)
        self.totals[name] = self.totals.get(name, 0.0) + elapsed
        return elapsed

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        self.start_timer(name)
        try:
            yield
        finally:
            self.stop_timer(name)

    def apply(self, result: FetchResult) -> FetchResult:
        """Copy stage totals and overall duration onto a result."""
        result.duration_sec = time.perf_counter() - self._run_started
        result.parse_time_sec = self.totals.get("parse", 0.0)
        result.classification_time_sec = self.totals.get("classification", 0.0)
        result.materialize_time_sec = self.totals.get("materialize", 0.0)
        return result
