"""
Execution statistics: outcome counters and per-stage timings.
"""

import threading
import time
from collections import Counter, defaultdict
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from .logging import get_logger

logger = get_logger(__name__)


@dataclass
class TimingStats:
    """Statistics for a timed operation."""

    count: int = 0
    total_time: float = 0.0
    min_time: float = float("inf")
    max_time: float = 0.0

    def add(self, elapsed: float) -> None:
        """Add a timing measurement."""
        self.count += 1
        self.total_time += elapsed
        self.min_time = min(self.min_time, elapsed)
        self.max_time = max(self.max_time, elapsed)

    @property
    def avg_time(self) -> float:
        """Average time per operation."""
        return self.total_time / self.count if self.count > 0 else 0.0


class ExecutionStats:
    """
    Thread-safe aggregate of what the playground has executed.

    Shared by every in-flight request, so all mutation happens under a lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timings: dict[str, TimingStats] = defaultdict(TimingStats)
        self._outcomes: Counter[str] = Counter()
        self._started_at = time.time()

    @contextmanager
    def timed_stage(self, name: str) -> Generator[None, None, None]:
        """
        Context manager for timing a runner stage.

        Args:
            name: Name of the stage being timed
        """
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start
            self.record_timing(name, elapsed)
            logger.debug(f"[TIMING] {name}: {elapsed:.3f}s")

    def record_timing(self, name: str, elapsed: float) -> None:
        with self._lock:
            self._timings[name].add(elapsed)

    def record_outcome(self, tag: str, elapsed: float) -> None:
        with self._lock:
            self._outcomes[tag] += 1
            self._timings["request"].add(elapsed)

    def outcome_counts(self) -> dict[str, int]:
        with self._lock:
            return dict(self._outcomes)

    def get_timing_stats(self) -> dict[str, dict[str, float]]:
        """Get all timing statistics."""
        with self._lock:
            return {
                name: {
                    "count": stats.count,
                    "total": stats.total_time,
                    "avg": stats.avg_time,
                    "min": stats.min_time if stats.count > 0 else 0,
                    "max": stats.max_time,
                }
                for name, stats in self._timings.items()
            }

    def snapshot(self) -> dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self._started_at, 3),
            "outcomes": self.outcome_counts(),
            "timings": self.get_timing_stats(),
        }

    def clear(self) -> None:
        with self._lock:
            self._timings.clear()
            self._outcomes.clear()
