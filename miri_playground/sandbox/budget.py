"""
Resource budgets for a single sandboxed execution.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields, replace

from ..core.exceptions import ConfigurationError


@dataclass(frozen=True, slots=True)
class ResourceBudget:
    """
    Bounds applied to one request.

    Every bound must be finite and positive. A budget that would allow
    unbounded consumption cannot be constructed.
    """

    timeout_seconds: float = 10.0
    memory_limit_mb: int = 512
    cpu_time_seconds: float = 10.0
    max_output_bytes: int = 64 * 1024
    max_open_files: int = 256

    def __post_init__(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"Budget bound '{item.name}' must be a number, got {value!r}")
            if not math.isfinite(value) or value <= 0:
                raise ConfigurationError(
                    f"Budget bound '{item.name}' must be finite and positive, got {value!r}"
                )

    @property
    def memory_limit_bytes(self) -> int:
        return int(self.memory_limit_mb) * 1024 * 1024

    def with_timeout(self, timeout_seconds: float) -> ResourceBudget:
        """Copy of this budget with a different wall-clock bound."""
        return replace(self, timeout_seconds=timeout_seconds)

    def remaining(self, elapsed: float) -> float:
        """Wall-clock time left after ``elapsed`` seconds were already spent."""
        return max(0.0, self.timeout_seconds - max(0.0, elapsed))

    def with_overrides(
        self,
        *,
        timeout_seconds: float | None = None,
        memory_limit_mb: int | None = None,
        max_timeout_seconds: float,
        max_memory_limit_mb: int,
    ) -> ResourceBudget:
        """
        Apply per-request overrides, clamped to administrator ceilings.

        Overrides may lower or raise a bound but never past its ceiling. The
        CPU-time bound follows the wall-clock bound when that one is overridden.
        """
        timeout = self.timeout_seconds
        cpu_time = self.cpu_time_seconds
        memory = self.memory_limit_mb

        if timeout_seconds is not None:
            timeout = min(float(timeout_seconds), float(max_timeout_seconds))
            cpu_time = timeout
        if memory_limit_mb is not None:
            memory = min(int(memory_limit_mb), int(max_memory_limit_mb))

        return replace(
            self,
            timeout_seconds=timeout,
            cpu_time_seconds=cpu_time,
            memory_limit_mb=memory,
        )

    def to_dict(self) -> dict[str, float | int]:
        return {item.name: getattr(self, item.name) for item in fields(self)}
