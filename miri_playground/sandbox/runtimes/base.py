"""
Base types for sandbox execution runtimes.
"""

import os
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..budget import ResourceBudget
from ..workarea import WorkingArea


@dataclass(slots=True)
class PreparedCommand:
    """Command line handed to the resource limiter."""

    argv: list[str]
    cwd: Path | None
    env: dict[str, str]


class SandboxRuntime(Protocol):
    """Runtime contract for sandbox execution backends."""

    name: str

    def home_for(self, area: WorkingArea) -> str:
        """Home directory of the sandboxed process, as seen from inside the runtime."""

    def uses_host_toolchain(self) -> bool:
        """Whether toolchain binaries are resolved on this host."""

    def prepare(
        self,
        command: Sequence[str],
        area: WorkingArea,
        env: Mapping[str, str],
        budget: ResourceBudget,
    ) -> PreparedCommand:
        """Wrap a toolchain command so it runs inside this runtime."""

    def limit_exceeded(self, exit_code: int | None) -> str | None:
        """Name the bound an exit status reveals as exceeded (``memory`` / ``cpu_time``)."""

    def cleanup(self, area: WorkingArea) -> None:
        """Release runtime resources still associated with ``area``."""


def allowlisted_env(allowlist: Iterable[str]) -> dict[str, str]:
    """Host environment variables explicitly allowed into the sandbox."""
    env: dict[str, str] = {}
    for key in allowlist:
        normalized_key = str(key).strip()
        if not normalized_key:
            continue
        value = os.getenv(normalized_key)
        if value is None:
            continue
        # Prevent control chars from leaking into process env.
        env[normalized_key] = value.replace("\n", "").replace("\r", "")
    return env
