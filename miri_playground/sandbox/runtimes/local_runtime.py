"""
Local runtime: toolchain stages run directly inside this container.
"""

import signal
from collections.abc import Iterable, Mapping, Sequence

from ..budget import ResourceBudget
from ..workarea import WorkingArea
from .base import PreparedCommand, allowlisted_env


class LocalSandboxRuntime:
    """Executes toolchain commands as local subprocesses rooted in the working area."""

    name = "local"

    def __init__(self, env_allowlist: Iterable[str] | None = None):
        self.env_allowlist = list(env_allowlist or [])

    def home_for(self, area: WorkingArea) -> str:
        return str(area.path)

    def uses_host_toolchain(self) -> bool:
        return True

    def prepare(
        self,
        command: Sequence[str],
        area: WorkingArea,
        env: Mapping[str, str],
        budget: ResourceBudget,
    ) -> PreparedCommand:
        merged = {**allowlisted_env(self.env_allowlist), **env}
        return PreparedCommand(argv=[str(part) for part in command], cwd=area.path, env=merged)

    def limit_exceeded(self, exit_code: int | None) -> str | None:
        if exit_code == -signal.SIGXCPU:
            return "cpu_time"
        return None

    def cleanup(self, area: WorkingArea) -> None:
        return None
