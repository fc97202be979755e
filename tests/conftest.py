"""
Pytest configuration and fixtures for playground tests.
"""

import os
import shutil
import subprocess
import sys
import threading
from collections.abc import Callable

import pytest
from hypothesis import Verbosity, settings

from miri_playground.core.stats import ExecutionStats
from miri_playground.sandbox.budget import ResourceBudget
from miri_playground.sandbox.limiter import CapturedOutput, ProcessResult, Termination
from miri_playground.sandbox.runtimes.local_runtime import LocalSandboxRuntime
from miri_playground.sandbox.toolchain import Toolchain
from miri_playground.sandbox.workarea import WorkingAreaFactory

# Configure hypothesis settings for property-based testing
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,  # Disable deadline for slow operations
)

settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.register_profile(
    "dev",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))

posix_only = pytest.mark.skipif(os.name != "posix", reason="process sandboxing requires POSIX")

PYTHON = sys.executable


def _miri_available() -> bool:
    cargo = shutil.which("cargo")
    if cargo is None:
        return False
    try:
        result = subprocess.run(
            [cargo, "miri", "--version"], capture_output=True, timeout=30, check=False
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0


MIRI_AVAILABLE = _miri_available()

requires_miri = pytest.mark.skipif(not MIRI_AVAILABLE, reason="cargo miri is not installed")


def process_result(
    exit_code: int | None = 0,
    stdout: str = "",
    stderr: str = "",
    *,
    elapsed: float = 0.1,
    termination: Termination | None = None,
    launch_error: str | None = None,
) -> ProcessResult:
    """Build a scripted limiter result."""
    return ProcessResult(
        exit_code=exit_code,
        stdout=CapturedOutput.from_text(stdout),
        stderr=CapturedOutput.from_text(stderr),
        elapsed=elapsed,
        termination=termination,
        launch_error=launch_error,
    )


class ScriptedLimiter:
    """Stand-in for `ResourceLimiter` that replays prepared results in order."""

    def __init__(self, *results: ProcessResult | Callable[..., ProcessResult]):
        self.results = list(results)
        self.calls: list[dict] = []
        self._lock = threading.Lock()

    def run(self, command, budget, *, cwd=None, env=None, cancel_event=None) -> ProcessResult:
        with self._lock:
            self.calls.append(
                {"command": list(command), "budget": budget, "cwd": cwd, "env": dict(env or {})}
            )
            if not self.results:
                raise AssertionError(f"unexpected launch of {command}")
            result = self.results.pop(0)
        if callable(result):
            return result(command, budget, cancel_event)
        return result


class RecordingRuntime(LocalSandboxRuntime):
    """Local runtime that records cleanup calls."""

    def __init__(self):
        super().__init__()
        self.cleaned: list[str] = []

    def cleanup(self, area) -> None:
        self.cleaned.append(area.name)


@pytest.fixture
def budget():
    return ResourceBudget(
        timeout_seconds=5.0,
        memory_limit_mb=256,
        cpu_time_seconds=5.0,
        max_output_bytes=4096,
        max_open_files=64,
    )


@pytest.fixture
def toolchain():
    return Toolchain(cargo="cargo", crate_name="playground", edition="2018", offline=True)


@pytest.fixture
def runtime():
    return RecordingRuntime()


@pytest.fixture
def stats():
    return ExecutionStats()


@pytest.fixture
def workareas(tmp_path):
    return WorkingAreaFactory(tmp_path / "areas")


@pytest.fixture
def hello_world_code():
    return 'fn main() {\n    println!("hi");\n}\n'
