"""
Resource-limited process launcher.

`ResourceLimiter.run` spawns one command in its own session, watches the whole
process tree against a `ResourceBudget`, and kills the tree the moment a bound
is crossed. Output is captured with a per-stream byte cap; the pipes keep being
drained past the cap so the child can never block on a full pipe.
"""

from __future__ import annotations

import math
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO

import psutil

from ..core.logging import get_logger
from .budget import ResourceBudget

logger = get_logger(__name__)

if os.name == "posix":
    import resource
else:  # pragma: no cover - the sandbox only runs on POSIX hosts
    resource = None

_READ_CHUNK = 64 * 1024


class Termination(str, Enum):
    """Why the limiter killed a process tree."""

    TIMEOUT = "timeout"
    MEMORY = "memory"
    CPU_TIME = "cpu_time"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class CapturedOutput:
    """Bytes retained from one output stream."""

    data: bytes = b""
    truncated: bool = False
    total_bytes: int = 0

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")

    @classmethod
    def from_text(cls, text: str) -> CapturedOutput:
        data = text.encode("utf-8")
        return cls(data=data, truncated=False, total_bytes=len(data))


@dataclass(slots=True)
class ProcessResult:
    """Raw outcome of one limited process run."""

    exit_code: int | None
    stdout: CapturedOutput
    stderr: CapturedOutput
    elapsed: float
    termination: Termination | None = None
    launch_error: str | None = None
    peak_memory_bytes: int = 0
    cpu_time_seconds: float = 0.0

    @property
    def launched(self) -> bool:
        return self.launch_error is None

    @property
    def signal_number(self) -> int | None:
        """Signal that ended the process, if it died from one."""
        if self.exit_code is not None and self.exit_code < 0:
            return -self.exit_code
        return None


class _StreamCollector:
    """Drains a pipe on a background thread, retaining at most ``limit`` bytes."""

    def __init__(self, stream: IO[bytes], limit: int):
        self._stream = stream
        self._limit = max(0, int(limit))
        self._buffer = bytearray()
        self._total = 0
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._drain, name="limiter-drain", daemon=True)

    def start(self) -> _StreamCollector:
        self._thread.start()
        return self

    def _drain(self) -> None:
        fd = self._stream.fileno()
        try:
            while True:
                try:
                    chunk = os.read(fd, _READ_CHUNK)
                except OSError:
                    break
                if not chunk:
                    break
                with self._lock:
                    room = self._limit - len(self._buffer)
                    if room > 0:
                        self._buffer += chunk[:room]
                    self._total += len(chunk)
        finally:
            self._stream.close()

    def join(self, timeout: float) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def result(self) -> CapturedOutput:
        with self._lock:
            return CapturedOutput(
                data=bytes(self._buffer),
                truncated=self._total > self._limit,
                total_bytes=self._total,
            )


class _TreeWatcher:
    """Samples resident memory and CPU time of a process and its descendants."""

    def __init__(self, pid: int):
        try:
            self._root: psutil.Process | None = psutil.Process(pid)
        except psutil.NoSuchProcess:
            self._root = None
        self._known: dict[int, psutil.Process] = {}
        self._cpu_by_pid: dict[int, float] = {}
        self.peak_rss = 0

    def sample(self) -> tuple[int, float]:
        """Return (resident bytes now, CPU seconds consumed so far)."""
        if self._root is None:
            return 0, self.cpu_seconds
        try:
            processes = [self._root, *self._root.children(recursive=True)]
        except psutil.NoSuchProcess:
            return 0, self.cpu_seconds

        rss = 0
        for proc in processes:
            try:
                with proc.oneshot():
                    memory = proc.memory_info().rss
                    times = proc.cpu_times()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            self._known[proc.pid] = proc
            self._cpu_by_pid[proc.pid] = times.user + times.system
            rss += memory

        self.peak_rss = max(self.peak_rss, rss)
        return rss, self.cpu_seconds

    @property
    def cpu_seconds(self) -> float:
        return sum(self._cpu_by_pid.values())

    def known_processes(self) -> list[psutil.Process]:
        return list(self._known.values())


class ResourceLimiter:
    """
    Runs commands under a `ResourceBudget`.

    Bounds are enforced twice: POSIX rlimits applied in the child before exec
    act as a per-process backstop, while the watch loop enforces the budget
    over the whole tree and performs the kill.
    """

    def __init__(
        self,
        *,
        poll_interval: float = 0.05,
        drain_timeout: float = 5.0,
        enforce_address_space: bool = False,
    ):
        self.poll_interval = poll_interval
        self.drain_timeout = drain_timeout
        self.enforce_address_space = enforce_address_space

    def run(
        self,
        command: Sequence[str],
        budget: ResourceBudget,
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ProcessResult:
        """
        Run ``command`` to completion or until a bound is crossed.

        Never raises for launch failures: a command that cannot be started
        is reported through ``ProcessResult.launch_error``.
        """
        argv = [str(part) for part in command]
        start = time.monotonic()
        if not argv:
            return self._launch_failure("<empty>", "empty command", start)

        try:
            process = subprocess.Popen(
                argv,
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
                preexec_fn=self._limits_hook(budget),
            )
        except (OSError, subprocess.SubprocessError) as exc:
            return self._launch_failure(argv[0], str(exc), start)

        stdout = _StreamCollector(process.stdout, budget.max_output_bytes).start()
        stderr = _StreamCollector(process.stderr, budget.max_output_bytes).start()
        watcher = _TreeWatcher(process.pid)
        deadline = start + budget.timeout_seconds
        termination: Termination | None = None

        try:
            termination = self._watch(process, watcher, budget, deadline, cancel_event)
        finally:
            self._kill_tree(process, watcher)
            exit_code = process.wait()
            for collector in (stdout, stderr):
                if not collector.join(self.drain_timeout):
                    logger.warning(f"Output pipe of pid {process.pid} still open after kill")

        elapsed = time.monotonic() - start
        if termination is not None:
            logger.warning(
                f"Killed process tree {process.pid} ({argv[0]}): {termination.value} "
                f"after {elapsed:.2f}s"
            )
        else:
            logger.debug(f"Process {process.pid} exited with {exit_code} after {elapsed:.2f}s")

        return ProcessResult(
            exit_code=exit_code,
            stdout=stdout.result(),
            stderr=stderr.result(),
            elapsed=elapsed,
            termination=termination,
            peak_memory_bytes=watcher.peak_rss,
            cpu_time_seconds=watcher.cpu_seconds,
        )

    def _watch(
        self,
        process: subprocess.Popen,
        watcher: _TreeWatcher,
        budget: ResourceBudget,
        deadline: float,
        cancel_event: threading.Event | None,
    ) -> Termination | None:
        while process.poll() is None:
            if cancel_event is not None and cancel_event.is_set():
                return Termination.CANCELLED

            now = time.monotonic()
            if now >= deadline:
                return Termination.TIMEOUT

            rss, cpu_seconds = watcher.sample()
            if rss > budget.memory_limit_bytes:
                return Termination.MEMORY
            if cpu_seconds > budget.cpu_time_seconds:
                return Termination.CPU_TIME

            wait = min(self.poll_interval, max(0.0, deadline - now))
            if cancel_event is not None:
                cancel_event.wait(wait)
            else:
                time.sleep(wait)
        return None

    @staticmethod
    def _kill_tree(process: subprocess.Popen, watcher: _TreeWatcher) -> None:
        # The session leader's pid is the process group id.
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError as exc:
            logger.error(f"Cannot signal process group {process.pid}: {exc}")

        # Descendants that left the group via setsid().
        for proc in watcher.known_processes():
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as exc:
                logger.error(f"Cannot kill descendant {proc.pid}: {exc}")

    def _limits_hook(self, budget: ResourceBudget) -> Callable[[], None] | None:
        """
        Build the ``preexec_fn`` that lowers rlimits between fork and exec.

        Everything is computed here, in the parent. The child only issues
        ``setrlimit`` calls: it takes no locks, logs nothing and imports
        nothing, so other threads of this process holding the logging or
        import locks at fork time cannot deadlock it. Applying the limits
        before exec leaves no window in which the toolchain runs unbounded.
        """
        limits = self.rlimits_for(budget)
        if not limits:
            return None
        setrlimit = resource.setrlimit

        def apply_limits() -> None:
            for which, soft, hard in limits:
                try:
                    setrlimit(which, (soft, hard))
                except (ValueError, OSError):
                    pass

        return apply_limits

    def rlimits_for(self, budget: ResourceBudget) -> list[tuple[int, int, int]]:
        """(resource, soft, hard) triples for ``budget``, clamped to our own hard limits."""
        if resource is None:
            return []
        cpu_soft = max(1, math.ceil(budget.cpu_time_seconds))
        open_files = int(budget.max_open_files)
        wanted = [
            (resource.RLIMIT_CPU, cpu_soft, cpu_soft + 1),
            (resource.RLIMIT_NOFILE, open_files, open_files),
            (resource.RLIMIT_CORE, 0, 0),
        ]
        if self.enforce_address_space:
            wanted.append((resource.RLIMIT_AS, budget.memory_limit_bytes, budget.memory_limit_bytes))
        return [_clamped(which, soft, hard) for which, soft, hard in wanted]

    @staticmethod
    def _launch_failure(executable: str, detail: str, start: float) -> ProcessResult:
        logger.error(f"Failed to launch {executable}: {detail}")
        return ProcessResult(
            exit_code=None,
            stdout=CapturedOutput(),
            stderr=CapturedOutput(),
            elapsed=time.monotonic() - start,
            launch_error=f"{executable}: {detail}",
        )


def _clamped(which: int, soft: int, hard: int) -> tuple[int, int, int]:
    """Never ask for more than the inherited hard limit; children may not raise it."""
    _, current_hard = resource.getrlimit(which)
    if current_hard != resource.RLIM_INFINITY:
        hard = min(hard, current_hard)
        soft = min(soft, hard)
    return which, soft, hard
