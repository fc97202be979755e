"""
Sandbox runner: drives one request through build and interpretation.

States::

    created -> building -> interpreting -> done
    created -> building -> compile_failed -> done
    any non-terminal state -> timed_out | resource_exceeded | cancelled -> done

Every path ends in exactly one `ExecutionOutcome`. The runner never retries.
Format requests and builds with an emit target stop after the build stage and
return the file the toolchain wrote as the outcome's ``code``.
"""

from __future__ import annotations

import re
import signal
import threading
import time
from enum import Enum

from ..core.logging import get_logger
from ..core.stats import ExecutionStats
from ..sandbox.budget import ResourceBudget
from ..sandbox.limiter import CapturedOutput, ProcessResult, ResourceLimiter, Termination
from ..sandbox.runtimes.base import SandboxRuntime
from ..sandbox.toolchain import ExecutionMode, Toolchain
from ..sandbox.workarea import WorkingArea
from .models import ExecutionOutcome, ExecutionRequest, ResourceKind

logger = get_logger(__name__)

# Rust's default allocation-error handler prints this, then aborts.
_ALLOC_FAILURE = re.compile(r"^memory allocation of \d+ bytes failed$", re.MULTILINE)
# cargo reports how the program it launched ended once that program is gone.
_CARGO_EXIT = re.compile(
    r"^\s*(?:error: )?process didn't exit successfully: .*\((?:signal: (\d+)|exit status: \d+)",
    re.MULTILINE,
)


class RunnerState(str, Enum):
    CREATED = "created"
    BUILDING = "building"
    COMPILE_FAILED = "compile_failed"
    INTERPRETING = "interpreting"
    TIMED_OUT = "timed_out"
    RESOURCE_EXCEEDED = "resource_exceeded"
    CANCELLED = "cancelled"
    DONE = "done"


_ABORTS = {RunnerState.TIMED_OUT, RunnerState.RESOURCE_EXCEEDED, RunnerState.CANCELLED}

_TRANSITIONS: dict[RunnerState, set[RunnerState]] = {
    RunnerState.CREATED: {RunnerState.BUILDING, RunnerState.DONE, *_ABORTS},
    RunnerState.BUILDING: {
        RunnerState.INTERPRETING,
        RunnerState.COMPILE_FAILED,
        RunnerState.DONE,
        *_ABORTS,
    },
    RunnerState.INTERPRETING: {RunnerState.DONE, *_ABORTS},
    RunnerState.COMPILE_FAILED: {RunnerState.DONE},
    RunnerState.TIMED_OUT: {RunnerState.DONE},
    RunnerState.RESOURCE_EXCEEDED: {RunnerState.DONE},
    RunnerState.CANCELLED: {RunnerState.DONE},
    RunnerState.DONE: set(),
}


class InvalidTransition(RuntimeError):
    """Raised when the runner attempts a transition the state machine forbids."""


class RunTrace:
    """State history of a single run."""

    def __init__(self) -> None:
        self.state = RunnerState.CREATED
        self.history: list[RunnerState] = [RunnerState.CREATED]

    def advance(self, target: RunnerState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)


class SandboxRunner:
    """
    Executes requests against a shared, read-only toolchain handle.

    One runner instance serves all concurrent requests; per-request state
    lives in a `RunTrace`, never on the runner.
    """

    def __init__(
        self,
        toolchain: Toolchain,
        runtime: SandboxRuntime,
        limiter: ResourceLimiter | None = None,
        stats: ExecutionStats | None = None,
    ):
        self.toolchain = toolchain
        self.runtime = runtime
        self.limiter = limiter or ResourceLimiter()
        self.stats = stats or ExecutionStats()

    def run(
        self,
        request: ExecutionRequest,
        area: WorkingArea,
        budget: ResourceBudget,
        cancel_event: threading.Event | None = None,
        trace: RunTrace | None = None,
    ) -> ExecutionOutcome:
        """Produce exactly one outcome; internal failures become `internal_error`."""
        trace = trace or RunTrace()
        started = time.monotonic()
        try:
            return self._run(request, area, budget, cancel_event, trace, started)
        except Exception as exc:
            logger.exception(f"Request {request.request_id} failed inside the runner")
            if trace.state is not RunnerState.DONE:
                trace.state = RunnerState.DONE
                trace.history.append(RunnerState.DONE)
            return ExecutionOutcome.internal_error(
                request.request_id,
                f"{type(exc).__name__}: {exc}",
                elapsed=time.monotonic() - started,
            )
        finally:
            self.runtime.cleanup(area)

    def _run(
        self,
        request: ExecutionRequest,
        area: WorkingArea,
        budget: ResourceBudget,
        cancel_event: threading.Event | None,
        trace: RunTrace,
        started: float,
    ) -> ExecutionOutcome:
        rid = request.request_id

        if cancel_event is not None and cancel_event.is_set():
            return self._finish(trace, RunnerState.CANCELLED, ExecutionOutcome.cancelled(rid))

        try:
            self.toolchain.scaffold(area, request.source)
        except OSError as exc:
            logger.error(f"Request {rid}: cannot prepare working area {area.path}: {exc}")
            trace.advance(RunnerState.DONE)
            return ExecutionOutcome.internal_error(rid, f"cannot prepare working area: {exc}")

        plan = self.toolchain.plan(
            request.mode,
            request.profile,
            request.tests,
            channel=request.channel,
            target=request.target,
        )

        trace.advance(RunnerState.BUILDING)
        build_stage = "format" if request.mode is ExecutionMode.FORMAT else "build"
        with self.stats.timed_stage(build_stage):
            build = self._launch(plan.build_command, area, budget, cancel_event)
        elapsed = time.monotonic() - started

        aborted = self._aborted(trace, rid, build, budget, elapsed)
        if aborted is not None:
            return aborted

        if build.exit_code != 0:
            if plan.artifact is None or not (area.path / plan.artifact).exists():
                logger.debug(f"Request {rid}: compilation failed with status {build.exit_code}")
                return self._finish(
                    trace,
                    RunnerState.COMPILE_FAILED,
                    ExecutionOutcome.compile_error(
                        rid, build.stdout, build.stderr, elapsed, exit_code=build.exit_code
                    ),
                )
            trace.advance(RunnerState.DONE)
            return ExecutionOutcome.internal_error(
                rid,
                f"build exited with status {build.exit_code} but produced {plan.artifact}",
                elapsed=elapsed,
            )

        if plan.interpret_command is None:
            trace.advance(RunnerState.DONE)
            if plan.emitted is None:
                return ExecutionOutcome.success(rid, build.stdout, build.stderr, elapsed)
            code = _read_emitted(area, plan.emitted, budget.max_output_bytes)
            if code is None:
                return ExecutionOutcome.internal_error(
                    rid, f"{build_stage} succeeded but left no {plan.emitted}", elapsed=elapsed
                )
            return ExecutionOutcome.success(rid, build.stdout, build.stderr, elapsed, code=code)

        remaining = budget.remaining(elapsed)
        if remaining <= 0:
            return self._finish(
                trace,
                RunnerState.TIMED_OUT,
                ExecutionOutcome.timed_out(rid, budget.timeout_seconds, elapsed),
            )

        trace.advance(RunnerState.INTERPRETING)
        stage = "interpret" if request.mode is ExecutionMode.MIRI else "run"
        with self.stats.timed_stage(stage):
            run = self._launch(
                plan.interpret_command, area, budget.with_timeout(remaining), cancel_event
            )
        elapsed = time.monotonic() - started

        aborted = self._aborted(trace, rid, run, budget, elapsed)
        if aborted is not None:
            return aborted

        trace.advance(RunnerState.DONE)
        if run.exit_code == 0:
            return ExecutionOutcome.success(rid, run.stdout, run.stderr, elapsed)
        logger.debug(f"Request {rid}: program exited with status {run.exit_code}")
        return ExecutionOutcome.runtime_failure(rid, run.exit_code, run.stdout, run.stderr, elapsed)

    def _launch(
        self,
        command: tuple[str, ...],
        area: WorkingArea,
        budget: ResourceBudget,
        cancel_event: threading.Event | None,
    ) -> ProcessResult:
        env = self.toolchain.environment(
            self.runtime.home_for(area), inherit_path=self.runtime.uses_host_toolchain()
        )
        prepared = self.runtime.prepare(command, area, env, budget)
        result = self.limiter.run(
            prepared.argv, budget, cwd=prepared.cwd, env=prepared.env, cancel_event=cancel_event
        )
        if result.termination is not None:
            # A killed docker client leaves its container behind.
            self.runtime.cleanup(area)
        return result

    def _aborted(
        self,
        trace: RunTrace,
        rid: str,
        result: ProcessResult,
        budget: ResourceBudget,
        elapsed: float,
    ) -> ExecutionOutcome | None:
        """Map launch failures and limit kills to terminal outcomes."""
        if not result.launched:
            trace.advance(RunnerState.DONE)
            return ExecutionOutcome.internal_error(
                rid, f"failed to launch toolchain: {result.launch_error}", elapsed=elapsed
            )

        if result.termination is Termination.CANCELLED:
            logger.info(f"Request {rid} cancelled during {trace.state.value}")
            return self._finish(
                trace,
                RunnerState.CANCELLED,
                ExecutionOutcome.cancelled(rid, elapsed, result.stdout, result.stderr),
            )

        if result.termination is Termination.TIMEOUT:
            return self._finish(
                trace,
                RunnerState.TIMED_OUT,
                ExecutionOutcome.timed_out(
                    rid, budget.timeout_seconds, elapsed, result.stdout, result.stderr
                ),
            )

        resource = self._exceeded_resource(
            result, inspect_stderr=trace.state is RunnerState.INTERPRETING
        )
        if resource is None:
            return None

        limit = (
            float(budget.memory_limit_mb)
            if resource is ResourceKind.MEMORY
            else float(budget.cpu_time_seconds)
        )
        logger.warning(f"Request {rid} exceeded its {resource.value} limit during {trace.state.value}")
        return self._finish(
            trace,
            RunnerState.RESOURCE_EXCEEDED,
            ExecutionOutcome.resource_exceeded(
                rid,
                resource,
                limit,
                elapsed,
                result.stdout,
                result.stderr,
                exit_code=result.exit_code,
            ),
        )

    def _exceeded_resource(self, result: ProcessResult, inspect_stderr: bool) -> ResourceKind | None:
        # Compiler diagnostics quote user code, so only program stderr is inspected.
        if result.termination is Termination.MEMORY:
            return ResourceKind.MEMORY
        if result.termination is Termination.CPU_TIME:
            return ResourceKind.CPU_TIME
        if result.exit_code in (0, None):
            return None

        detected = self.runtime.limit_exceeded(result.exit_code)
        if detected is not None:
            return ResourceKind(detected)

        if not inspect_stderr:
            return None
        # Program output shares stderr, so text alone never decides: the
        # process must really have died of the matching signal.
        stderr = result.stderr.text
        died_of = _fatal_signal(result, stderr)
        if died_of == signal.SIGXCPU:
            return ResourceKind.CPU_TIME
        if died_of == signal.SIGABRT and _ALLOC_FAILURE.search(stderr):
            return ResourceKind.MEMORY
        return None

    @staticmethod
    def _finish(trace: RunTrace, state: RunnerState, outcome: ExecutionOutcome) -> ExecutionOutcome:
        trace.advance(state)
        trace.advance(RunnerState.DONE)
        return outcome


def _read_emitted(area: WorkingArea, relative: str, limit: int) -> CapturedOutput | None:
    """Read a file the toolchain wrote, keeping at most ``limit`` bytes."""
    path = area.path / relative
    try:
        total = path.stat().st_size
        with path.open("rb") as handle:
            data = handle.read(limit)
    except FileNotFoundError:
        return None
    return CapturedOutput(data=data, truncated=total > len(data), total_bytes=total)


def _fatal_signal(result: ProcessResult, stderr: str) -> int | None:
    """Signal that ended the program, seen directly or through cargo's exit report."""
    if result.signal_number is not None:
        return result.signal_number
    # cargo writes its report after the program exited, so only the last one counts.
    reports = list(_CARGO_EXIT.finditer(stderr))
    if reports and reports[-1].group(1):
        return int(reports[-1].group(1))
    return None
