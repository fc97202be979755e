"""
Caller-facing rendering of execution outcomes.

Pure functions: no I/O and no resource acquisition.
"""

import signal
from typing import Any

from ..core.exceptions import PlaygroundError
from .models import ExecutionOutcome, OutcomeTag, ResourceKind

_RESOURCE_UNITS = {
    ResourceKind.MEMORY: ("memory", "MiB"),
    ResourceKind.CPU_TIME: ("CPU time", "s"),
}


def format_outcome(outcome: ExecutionOutcome) -> dict[str, Any]:
    """Render an outcome as the structured record returned to callers."""
    return {
        "request_id": outcome.request_id,
        "status": outcome.tag.value,
        "success": outcome.succeeded,
        "exit_code": outcome.exit_code,
        "stdout": outcome.stdout.text,
        "stdout_truncated": outcome.stdout.truncated,
        "stderr": outcome.stderr.text,
        "stderr_truncated": outcome.stderr.truncated,
        "elapsed_seconds": round(outcome.elapsed, 3),
        "diagnostic": describe_outcome(outcome),
        "resource": outcome.resource.value if outcome.resource is not None else None,
        "code": outcome.code.text if outcome.code is not None else None,
        "code_truncated": outcome.code.truncated if outcome.code is not None else False,
    }


def describe_outcome(outcome: ExecutionOutcome) -> str | None:
    """Human-readable diagnostic for error tags; ``None`` for success."""
    tag = outcome.tag
    if tag is OutcomeTag.SUCCESS:
        return None
    if tag is OutcomeTag.COMPILE_ERROR:
        # Verbatim: line/column information must survive untouched.
        return outcome.diagnostic if outcome.diagnostic is not None else outcome.stderr.text
    if tag is OutcomeTag.RUNTIME_FAILURE:
        return _describe_exit(outcome.exit_code)
    if tag is OutcomeTag.TIMED_OUT:
        if outcome.limit is not None:
            return f"Execution exceeded the {outcome.limit:g}s time limit"
        return "Execution exceeded its time limit"
    if tag is OutcomeTag.RESOURCE_EXCEEDED:
        label, unit = _RESOURCE_UNITS[outcome.resource]
        if outcome.limit is not None:
            return f"Execution exceeded the {label} limit of {outcome.limit:g}{unit}"
        return f"Execution exceeded its {label} limit"
    if tag is OutcomeTag.CANCELLED:
        return "Execution was cancelled"
    return outcome.diagnostic or "Internal error"


def format_error(error: Exception) -> dict[str, Any]:
    """Render an intake-level error (bad request, busy, infrastructure)."""
    record: dict[str, Any] = {"error": str(error)}
    if isinstance(error, PlaygroundError):
        record["kind"] = type(error).__name__
        hint = getattr(error, "recovery_hint", None)
        if hint:
            record["hint"] = hint
    return record


def _describe_exit(exit_code: int | None) -> str:
    if exit_code is None:
        return "Process ended without an exit status"
    if exit_code < 0:
        try:
            name = signal.Signals(-exit_code).name
        except ValueError:
            name = f"signal {-exit_code}"
        return f"Process terminated by {name}"
    return f"Process exited with status {exit_code}"
