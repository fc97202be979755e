"""Tests for outcome rendering."""

import pytest

from miri_playground.core.exceptions import DispatcherBusyError, ToolchainError
from miri_playground.execution.formatter import describe_outcome, format_error, format_outcome
from miri_playground.execution.models import ExecutionOutcome, OutcomeTag, ResourceKind
from miri_playground.sandbox.limiter import CapturedOutput

DIAGNOSTIC = """\
error[E0308]: mismatched types
 --> src/main.rs:2:18
  |
2 |     let x: i32 = "a";
  |            ---   ^^^ expected `i32`, found `&str`
"""


def test_success_record():
    outcome = ExecutionOutcome.success(
        "r1", CapturedOutput.from_text("hi\n"), CapturedOutput(), 0.12345
    )
    record = format_outcome(outcome)

    assert record == {
        "request_id": "r1",
        "status": "success",
        "success": True,
        "exit_code": 0,
        "stdout": "hi\n",
        "stdout_truncated": False,
        "stderr": "",
        "stderr_truncated": False,
        "elapsed_seconds": 0.123,
        "diagnostic": None,
        "resource": None,
        "code": None,
        "code_truncated": False,
    }


def test_emitted_code_is_rendered():
    emitted = CapturedOutput(data=b"main:\n\tret\n", truncated=True, total_bytes=90000)
    outcome = ExecutionOutcome.success("r2", CapturedOutput(), CapturedOutput(), 0.5, code=emitted)

    record = format_outcome(outcome)

    assert record["code"] == "main:\n\tret\n"
    assert record["code_truncated"] is True


def test_compile_diagnostic_is_verbatim():
    outcome = ExecutionOutcome.compile_error(
        "r1", CapturedOutput(), CapturedOutput.from_text(DIAGNOSTIC), 1.0, exit_code=101
    )
    record = format_outcome(outcome)

    assert record["status"] == "compile_error"
    assert record["success"] is False
    assert record["diagnostic"] == DIAGNOSTIC


def test_truncation_flags_are_reported():
    stdout = CapturedOutput(data=b"x" * 10, truncated=True, total_bytes=500)
    outcome = ExecutionOutcome.success("r1", stdout, CapturedOutput(), 0.1)

    record = format_outcome(outcome)

    assert record["stdout"] == "x" * 10
    assert record["stdout_truncated"] is True


def test_invalid_utf8_is_replaced():
    outcome = ExecutionOutcome.runtime_failure(
        "r1", 1, CapturedOutput(data=b"ok \xff", total_bytes=4), CapturedOutput(), 0.1
    )
    assert format_outcome(outcome)["stdout"] == "ok \ufffd"


@pytest.mark.parametrize(
    "outcome, expected",
    [
        (ExecutionOutcome.runtime_failure("r", 101, CapturedOutput(), CapturedOutput(), 0.1),
         "Process exited with status 101"),
        (ExecutionOutcome.runtime_failure("r", -6, CapturedOutput(), CapturedOutput(), 0.1),
         "Process terminated by SIGABRT"),
        (ExecutionOutcome.timed_out("r", 2.0, 2.01), "Execution exceeded the 2s time limit"),
        (ExecutionOutcome.resource_exceeded("r", ResourceKind.MEMORY, 64.0, 0.5),
         "Execution exceeded the memory limit of 64MiB"),
        (ExecutionOutcome.resource_exceeded("r", ResourceKind.CPU_TIME, 1.5, 0.5),
         "Execution exceeded the CPU time limit of 1.5s"),
        (ExecutionOutcome.cancelled("r"), "Execution was cancelled"),
        (ExecutionOutcome.internal_error("r", "cannot allocate working area"),
         "cannot allocate working area"),
    ],
)
def test_diagnostics_per_tag(outcome, expected):
    assert describe_outcome(outcome) == expected


def test_resource_field_names_the_bound():
    outcome = ExecutionOutcome.resource_exceeded("r", ResourceKind.CPU_TIME, 1.0, 1.0)
    record = format_outcome(outcome)
    assert record["status"] == "resource_exceeded"
    assert record["resource"] == "cpu_time"


def test_every_tag_renders():
    outcomes = {
        OutcomeTag.SUCCESS: ExecutionOutcome.success("r", CapturedOutput(), CapturedOutput(), 0),
        OutcomeTag.COMPILE_ERROR: ExecutionOutcome.compile_error("r", CapturedOutput(), CapturedOutput(), 0),
        OutcomeTag.RUNTIME_FAILURE: ExecutionOutcome.runtime_failure("r", None, CapturedOutput(), CapturedOutput(), 0),
        OutcomeTag.TIMED_OUT: ExecutionOutcome.timed_out("r", 1.0, 1.0),
        OutcomeTag.RESOURCE_EXCEEDED: ExecutionOutcome.resource_exceeded("r", ResourceKind.MEMORY, 1.0, 0),
        OutcomeTag.CANCELLED: ExecutionOutcome.cancelled("r"),
        OutcomeTag.INTERNAL_ERROR: ExecutionOutcome.internal_error("r", "x"),
    }
    assert set(outcomes) == set(OutcomeTag)
    for tag, outcome in outcomes.items():
        assert format_outcome(outcome)["status"] == tag.value


def test_format_error_includes_hint():
    record = format_error(ToolchainError("cargo executable 'cargo' not found"))
    assert record["error"] == "cargo executable 'cargo' not found"
    assert record["kind"] == "ToolchainError"
    assert "doctor" in record["hint"]


def test_format_error_plain_exception():
    assert format_error(ValueError("nope")) == {"error": "nope"}


def test_format_busy_error():
    record = format_error(DispatcherBusyError("All 4 execution slots are busy", in_flight=4))
    assert record["kind"] == "DispatcherBusyError"
    assert record["hint"] == "Retry the request later."
