"""Tests for the resource limiter, using the Python interpreter as the child process."""

import resource
import signal
import textwrap
import threading
import time

import psutil
import pytest

from conftest import PYTHON, posix_only
from miri_playground.sandbox.budget import ResourceBudget
from miri_playground.sandbox.limiter import ResourceLimiter, Termination

pytestmark = posix_only


def _python(code: str) -> list[str]:
    return [PYTHON, "-c", textwrap.dedent(code)]


def _budget(**overrides) -> ResourceBudget:
    values = {
        "timeout_seconds": 10.0,
        "memory_limit_mb": 256,
        "cpu_time_seconds": 10.0,
        "max_output_bytes": 4096,
        "max_open_files": 64,
    }
    values.update(overrides)
    return ResourceBudget(**values)


def _gone(pid: int, within: float = 5.0) -> bool:
    deadline = time.monotonic() + within
    while time.monotonic() < deadline:
        try:
            if psutil.Process(pid).status() == psutil.STATUS_ZOMBIE:
                return True
        except psutil.NoSuchProcess:
            return True
        time.sleep(0.05)
    return False


@pytest.fixture
def limiter():
    return ResourceLimiter(poll_interval=0.02)


def test_successful_run_captures_output(limiter):
    result = limiter.run(_python("print('hello')"), _budget())

    assert result.launched
    assert result.exit_code == 0
    assert result.termination is None
    assert result.stdout.text == "hello\n"
    assert result.stdout.truncated is False
    assert result.stderr.data == b""


def test_nonzero_exit_is_reported(limiter):
    result = limiter.run(_python("import sys; sys.stderr.write('bad'); sys.exit(3)"), _budget())

    assert result.exit_code == 3
    assert result.termination is None
    assert result.stderr.text == "bad"


def test_cwd_and_env_are_applied(limiter, tmp_path):
    result = limiter.run(
        _python("import os; print(os.getcwd()); print(os.environ.get('PLAYGROUND_TEST'))"),
        _budget(),
        cwd=tmp_path,
        env={"PLAYGROUND_TEST": "yes"},
    )

    lines = result.stdout.text.splitlines()
    assert lines[0] == str(tmp_path.resolve()) or lines[0] == str(tmp_path)
    assert lines[1] == "yes"


def test_sleep_past_deadline_times_out(limiter):
    start = time.monotonic()
    result = limiter.run(_python("import time; time.sleep(30)"), _budget(timeout_seconds=0.5))
    elapsed = time.monotonic() - start

    assert result.termination is Termination.TIMEOUT
    assert result.signal_number == signal.SIGKILL
    assert elapsed < 5.0


def test_output_is_truncated_at_cap(limiter):
    command = _python("import sys; sys.stdout.write('x' * 100000)")
    result = limiter.run(command, _budget(max_output_bytes=1000))

    assert result.exit_code == 0
    assert result.stdout.truncated is True
    assert len(result.stdout.data) == 1000
    assert result.stdout.total_bytes == 100000


def test_truncation_is_deterministic(limiter):
    command = _python(
        """
        import sys
        for i in range(20000):
            sys.stdout.write(f"line {i}\\n")
        """
    )
    first = limiter.run(command, _budget(max_output_bytes=777))
    second = limiter.run(command, _budget(max_output_bytes=777))

    assert first.stdout.data == second.stdout.data
    assert first.stdout.truncated and second.stdout.truncated


def test_flooding_output_does_not_block_the_child(limiter):
    command = _python("import sys; sys.stdout.write('y' * (5 * 1024 * 1024))")
    result = limiter.run(command, _budget(max_output_bytes=1024, timeout_seconds=20.0))

    assert result.termination is None
    assert result.exit_code == 0
    assert result.stdout.truncated


def test_missing_executable_is_a_launch_error(limiter, tmp_path):
    result = limiter.run([str(tmp_path / "no-such-binary")], _budget())

    assert not result.launched
    assert result.exit_code is None
    assert "no-such-binary" in result.launch_error


def test_empty_command_is_a_launch_error(limiter):
    result = limiter.run([], _budget())

    assert not result.launched


def test_cancellation_kills_the_tree(limiter):
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    try:
        result = limiter.run(
            _python("import time; time.sleep(30)"), _budget(), cancel_event=cancel
        )
    finally:
        timer.cancel()

    assert result.termination is Termination.CANCELLED
    assert result.elapsed < 5.0


def test_memory_bound_kills_allocating_child(limiter):
    command = _python(
        """
        import time
        block = b'x' * (300 * 1024 * 1024)
        time.sleep(10)
        """
    )
    result = limiter.run(command, _budget(memory_limit_mb=64))

    assert result.termination is Termination.MEMORY
    assert result.peak_memory_bytes > 64 * 1024 * 1024


def test_cpu_bound_stops_busy_loop(limiter):
    result = limiter.run(
        _python("while True:\n    pass"), _budget(cpu_time_seconds=1.0, timeout_seconds=15.0)
    )

    assert (
        result.termination is Termination.CPU_TIME
        or result.signal_number == signal.SIGXCPU
    )


def test_grandchildren_are_killed(limiter):
    command = _python(
        f"""
        import subprocess, sys, time
        child = subprocess.Popen([{PYTHON!r}, "-c", "import time; time.sleep(60)"])
        print(child.pid, flush=True)
        time.sleep(60)
        """
    )
    result = limiter.run(command, _budget(timeout_seconds=1.0))

    assert result.termination is Termination.TIMEOUT
    grandchild = int(result.stdout.text.split()[0])
    assert _gone(grandchild)


def test_grandchild_in_new_session_is_killed(limiter):
    command = _python(
        f"""
        import subprocess, sys, time
        child = subprocess.Popen(
            [{PYTHON!r}, "-c", "import time; time.sleep(60)"], start_new_session=True
        )
        print(child.pid, flush=True)
        time.sleep(60)
        """
    )
    result = limiter.run(command, _budget(timeout_seconds=1.5))

    grandchild = int(result.stdout.text.split()[0])
    assert _gone(grandchild)


def test_rlimits_are_computed_before_spawn():
    limiter = ResourceLimiter()

    triples = limiter.rlimits_for(_budget(cpu_time_seconds=2.5))
    limits = {which: (soft, hard) for which, soft, hard in triples}

    assert limits[resource.RLIMIT_CPU][0] <= 3
    assert limits[resource.RLIMIT_NOFILE][0] <= 64
    assert limits[resource.RLIMIT_CORE] == (0, 0)
    assert resource.RLIMIT_AS not in limits


def test_address_space_limit_is_opt_in():
    limiter = ResourceLimiter(enforce_address_space=True)

    limits = {which for which, _, _ in limiter.rlimits_for(_budget())}

    assert resource.RLIMIT_AS in limits


def test_child_starts_with_limits_applied(limiter):
    result = limiter.run(
        _python(
            """
            import resource
            print(resource.getrlimit(resource.RLIMIT_NOFILE)[0])
            print(resource.getrlimit(resource.RLIMIT_CORE)[1])
            """
        ),
        _budget(max_open_files=32),
    )

    soft_files, core = result.stdout.text.split()
    assert int(soft_files) <= 32
    assert int(core) == 0
