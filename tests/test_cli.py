"""Tests for the command-line interface."""

import io
import json

import pytest

from conftest import ScriptedLimiter, process_result
from miri_playground import cli
from miri_playground.core.exceptions import ToolchainError
from miri_playground.execution.engine import PlaygroundService
from miri_playground.sandbox.runtimes.registry import RuntimeDoctorCheck, RuntimeHealth


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "playground.yaml"
    path.write_text(f"dispatcher:\n  workarea_root: {tmp_path / 'areas'}\n", encoding="utf-8")
    return path


@pytest.fixture
def scripted_service(monkeypatch, toolchain, runtime):
    """Make the CLI build services around a scripted limiter."""

    def install(*results):
        limiter = ScriptedLimiter(*results)

        def factory(config):
            return PlaygroundService(config, toolchain=toolchain, runtime=runtime, limiter=limiter)

        monkeypatch.setattr(cli, "PlaygroundService", factory)
        return limiter

    return install


@pytest.fixture
def source_file(tmp_path, hello_world_code):
    path = tmp_path / "main.rs"
    path.write_text(hello_world_code, encoding="utf-8")
    return path


def test_run_prints_program_output(scripted_service, config_file, source_file, capsys):
    scripted_service(process_result(0), process_result(0, stdout="hi\n"))

    code = cli.main(["-c", str(config_file), "run", str(source_file)])

    assert code == cli.EXIT_OK
    out = capsys.readouterr().out
    assert out.startswith("hi\n")
    assert "success" in out


def test_run_json_output(scripted_service, config_file, source_file, capsys):
    limiter = scripted_service(process_result(0), process_result(0, stdout="hi\n"))

    code = cli.main(
        ["-c", str(config_file), "run", str(source_file), "--json", "--timeout", "3", "--request-id", "cli-1"]
    )

    assert code == cli.EXIT_OK
    record = json.loads(capsys.readouterr().out)
    assert record["request_id"] == "cli-1"
    assert record["status"] == "success"
    assert limiter.calls[0]["budget"].timeout_seconds == 3.0


def test_run_reads_stdin(scripted_service, config_file, monkeypatch, hello_world_code, capsys):
    limiter = scripted_service(process_result(0))
    monkeypatch.setattr("sys.stdin", io.StringIO(hello_world_code))

    code = cli.main(["-c", str(config_file), "run", "-", "--mode", "build"])

    assert code == cli.EXIT_OK
    assert limiter.calls[0]["command"][1] == "build"


def test_program_failure_still_exits_zero(scripted_service, config_file, source_file, capsys):
    scripted_service(process_result(0), process_result(101, stderr="thread 'main' panicked at 'boom'"))

    code = cli.main(["-c", str(config_file), "run", str(source_file)])

    assert code == cli.EXIT_OK
    out = capsys.readouterr().out
    assert "runtime_failure" in out
    assert "boom" in out


def test_empty_source_is_caller_error(scripted_service, config_file, tmp_path):
    limiter = scripted_service()
    empty = tmp_path / "empty.rs"
    empty.write_text("   \n", encoding="utf-8")

    assert cli.main(["-c", str(config_file), "run", str(empty)]) == cli.EXIT_CALLER
    assert limiter.calls == []


def test_missing_source_file_is_caller_error(config_file, tmp_path):
    assert cli.main(["-c", str(config_file), "run", str(tmp_path / "nope.rs")]) == cli.EXIT_CALLER


def test_toolchain_failure_is_infrastructure_error(monkeypatch, config_file, source_file):
    def broken(config):
        raise ToolchainError("cargo executable 'cargo' not found")

    monkeypatch.setattr(cli, "PlaygroundService", broken)

    assert cli.main(["-c", str(config_file), "run", str(source_file)]) == cli.EXIT_INFRASTRUCTURE


def test_bad_config_is_infrastructure_error(tmp_path, source_file):
    bad = tmp_path / "bad.yaml"
    bad.write_text("limits:\n  timeout_seconds: -1\n", encoding="utf-8")

    assert cli.main(["-c", str(bad), "run", str(source_file)]) == cli.EXIT_INFRASTRUCTURE


def test_init_config_writes_defaults(tmp_path):
    target = tmp_path / "playground.yaml"

    assert cli.main(["init-config", str(target)]) == cli.EXIT_OK
    assert "limits:" in target.read_text()
    assert cli.main(["init-config", str(target)]) == cli.EXIT_CALLER
    assert cli.main(["init-config", str(target), "--force"]) == cli.EXIT_OK


@pytest.mark.parametrize("status, expected", [("pass", cli.EXIT_OK), ("warn", cli.EXIT_OK), ("fail", cli.EXIT_INFRASTRUCTURE)])
def test_doctor_exit_status(monkeypatch, config_file, capsys, status, expected):
    monkeypatch.setattr(
        cli,
        "run_runtime_doctor",
        lambda config: [RuntimeDoctorCheck(name="toolchain", status=status, detail="checked")],
    )
    monkeypatch.setattr(
        cli,
        "detect_runtime_health",
        lambda toolchain_config: {"local": RuntimeHealth(runtime="local", available=True, detail="ok")},
    )

    assert cli.main(["-c", str(config_file), "doctor"]) == expected
    assert "toolchain" in capsys.readouterr().out


def test_serve_passes_overrides(monkeypatch, config_file):
    seen = {}

    def fake_serve(config):
        seen["address"] = config.server.address
        seen["port"] = config.server.port

    monkeypatch.setattr("miri_playground.web.serve", fake_serve)

    assert cli.main(["-c", str(config_file), "serve", "--host", "0.0.0.0", "--port", "8123"]) == cli.EXIT_OK
    assert seen == {"address": "0.0.0.0", "port": 8123}


def test_non_utf8_source_is_caller_error(scripted_service, config_file, tmp_path, capsys):
    limiter = scripted_service()
    binary = tmp_path / "bad.rs"
    binary.write_bytes(b"fn main() { \xff }\n")

    assert cli.main(["-c", str(config_file), "run", str(binary)]) == cli.EXIT_CALLER
    assert limiter.calls == []
    assert "Cannot read source" in capsys.readouterr().err


def test_target_prints_emitted_code(scripted_service, config_file, source_file, capsys):
    def emit(command, budget, cancel_event):
        (limiter.calls[0]["cwd"] / "compilation.ll").write_text("define i32 @main()\n")
        return process_result(0)

    limiter = scripted_service(emit)

    code = cli.main(
        ["-c", str(config_file), "run", str(source_file), "--target", "llvm-ir", "--channel", "nightly"]
    )

    assert code == cli.EXIT_OK
    assert limiter.calls[0]["command"][:3] == ["cargo", "+nightly", "rustc"]
    out = capsys.readouterr().out
    assert out.startswith("define i32 @main()\n")
    assert "success" in out


def test_format_mode_json(scripted_service, config_file, source_file, capsys):
    limiter = scripted_service(process_result(0))

    code = cli.main(["-c", str(config_file), "run", str(source_file), "--mode", "format", "--json"])

    assert code == cli.EXIT_OK
    assert limiter.calls[0]["command"] == ["cargo", "fmt"]
    record = json.loads(capsys.readouterr().out)
    assert record["status"] == "success"
    assert record["code"] == source_file.read_text(encoding="utf-8")


def test_target_with_miri_mode_is_caller_error(scripted_service, config_file, source_file):
    limiter = scripted_service()

    code = cli.main(["-c", str(config_file), "run", str(source_file), "--mode", "miri", "--target", "asm"])

    assert code == cli.EXIT_CALLER
    assert limiter.calls == []
