"""
Runtime registry and health checks for sandbox execution.
"""

import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ...core.exceptions import ConfigurationError, ToolchainError
from ...core.logging import get_logger
from ..toolchain import Toolchain
from .base import SandboxRuntime
from .docker_runtime import DockerSandboxRuntime
from .local_runtime import LocalSandboxRuntime

logger = get_logger(__name__)

SUPPORTED_RUNTIMES = {"local", "docker"}

# Flags refused whatever their value.
_BLOCKED_DOCKER_FLAGS = {
    "--privileged",
    "--volume",
    "-v",
    "--mount",
    "--volumes-from",
    "--device",
    "--cap-add",
    "--network",
    "--net",
}
# Namespace flags refused when they share the host's (or another container's) namespace.
_NAMESPACE_FLAGS = {"--pid", "--ipc", "--uts", "--userns", "--cgroupns"}
_SAFE_SECURITY_OPTS = ("no-new-privileges",)


def _docker_options(args: list[Any]) -> list[tuple[str, str | None, str]]:
    """Split extra args into (flag, value, as written), pairing ``--flag value`` forms."""
    tokens = [str(arg).strip() for arg in args]
    options = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        index += 1
        if token.startswith("--") and "=" in token:
            flag, value = token.split("=", 1)
            options.append((flag, value, token))
        elif token.startswith("-") and not token.startswith("--") and len(token) > 2:
            options.append((token[:2], token[2:], token))
        elif index < len(tokens) and not tokens[index].startswith("-"):
            options.append((token, tokens[index], f"{token} {tokens[index]}"))
            index += 1
        else:
            options.append((token, None, token))
    return options


def _blocked_docker_arg(args: list[Any]) -> str | None:
    """Return the first extra arg that would weaken container isolation."""
    for flag, value, written in _docker_options(args):
        if flag in _BLOCKED_DOCKER_FLAGS:
            return written
        if flag in _NAMESPACE_FLAGS and value is not None:
            if value == "host" or value.startswith("container:"):
                return written
        if flag == "--security-opt" and not (value or "").startswith(_SAFE_SECURITY_OPTS):
            return written
    return None


@dataclass(slots=True)
class RuntimeHealth:
    """Availability information for a runtime backend."""

    runtime: str
    available: bool
    detail: str


@dataclass(slots=True)
class RuntimeDoctorCheck:
    """Detailed doctor check for sandbox diagnostics."""

    name: str
    status: str  # pass | warn | fail
    detail: str
    recommendation: str | None = None


def create_runtime(runtime_name: str, sandbox_config: Any = None) -> SandboxRuntime:
    """Create a runtime backend from configured runtime name."""
    normalized = (runtime_name or "local").strip().lower()
    if normalized not in SUPPORTED_RUNTIMES:
        raise ConfigurationError(
            f"Unsupported sandbox runtime '{runtime_name}'. Supported: {', '.join(sorted(SUPPORTED_RUNTIMES))}"
        )

    env_allowlist = list(getattr(sandbox_config, "env_allowlist", []) or [])

    if normalized == "local":
        return LocalSandboxRuntime(env_allowlist=env_allowlist)

    docker_cfg = getattr(sandbox_config, "docker", None)
    extra_args = list(getattr(docker_cfg, "extra_args", []) or [])
    blocked = _blocked_docker_arg(extra_args)
    if blocked is not None:
        raise ConfigurationError(f"Docker extra arg '{blocked}' is blocked by sandbox policy.")

    return DockerSandboxRuntime(
        image=str(getattr(docker_cfg, "image", "shepmaster/rust-nightly-miri") or "shepmaster/rust-nightly-miri"),
        cpus=getattr(docker_cfg, "cpus", 1.0),
        pids_limit=int(getattr(docker_cfg, "pids_limit", 256) or 0),
        network_enabled=bool(getattr(docker_cfg, "network_enabled", False)),
        extra_args=extra_args,
        env_allowlist=env_allowlist,
    )


def detect_runtime_health(toolchain_config: Any = None) -> dict[str, RuntimeHealth]:
    """Check runtime availability for diagnostics."""
    results = []

    try:
        toolchain = Toolchain.resolve(toolchain_config)
        local_ok, local_detail = toolchain.check_health()
    except ToolchainError as exc:
        local_ok, local_detail = False, str(exc)
    results.append(RuntimeHealth(runtime="local", available=local_ok, detail=local_detail))

    docker_ok, docker_detail = DockerSandboxRuntime.check_health()
    results.append(RuntimeHealth(runtime="docker", available=docker_ok, detail=docker_detail))

    return {item.runtime: item for item in results}


def run_runtime_doctor(config: Any) -> list[RuntimeDoctorCheck]:
    """Run detailed diagnostics for the playground setup."""
    checks: list[RuntimeDoctorCheck] = []
    sandbox_config = getattr(config, "sandbox", None)
    runtime_name = str(getattr(sandbox_config, "runtime", "local") or "local").lower()

    if runtime_name not in SUPPORTED_RUNTIMES:
        checks.append(
            RuntimeDoctorCheck(
                name="configured_runtime",
                status="fail",
                detail=f"Unsupported runtime '{runtime_name}'.",
                recommendation=f"Use one of: {', '.join(sorted(SUPPORTED_RUNTIMES))}.",
            )
        )
        return checks

    checks.append(
        RuntimeDoctorCheck(
            name="configured_runtime",
            status="pass",
            detail=f"Runtime set to '{runtime_name}'.",
        )
    )

    allowlist = list(getattr(sandbox_config, "env_allowlist", []) or [])
    if len(allowlist) <= 6:
        checks.append(
            RuntimeDoctorCheck(
                name="env_allowlist",
                status="pass",
                detail=f"{len(allowlist)} host env var(s) allowed.",
            )
        )
    else:
        checks.append(
            RuntimeDoctorCheck(
                name="env_allowlist",
                status="warn",
                detail=f"{len(allowlist)} host env var(s) allowed.",
                recommendation="Keep env_allowlist minimal to reduce secret exposure.",
            )
        )

    checks.append(_check_limits(config))
    checks.append(_check_workarea_root(config))

    if runtime_name == "local":
        checks.append(_check_local_toolchain(getattr(config, "toolchain", None)))
    else:
        try:
            create_runtime(runtime_name, sandbox_config)
            docker_ok, docker_detail = DockerSandboxRuntime.check_health()
            checks.append(
                RuntimeDoctorCheck(
                    name="docker_daemon",
                    status="pass" if docker_ok else "fail",
                    detail=docker_detail,
                    recommendation=None if docker_ok else "Start the Docker daemon or switch to the local runtime.",
                )
            )
        except ConfigurationError as exc:
            checks.append(
                RuntimeDoctorCheck(
                    name="docker_extra_args",
                    status="fail",
                    detail=str(exc),
                    recommendation="Remove privileged or mount flags from sandbox.docker.extra_args.",
                )
            )

    return checks


def _check_limits(config: Any) -> RuntimeDoctorCheck:
    limits = getattr(config, "limits", None)
    try:
        budget = limits.default_budget()
    except (AttributeError, ConfigurationError) as exc:
        return RuntimeDoctorCheck(
            name="resource_limits",
            status="fail",
            detail=f"Default budget is invalid: {exc}",
            recommendation="Set every limit under 'limits' to a finite positive value.",
        )
    return RuntimeDoctorCheck(
        name="resource_limits",
        status="pass",
        detail=(
            f"{budget.timeout_seconds:g}s wall, {budget.cpu_time_seconds:g}s CPU, "
            f"{budget.memory_limit_mb} MiB, {budget.max_output_bytes} output bytes per stream."
        ),
    )


def _check_workarea_root(config: Any) -> RuntimeDoctorCheck:
    dispatcher = getattr(config, "dispatcher", None)
    root = Path(getattr(dispatcher, "workarea_root", None) or tempfile.gettempdir())
    try:
        root.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=root, prefix=".doctor-"):
            pass
    except OSError as exc:
        return RuntimeDoctorCheck(
            name="workarea_root",
            status="fail",
            detail=f"Cannot write to '{root}': {exc}",
            recommendation="Point dispatcher.workarea_root at a writable directory.",
        )
    return RuntimeDoctorCheck(
        name="workarea_root",
        status="pass",
        detail=f"Working areas are created under '{root}'.",
    )


def _check_local_toolchain(toolchain_config: Any) -> RuntimeDoctorCheck:
    try:
        toolchain = Toolchain.resolve(toolchain_config)
    except ToolchainError as exc:
        return RuntimeDoctorCheck(
            name="toolchain",
            status="fail",
            detail=str(exc),
            recommendation="Install the toolchain or set toolchain.cargo / toolchain.cargo_home.",
        )

    healthy, detail = toolchain.check_health()
    return RuntimeDoctorCheck(
        name="toolchain",
        status="pass" if healthy else "fail",
        detail=detail,
        recommendation=None if healthy else "Run `rustup component add miri` and `cargo miri setup`.",
    )
