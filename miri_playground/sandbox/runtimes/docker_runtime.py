"""
Docker runtime: each toolchain stage runs in a throw-away playground container.
"""

import math
import os
import subprocess
from collections.abc import Iterable, Mapping, Sequence

from ...core.logging import get_logger
from ..budget import ResourceBudget
from ..workarea import WorkingArea
from .base import PreparedCommand, allowlisted_env

logger = get_logger(__name__)

CONTAINER_WORKDIR = "/playground"

# docker reports a container killed by a signal as 128 + signal number.
_EXIT_SIGKILL = 128 + 9
_EXIT_SIGXCPU = 128 + 24


class DockerSandboxRuntime:
    """Executes toolchain commands inside a Docker container of the playground image."""

    name = "docker"

    def __init__(
        self,
        image: str = "shepmaster/rust-nightly-miri",
        cpus: float | None = 1.0,
        pids_limit: int = 256,
        network_enabled: bool = False,
        extra_args: list[str] | None = None,
        env_allowlist: Iterable[str] | None = None,
    ):
        self.image = image
        self.cpus = cpus
        self.pids_limit = pids_limit
        self.network_enabled = network_enabled
        self.extra_args = extra_args or []
        self.env_allowlist = list(env_allowlist or [])

    @staticmethod
    def container_name(area: WorkingArea) -> str:
        return f"miri-playground-{area.name}"

    def home_for(self, area: WorkingArea) -> str:
        return CONTAINER_WORKDIR

    def uses_host_toolchain(self) -> bool:
        return False

    def prepare(
        self,
        command: Sequence[str],
        area: WorkingArea,
        env: Mapping[str, str],
        budget: ResourceBudget,
    ) -> PreparedCommand:
        mount_arg = f"{area.path.resolve()}:{CONTAINER_WORKDIR}:rw"
        cpu_seconds = max(1, math.ceil(budget.cpu_time_seconds))
        cmd: list[str] = [
            "docker",
            "run",
            "--rm",
            "--name",
            self.container_name(area),
            "--workdir",
            CONTAINER_WORKDIR,
            "--volume",
            mount_arg,
            "--user",
            f"{os.getuid()}:{os.getgid()}",
            "--cap-drop",
            "ALL",
            "--security-opt",
            "no-new-privileges",
            "--memory",
            f"{budget.memory_limit_mb}m",
            "--memory-swap",
            f"{budget.memory_limit_mb}m",
            "--ulimit",
            f"nofile={budget.max_open_files}:{budget.max_open_files}",
            "--ulimit",
            f"cpu={cpu_seconds}:{cpu_seconds + 1}",
        ]

        sandbox_env = {**allowlisted_env(self.env_allowlist), **env}
        for key, value in sorted(sandbox_env.items()):
            cmd.extend(["--env", f"{key}={value}"])

        if not self.network_enabled:
            cmd.extend(["--network", "none"])
        if self.cpus and self.cpus > 0:
            cmd.extend(["--cpus", f"{self.cpus}"])
        if self.pids_limit and self.pids_limit > 0:
            cmd.extend(["--pids-limit", str(self.pids_limit)])

        cmd.extend(self.extra_args)
        cmd.append(self.image)
        cmd.extend(str(part) for part in command)

        # The docker client itself only needs the host PATH.
        client_env = {"PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")}
        if os.environ.get("DOCKER_HOST"):
            client_env["DOCKER_HOST"] = os.environ["DOCKER_HOST"]
        return PreparedCommand(argv=cmd, cwd=None, env=client_env)

    def limit_exceeded(self, exit_code: int | None) -> str | None:
        if exit_code == _EXIT_SIGKILL:
            return "memory"
        if exit_code == _EXIT_SIGXCPU:
            return "cpu_time"
        return None

    def cleanup(self, area: WorkingArea) -> None:
        """Force-remove the stage container; killing the client leaves it running."""
        try:
            subprocess.run(
                ["docker", "rm", "--force", self.container_name(area)],
                capture_output=True,
                text=True,
                timeout=30,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.error(f"Failed to remove container {self.container_name(area)}: {exc}")

    @staticmethod
    def check_health(timeout_seconds: float = 2.5) -> tuple[bool, str]:
        """Return (healthy, detail) for docker runtime availability."""
        try:
            result = subprocess.run(
                ["docker", "info", "--format", "{{.ServerVersion}}"],
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                check=False,
            )
        except FileNotFoundError:
            return False, "docker CLI not found"
        except subprocess.TimeoutExpired:
            return False, "docker check timed out"

        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip() or "docker daemon unavailable"
            return False, detail

        version = result.stdout.strip() or "unknown"
        return True, f"docker daemon ready (server {version})"
