"""
Configuration management for the Miri playground.
"""

import json
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError

ADMISSION_POLICIES = ("wait", "reject")


@dataclass
class LimitsConfig:
    """Default resource bounds and the ceilings per-request overrides are clamped to."""

    timeout_seconds: float = 10.0
    memory_limit_mb: int = 512
    cpu_time_seconds: float = 10.0
    max_output_bytes: int = 64 * 1024
    max_open_files: int = 256
    max_timeout_seconds: float = 30.0
    max_memory_limit_mb: int = 2048
    max_source_bytes: int = 100_000
    enforce_address_space: bool = False  # also cap RLIMIT_AS; rustc reserves a lot of address space

    def default_budget(self):
        from ..sandbox.budget import ResourceBudget

        return ResourceBudget(
            timeout_seconds=float(self.timeout_seconds),
            memory_limit_mb=int(self.memory_limit_mb),
            cpu_time_seconds=float(self.cpu_time_seconds),
            max_output_bytes=int(self.max_output_bytes),
            max_open_files=int(self.max_open_files),
        )


@dataclass
class DispatcherConfig:
    """Admission control for concurrent requests."""

    max_concurrent: int = 4
    admission_policy: str = "wait"  # wait | reject
    queue_limit: int = 64
    queue_timeout_seconds: float = 60.0
    workarea_root: str = field(
        default_factory=lambda: str(Path(tempfile.gettempdir()) / "miri-playground")
    )


@dataclass
class ToolchainConfig:
    """Location and flags of the pre-installed Rust toolchain."""

    cargo: str = "cargo"
    cargo_home: str | None = None
    rustup_home: str | None = None
    crate_name: str = "playground"
    edition: str = "2018"
    offline: bool = True
    miri_flags: list[str] = field(default_factory=list)


@dataclass
class SandboxDockerConfig:
    """Docker-specific sandbox configuration."""

    image: str = "shepmaster/rust-nightly-miri"
    cpus: float | None = 1.0
    pids_limit: int = 256
    network_enabled: bool = False
    extra_args: list[str] = field(default_factory=list)


@dataclass
class SandboxConfig:
    """Runtime used to launch toolchain stages."""

    runtime: str = "local"  # local | docker
    env_allowlist: list[str] = field(default_factory=list)
    docker: SandboxDockerConfig = field(default_factory=SandboxDockerConfig)


@dataclass
class ServerConfig:
    """HTTP intake settings."""

    address: str = "127.0.0.1"
    port: int = 5000
    ui_root: str | None = None


@dataclass
class PlaygroundConfig:
    """Main service configuration."""

    name: str = "miri-playground"
    log_level: str = "INFO"
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    toolchain: ToolchainConfig = field(default_factory=ToolchainConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PlaygroundConfig":
        """Build a configuration from plain (YAML/JSON) data."""
        data = dict(data or {})
        try:
            sandbox_data = _section(data, "sandbox")
            sandbox_data["docker"] = SandboxDockerConfig(**_section(sandbox_data, "docker"))
            config = cls(
                name=str(data.get("name") or "miri-playground"),
                log_level=str(data.get("log_level") or "INFO"),
                limits=LimitsConfig(**_section(data, "limits")),
                dispatcher=DispatcherConfig(**_section(data, "dispatcher")),
                toolchain=ToolchainConfig(**_section(data, "toolchain")),
                sandbox=SandboxConfig(**sandbox_data),
                server=ServerConfig(**_section(data, "server")),
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e
        config.validate()
        return config

    @classmethod
    def load_from_file(cls, config_path: Path) -> "PlaygroundConfig":
        """Load configuration from file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path) as f:
                if config_path.suffix.lower() == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

        if data is not None and not isinstance(data, dict):
            raise ConfigurationError("Failed to load configuration: top level must be a mapping")
        return cls.from_dict(data)

    @classmethod
    def load(cls, config_path: Path | None = None) -> "PlaygroundConfig":
        """Load from file when given, then apply environment overrides."""
        config = cls.load_from_file(config_path) if config_path else cls()
        config.apply_env_overrides()
        config.validate()
        return config

    def apply_env_overrides(self, environ: dict[str, str] | None = None) -> None:
        """Apply ``PLAYGROUND_*`` environment variables on top of file values."""
        env = os.environ if environ is None else environ

        # The UI_ spellings are the historical names; the short ones win when both are set.
        for name in ("PLAYGROUND_UI_ADDRESS", "PLAYGROUND_ADDRESS"):
            if env.get(name):
                self.server.address = env[name]
        for name in ("PLAYGROUND_UI_PORT", "PLAYGROUND_PORT"):
            if env.get(name):
                self.server.port = _env_int(env, name)
        if env.get("PLAYGROUND_UI_ROOT"):
            self.server.ui_root = env["PLAYGROUND_UI_ROOT"]
        if env.get("PLAYGROUND_WORKAREA_ROOT"):
            self.dispatcher.workarea_root = env["PLAYGROUND_WORKAREA_ROOT"]
        if env.get("PLAYGROUND_RUNTIME"):
            self.sandbox.runtime = env["PLAYGROUND_RUNTIME"].strip().lower()
        if env.get("PLAYGROUND_MAX_CONCURRENT"):
            self.dispatcher.max_concurrent = _env_int(env, "PLAYGROUND_MAX_CONCURRENT")
        if env.get("PLAYGROUND_LOG_LEVEL"):
            self.log_level = env["PLAYGROUND_LOG_LEVEL"]

    def validate(self) -> None:
        """Reject bounds that are non-positive or defaults above their ceilings."""
        limits = self.limits
        positive = {
            "limits.timeout_seconds": limits.timeout_seconds,
            "limits.memory_limit_mb": limits.memory_limit_mb,
            "limits.cpu_time_seconds": limits.cpu_time_seconds,
            "limits.max_output_bytes": limits.max_output_bytes,
            "limits.max_open_files": limits.max_open_files,
            "limits.max_timeout_seconds": limits.max_timeout_seconds,
            "limits.max_memory_limit_mb": limits.max_memory_limit_mb,
            "limits.max_source_bytes": limits.max_source_bytes,
            "dispatcher.max_concurrent": self.dispatcher.max_concurrent,
            "dispatcher.queue_timeout_seconds": self.dispatcher.queue_timeout_seconds,
        }
        for key, value in positive.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not value > 0:
                raise ConfigurationError(f"{key} must be a positive number, got {value!r}")
            if value == float("inf"):
                raise ConfigurationError(f"{key} must be finite")

        if limits.timeout_seconds > limits.max_timeout_seconds:
            raise ConfigurationError("limits.timeout_seconds exceeds limits.max_timeout_seconds")
        if limits.memory_limit_mb > limits.max_memory_limit_mb:
            raise ConfigurationError("limits.memory_limit_mb exceeds limits.max_memory_limit_mb")
        if self.dispatcher.queue_limit < 0:
            raise ConfigurationError("dispatcher.queue_limit must not be negative")
        policy = str(self.dispatcher.admission_policy).strip().lower()
        if policy not in ADMISSION_POLICIES:
            raise ConfigurationError(
                f"dispatcher.admission_policy must be one of {', '.join(ADMISSION_POLICIES)}, "
                f"got {self.dispatcher.admission_policy!r}"
            )
        if not 0 < int(self.server.port) < 65536:
            raise ConfigurationError(f"server.port out of range: {self.server.port}")

    def save_to_file(self, config_path: Path) -> None:
        """Save configuration to file."""
        config_path = Path(config_path)
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            data = asdict(self)
            with open(config_path, "w") as f:
                if config_path.suffix.lower() == ".json":
                    json.dump(data, f, indent=2)
                else:
                    yaml.safe_dump(data, f, default_flow_style=False, indent=2, sort_keys=False)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration: {e}") from e


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping")
    return dict(value)


def _env_int(env, key: str) -> int:
    try:
        return int(env[key])
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer, got {env[key]!r}") from e
