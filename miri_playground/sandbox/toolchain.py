"""
Handle on the pre-installed Rust toolchain.

The image build installs cargo, Miri and the Miri sysroot once. At service
start-up the toolchain is resolved into an immutable `Toolchain` that every
request reads concurrently and nobody mutates.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from ..core.exceptions import ToolchainError
from ..core.logging import get_logger
from .workarea import WorkingArea

logger = get_logger(__name__)

_SYSTEM_PATH = "/usr/local/bin:/usr/bin:/bin"

_CARGO_TOML = """\
[package]
name = "{name}"
version = "0.0.1"
authors = ["The Rust Playground"]
edition = "{edition}"

[dependencies]

[profile.dev]
codegen-units = 1
incremental = false

[profile.release]
codegen-units = 1
incremental = false
"""


class ExecutionMode(str, Enum):
    """How a snippet is executed."""

    MIRI = "miri"  # compile, then interpret under Miri
    RUN = "run"  # plain native build, then run the executable
    BUILD = "build"  # compile only
    FORMAT = "format"  # rustfmt the source; nothing is compiled

    @classmethod
    def parse(cls, value: str | ExecutionMode | None) -> ExecutionMode:
        if isinstance(value, cls):
            return value
        if value is None or not str(value).strip():
            return cls.MIRI
        normalized = str(value).strip().lower()
        for mode in cls:
            if mode.value == normalized:
                return mode
        raise ValueError(f"The value {value!r} is not a valid mode")


class BuildProfile(str, Enum):
    DEBUG = "debug"
    RELEASE = "release"

    @classmethod
    def parse(cls, value: str | BuildProfile | None) -> BuildProfile:
        if isinstance(value, cls):
            return value
        if value is None or not str(value).strip():
            return cls.DEBUG
        normalized = str(value).strip().lower()
        for profile in cls:
            if profile.value == normalized:
                return profile
        raise ValueError(f"The value {value!r} is not a valid profile")


class Channel(str, Enum):
    """Release channel selected with cargo's ``+toolchain`` argument."""

    STABLE = "stable"
    BETA = "beta"
    NIGHTLY = "nightly"

    @classmethod
    def parse(cls, value: str | Channel | None) -> Channel | None:
        """``None`` keeps the image's default toolchain."""
        if isinstance(value, cls) or value is None:
            return value
        normalized = str(value).strip().lower()
        if not normalized:
            return None
        for channel in cls:
            if channel.value == normalized:
                return channel
        raise ValueError(f"The value {value!r} is not a valid channel")


class CompileTarget(str, Enum):
    """Intermediate representation emitted instead of an executable."""

    ASM = "asm"
    LLVM_IR = "llvm-ir"

    @property
    def output_file(self) -> str:
        return "compilation.s" if self is CompileTarget.ASM else "compilation.ll"

    @classmethod
    def parse(cls, value: str | CompileTarget | None) -> CompileTarget | None:
        if isinstance(value, cls) or value is None:
            return value
        normalized = str(value).strip().lower()
        if not normalized:
            return None
        for target in cls:
            if target.value == normalized:
                return target
        raise ValueError(f"The value {value!r} is not a valid target")


@dataclass(frozen=True, slots=True)
class StagePlan:
    """Commands the runner executes for one request."""

    build_command: tuple[str, ...]
    interpret_command: tuple[str, ...] | None
    artifact: str | None  # executable the build step must produce, relative to the crate root
    emitted: str | None = None  # file returned to the caller as ``code``, relative to the crate root


@dataclass(frozen=True)
class Toolchain:
    """Read-only description of the toolchain installed in the image."""

    cargo: str = "cargo"
    cargo_home: str | None = None
    rustup_home: str | None = None
    crate_name: str = "playground"
    edition: str = "2018"
    offline: bool = True
    miri_flags: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: Any) -> Toolchain:
        """Build a handle from a ``ToolchainConfig`` without probing the host."""
        return cls(
            cargo=str(getattr(config, "cargo", "cargo") or "cargo"),
            cargo_home=getattr(config, "cargo_home", None) or os.environ.get("CARGO_HOME"),
            rustup_home=getattr(config, "rustup_home", None) or os.environ.get("RUSTUP_HOME"),
            crate_name=str(getattr(config, "crate_name", "playground") or "playground"),
            edition=str(getattr(config, "edition", "2018") or "2018"),
            offline=bool(getattr(config, "offline", True)),
            miri_flags=tuple(str(flag) for flag in getattr(config, "miri_flags", []) or []),
        )

    @classmethod
    def resolve(cls, config: Any, *, require_local: bool = True) -> Toolchain:
        """
        Resolve the toolchain once at start-up.

        With ``require_local`` the cargo binary must exist on this host and is
        pinned to its absolute path. Container runtimes resolve it inside the
        image instead.

        Raises:
            ToolchainError: when cargo cannot be found.
        """
        toolchain = cls.from_config(config)
        if not require_local:
            return toolchain

        search_path = os.pathsep.join(
            part
            for part in (
                str(Path(toolchain.cargo_home) / "bin") if toolchain.cargo_home else None,
                os.environ.get("PATH"),
            )
            if part
        )
        located = shutil.which(toolchain.cargo, path=search_path)
        if located is None:
            raise ToolchainError(f"cargo executable '{toolchain.cargo}' not found")
        logger.info(f"Using cargo at {located}")
        return cls(
            cargo=located,
            cargo_home=toolchain.cargo_home,
            rustup_home=toolchain.rustup_home,
            crate_name=toolchain.crate_name,
            edition=toolchain.edition,
            offline=toolchain.offline,
            miri_flags=toolchain.miri_flags,
        )

    def scaffold(self, area: WorkingArea, source: str) -> Path:
        """Write a one-crate Cargo project holding ``source`` into the working area."""
        src_dir = area.path / "src"
        src_dir.mkdir(parents=True, exist_ok=True)
        (area.path / "Cargo.toml").write_text(
            _CARGO_TOML.format(name=self.crate_name, edition=self.edition), encoding="utf-8"
        )
        main_rs = src_dir / "main.rs"
        main_rs.write_text(source, encoding="utf-8")
        return main_rs

    def plan(
        self,
        mode: ExecutionMode,
        profile: BuildProfile,
        tests: bool,
        *,
        channel: Channel | None = None,
        target: CompileTarget | None = None,
    ) -> StagePlan:
        cargo = [self.cargo, *([f"+{channel.value}"] if channel is not None else [])]
        if mode is ExecutionMode.FORMAT:
            return StagePlan((*cargo, "fmt"), None, artifact=None, emitted="src/main.rs")

        flags: list[str] = []
        if self.offline:
            flags.append("--offline")
        if profile is BuildProfile.RELEASE:
            flags.append("--release")

        if target is not None:
            emit = f"{target.value}={target.output_file}"
            build = [*cargo, "rustc", *flags, "--", "--emit", emit]
            return StagePlan(tuple(build), None, artifact=None, emitted=target.output_file)

        if mode is ExecutionMode.MIRI:
            build = [*cargo, "check", *(["--tests"] if tests else []), *flags]
            interpret = [*cargo, "miri", "test" if tests else "run", *flags]
            return StagePlan(tuple(build), tuple(interpret), artifact=None)

        if tests:
            build = [*cargo, "test", "--no-run", *flags]
            interpret = [*cargo, "test", *flags] if mode is ExecutionMode.RUN else None
            return StagePlan(tuple(build), tuple(interpret) if interpret else None, artifact=None)

        artifact = f"target/{profile.value}/{self.crate_name}"
        build = [*cargo, "build", *flags]
        interpret = (f"./{artifact}",) if mode is ExecutionMode.RUN else None
        return StagePlan(tuple(build), interpret, artifact=artifact)

    def environment(self, home: str, *, inherit_path: bool = True) -> dict[str, str]:
        """Minimal environment for toolchain stages."""
        env = {
            "HOME": home,
            "TMPDIR": home,
            "LANG": "C.UTF-8",
            "CARGO_TERM_COLOR": "never",
            "CARGO_INCREMENTAL": "0",
            "RUST_BACKTRACE": "0",
        }
        if self.miri_flags:
            env["MIRIFLAGS"] = " ".join(self.miri_flags)
        if self.cargo_home:
            env["CARGO_HOME"] = self.cargo_home
        if self.rustup_home:
            env["RUSTUP_HOME"] = self.rustup_home
        if inherit_path:
            path_parts = []
            if os.path.isabs(self.cargo):
                path_parts.append(os.path.dirname(self.cargo))
            if self.cargo_home:
                path_parts.append(str(Path(self.cargo_home) / "bin"))
            path_parts.append(_SYSTEM_PATH)
            env["PATH"] = os.pathsep.join(dict.fromkeys(path_parts))
        return env

    def check_health(self, timeout_seconds: float = 10.0) -> tuple[bool, str]:
        """Return (healthy, detail) for the Miri component."""
        try:
            result = subprocess.run(
                [self.cargo, "miri", "--version"],
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                check=False,
                env={**os.environ, **self.environment(str(Path.home()))},
            )
        except FileNotFoundError:
            return False, f"cargo not found: {self.cargo}"
        except subprocess.TimeoutExpired:
            return False, "cargo miri --version timed out"

        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip() or "cargo miri unavailable"
            return False, detail
        return True, result.stdout.strip() or "miri available"
