"""
Request and outcome types for snippet execution.
"""

from __future__ import annotations

import math
import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..core.exceptions import RequestValidationError
from ..sandbox.limiter import CapturedOutput
from ..sandbox.toolchain import BuildProfile, Channel, CompileTarget, ExecutionMode

_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class OutcomeTag(str, Enum):
    """Terminal state a request reached. Exactly one per request."""

    SUCCESS = "success"
    COMPILE_ERROR = "compile_error"
    RUNTIME_FAILURE = "runtime_failure"
    TIMED_OUT = "timed_out"
    RESOURCE_EXCEEDED = "resource_exceeded"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


class ResourceKind(str, Enum):
    """Which bound a `resource_exceeded` outcome crossed."""

    MEMORY = "memory"
    CPU_TIME = "cpu_time"


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """A snippet accepted for execution. Immutable once accepted."""

    source: str
    mode: ExecutionMode = ExecutionMode.MIRI
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    profile: BuildProfile = BuildProfile.DEBUG
    tests: bool = False
    timeout_seconds: float | None = None
    memory_limit_mb: int | None = None
    channel: Channel | None = None
    target: CompileTarget | None = None

    @classmethod
    def create(
        cls,
        source: Any,
        *,
        mode: Any = None,
        request_id: Any = None,
        profile: Any = None,
        tests: Any = False,
        timeout_seconds: Any = None,
        memory_limit_mb: Any = None,
        channel: Any = None,
        target: Any = None,
        max_source_bytes: int | None = None,
    ) -> ExecutionRequest:
        """
        Validate caller input and build a request.

        Raises:
            RequestValidationError: for malformed or empty input. Nothing has
                been spawned or allocated at that point.
        """
        if not isinstance(source, str):
            raise RequestValidationError("Source code must be a string")
        if not source.strip():
            raise RequestValidationError("No source code was provided")
        try:
            size = len(source.encode("utf-8"))
        except UnicodeEncodeError as exc:
            raise RequestValidationError(
                f"Source code is not valid UTF-8 text (position {exc.start})"
            ) from exc
        if max_source_bytes is not None and size > max_source_bytes:
            raise RequestValidationError(
                f"Source code is {size} bytes; the limit is {max_source_bytes}"
            )
        if "\x00" in source:
            raise RequestValidationError("Source code must not contain NUL characters")

        try:
            parsed_profile = BuildProfile.parse(profile)
            parsed_channel = Channel.parse(channel)
            parsed_target = CompileTarget.parse(target)
            # Emitting asm or LLVM IR is a build without an executable.
            if parsed_target is not None and (mode is None or mode == ""):
                mode = ExecutionMode.BUILD
            parsed_mode = ExecutionMode.parse(mode)
        except ValueError as exc:
            raise RequestValidationError(str(exc)) from exc

        if not isinstance(tests, bool):
            raise RequestValidationError("'tests' must be a boolean")
        if parsed_target is not None:
            if parsed_mode is not ExecutionMode.BUILD:
                raise RequestValidationError(
                    f"Target {parsed_target.value!r} needs mode 'build', not {parsed_mode.value!r}"
                )
            if tests:
                raise RequestValidationError("Tests cannot be compiled to a target")
        if parsed_mode is ExecutionMode.FORMAT and tests:
            raise RequestValidationError("'tests' does not apply to mode 'format'")
        if parsed_mode is ExecutionMode.MIRI and parsed_channel not in (None, Channel.NIGHTLY):
            raise RequestValidationError(
                f"Miri is only available on the nightly channel, not {parsed_channel.value!r}"
            )

        if request_id is None or request_id == "":
            request_id = uuid.uuid4().hex
        elif not isinstance(request_id, str) or not _REQUEST_ID.match(request_id):
            raise RequestValidationError(
                "Request id must be 1-128 characters of letters, digits, '.', '_', ':' or '-'"
            )

        return cls(
            source=source,
            mode=parsed_mode,
            request_id=request_id,
            profile=parsed_profile,
            tests=tests,
            timeout_seconds=_positive("timeout_seconds", timeout_seconds, float),
            memory_limit_mb=_positive("memory_limit_mb", memory_limit_mb, int),
            channel=parsed_channel,
            target=parsed_target,
        )

    @classmethod
    def from_payload(
        cls, payload: Mapping[str, Any], *, max_source_bytes: int | None = None
    ) -> ExecutionRequest:
        """Build a request from a JSON-style mapping (``code``, ``mode``, ...)."""
        if not isinstance(payload, Mapping):
            raise RequestValidationError("No request was provided")
        known = {
            "code",
            "mode",
            "request_id",
            "profile",
            "tests",
            "timeout_seconds",
            "memory_limit_mb",
            "channel",
            "target",
        }
        unknown = sorted(set(payload) - known)
        if unknown:
            raise RequestValidationError(f"Unknown request field(s): {', '.join(unknown)}")
        return cls.create(
            payload.get("code"),
            mode=payload.get("mode"),
            request_id=payload.get("request_id"),
            profile=payload.get("profile"),
            tests=payload.get("tests", False),
            timeout_seconds=payload.get("timeout_seconds"),
            memory_limit_mb=payload.get("memory_limit_mb"),
            channel=payload.get("channel"),
            target=payload.get("target"),
            max_source_bytes=max_source_bytes,
        )


def _positive(name: str, value: Any, kind: type) -> Any:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RequestValidationError(f"'{name}' must be a number")
    if not math.isfinite(value) or value <= 0:
        raise RequestValidationError(f"'{name}' must be finite and positive")
    if kind is int:
        if value != int(value):
            raise RequestValidationError(f"'{name}' must be a whole number")
        return int(value)
    return float(value)


_EMPTY = CapturedOutput()


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    """Tagged result of one request."""

    tag: OutcomeTag
    request_id: str
    stdout: CapturedOutput = _EMPTY
    stderr: CapturedOutput = _EMPTY
    exit_code: int | None = None
    elapsed: float = 0.0
    diagnostic: str | None = None
    resource: ResourceKind | None = None
    limit: float | None = None  # value of the bound that was hit
    code: CapturedOutput | None = None  # formatted source or emitted asm/LLVM IR

    def __post_init__(self) -> None:
        if (self.tag is OutcomeTag.RESOURCE_EXCEEDED) != (self.resource is not None):
            raise ValueError("resource is set exactly for resource_exceeded outcomes")
        if self.tag is OutcomeTag.SUCCESS and self.exit_code != 0:
            raise ValueError("success outcomes carry exit code 0")

    @property
    def succeeded(self) -> bool:
        return self.tag is OutcomeTag.SUCCESS

    @classmethod
    def success(
        cls,
        request_id: str,
        stdout: CapturedOutput,
        stderr: CapturedOutput,
        elapsed: float,
        code: CapturedOutput | None = None,
    ) -> ExecutionOutcome:
        return cls(
            OutcomeTag.SUCCESS, request_id, stdout, stderr, exit_code=0, elapsed=elapsed, code=code
        )

    @classmethod
    def compile_error(
        cls, request_id: str, stdout: CapturedOutput, stderr: CapturedOutput, elapsed: float,
        exit_code: int | None = None,
    ) -> ExecutionOutcome:
        return cls(
            OutcomeTag.COMPILE_ERROR,
            request_id,
            stdout,
            stderr,
            exit_code=exit_code,
            elapsed=elapsed,
            diagnostic=stderr.text,
        )

    @classmethod
    def runtime_failure(
        cls,
        request_id: str,
        exit_code: int | None,
        stdout: CapturedOutput,
        stderr: CapturedOutput,
        elapsed: float,
    ) -> ExecutionOutcome:
        return cls(
            OutcomeTag.RUNTIME_FAILURE, request_id, stdout, stderr, exit_code=exit_code, elapsed=elapsed
        )

    @classmethod
    def timed_out(
        cls,
        request_id: str,
        limit: float,
        elapsed: float,
        stdout: CapturedOutput = _EMPTY,
        stderr: CapturedOutput = _EMPTY,
    ) -> ExecutionOutcome:
        return cls(
            OutcomeTag.TIMED_OUT, request_id, stdout, stderr, elapsed=elapsed, limit=limit
        )

    @classmethod
    def resource_exceeded(
        cls,
        request_id: str,
        resource: ResourceKind,
        limit: float,
        elapsed: float,
        stdout: CapturedOutput = _EMPTY,
        stderr: CapturedOutput = _EMPTY,
        exit_code: int | None = None,
    ) -> ExecutionOutcome:
        return cls(
            OutcomeTag.RESOURCE_EXCEEDED,
            request_id,
            stdout,
            stderr,
            exit_code=exit_code,
            elapsed=elapsed,
            resource=resource,
            limit=limit,
        )

    @classmethod
    def cancelled(
        cls,
        request_id: str,
        elapsed: float = 0.0,
        stdout: CapturedOutput = _EMPTY,
        stderr: CapturedOutput = _EMPTY,
    ) -> ExecutionOutcome:
        return cls(OutcomeTag.CANCELLED, request_id, stdout, stderr, elapsed=elapsed)

    @classmethod
    def internal_error(cls, request_id: str, cause: str, elapsed: float = 0.0) -> ExecutionOutcome:
        return cls(OutcomeTag.INTERNAL_ERROR, request_id, elapsed=elapsed, diagnostic=cause)
