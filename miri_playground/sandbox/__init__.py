"""
Process-level sandboxing: budgets, the resource limiter, working areas,
the toolchain handle and runtime backends.
"""

from .budget import ResourceBudget
from .limiter import CapturedOutput, ProcessResult, ResourceLimiter, Termination
from .runtimes import (
    SUPPORTED_RUNTIMES,
    PreparedCommand,
    RuntimeDoctorCheck,
    RuntimeHealth,
    SandboxRuntime,
    create_runtime,
    detect_runtime_health,
    run_runtime_doctor,
)
from .toolchain import BuildProfile, ExecutionMode, StagePlan, Toolchain
from .workarea import WorkingArea, WorkingAreaFactory

__all__ = [
    "BuildProfile",
    "CapturedOutput",
    "ExecutionMode",
    "PreparedCommand",
    "ProcessResult",
    "ResourceBudget",
    "ResourceLimiter",
    "RuntimeDoctorCheck",
    "RuntimeHealth",
    "SUPPORTED_RUNTIMES",
    "SandboxRuntime",
    "StagePlan",
    "Termination",
    "Toolchain",
    "WorkingArea",
    "WorkingAreaFactory",
    "create_runtime",
    "detect_runtime_health",
    "run_runtime_doctor",
]
