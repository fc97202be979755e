"""
Sandbox runtime backends.
"""

from .base import PreparedCommand, SandboxRuntime
from .registry import (
    SUPPORTED_RUNTIMES,
    RuntimeDoctorCheck,
    RuntimeHealth,
    create_runtime,
    detect_runtime_health,
    run_runtime_doctor,
)

__all__ = [
    "PreparedCommand",
    "RuntimeDoctorCheck",
    "RuntimeHealth",
    "SUPPORTED_RUNTIMES",
    "SandboxRuntime",
    "create_runtime",
    "detect_runtime_health",
    "run_runtime_doctor",
]
