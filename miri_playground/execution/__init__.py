"""
Request execution: models, the sandbox runner, the dispatcher and formatting.
"""

from .dispatcher import AdmissionPolicy, RequestDispatcher, RequestHandle
from .engine import PlaygroundService
from .formatter import describe_outcome, format_error, format_outcome
from .models import ExecutionOutcome, ExecutionRequest, OutcomeTag, ResourceKind
from .runner import InvalidTransition, RunnerState, RunTrace, SandboxRunner

__all__ = [
    "AdmissionPolicy",
    "ExecutionOutcome",
    "ExecutionRequest",
    "InvalidTransition",
    "OutcomeTag",
    "PlaygroundService",
    "RequestDispatcher",
    "RequestHandle",
    "ResourceKind",
    "RunTrace",
    "RunnerState",
    "SandboxRunner",
    "describe_outcome",
    "format_error",
    "format_outcome",
]
