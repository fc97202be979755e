"""
Miri playground: run untrusted Rust snippets under the Miri interpreter.

Each request is compiled and interpreted in its own working area, inside a
process tree bounded in wall-clock time, memory, CPU time and output size.
Results come back as a single tagged outcome per request.
"""

import logging as _logging

from .core.config import PlaygroundConfig
from .core.exceptions import (
    ConfigurationError,
    DispatcherBusyError,
    PlaygroundError,
    RequestValidationError,
    ToolchainError,
)
from .execution import (
    ExecutionOutcome,
    ExecutionRequest,
    OutcomeTag,
    PlaygroundService,
    format_outcome,
)
from .sandbox import ExecutionMode, ResourceBudget

__version__ = "0.1.0"

# Library default: stay quiet unless the application configures logging.
_logging.getLogger(__name__).addHandler(_logging.NullHandler())

__all__ = [
    "ConfigurationError",
    "DispatcherBusyError",
    "ExecutionMode",
    "ExecutionOutcome",
    "ExecutionRequest",
    "OutcomeTag",
    "PlaygroundConfig",
    "PlaygroundError",
    "PlaygroundService",
    "RequestValidationError",
    "ResourceBudget",
    "ToolchainError",
    "__version__",
    "format_outcome",
]
