"""
Core functionality for the Miri playground.
"""

from .config import (
    DispatcherConfig,
    LimitsConfig,
    PlaygroundConfig,
    SandboxConfig,
    SandboxDockerConfig,
    ServerConfig,
    ToolchainConfig,
)
from .exceptions import (
    ConfigurationError,
    DispatcherBusyError,
    PlaygroundError,
    RequestValidationError,
    ToolchainError,
)
from .logging import get_logger, setup_logging
from .stats import ExecutionStats

__all__ = [
    "ConfigurationError",
    "DispatcherBusyError",
    "DispatcherConfig",
    "ExecutionStats",
    "LimitsConfig",
    "PlaygroundConfig",
    "PlaygroundError",
    "RequestValidationError",
    "SandboxConfig",
    "SandboxDockerConfig",
    "ServerConfig",
    "ToolchainConfig",
    "ToolchainError",
    "get_logger",
    "setup_logging",
]
