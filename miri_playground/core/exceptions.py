"""
Custom exceptions for the Miri playground.

Sandboxed-program failures (compile errors, panics, timeouts, limit kills) are
never raised: they are reported as execution outcomes. The exceptions below
cover intake and infrastructure problems only.
"""


class PlaygroundError(Exception):
    """Base exception for playground errors."""


class ConfigurationError(PlaygroundError):
    """Error in configuration."""


class ToolchainError(PlaygroundError):
    """The compiler/interpreter toolchain is missing or unusable."""

    def __init__(self, message: str):
        super().__init__(message)
        self.user_message = f"The Rust toolchain is not usable: {message}"
        self.recovery_hint = "Run `miri-playground doctor` to inspect the toolchain setup."


class RequestValidationError(PlaygroundError):
    """Caller submitted a malformed request."""

    def __init__(self, message: str):
        super().__init__(message)
        self.user_message = message
        self.recovery_hint = "Fix the request and submit it again."


class DispatcherBusyError(PlaygroundError):
    """No execution slot became available for the request."""

    def __init__(self, message: str, *, in_flight: int = 0, waiting: int = 0):
        super().__init__(message)
        self.in_flight = in_flight
        self.waiting = waiting
        self.user_message = "The playground is busy."
        self.recovery_hint = "Retry the request later."


def format_error_message(error: Exception) -> str:
    """
    Format an error message for display to user.

    Args:
        error: Exception to format

    Returns:
        Formatted error message with recovery hints
    """
    if isinstance(error, PlaygroundError) and hasattr(error, "user_message"):
        message = error.user_message
        if hasattr(error, "recovery_hint"):
            message += f"\n\n{error.recovery_hint}"
        return message
    return str(error)
