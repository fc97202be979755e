"""
Playground service: wires configuration, toolchain, runtime and dispatcher.

`PlaygroundService` is the object the CLI and the HTTP intake talk to. It
resolves the toolchain once at construction and shares the handle, read-only,
with every request it runs.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import Any

from ..core.config import PlaygroundConfig
from ..core.logging import get_logger
from ..core.stats import ExecutionStats
from ..sandbox.limiter import ResourceLimiter
from ..sandbox.runtimes.base import SandboxRuntime
from ..sandbox.runtimes.registry import create_runtime
from ..sandbox.toolchain import Toolchain
from .dispatcher import RequestDispatcher, RequestHandle
from .formatter import format_outcome
from .models import ExecutionOutcome, ExecutionRequest
from .runner import SandboxRunner

logger = get_logger(__name__)


class PlaygroundService:
    """
    Accepts snippet requests and returns formatted execution records.

    Args:
        config: Service configuration; defaults are used when omitted.
        toolchain: Pre-resolved toolchain handle. Resolved from ``config``
            when omitted.
        runtime: Runtime backend. Created from ``config.sandbox`` when omitted.
        limiter: Resource limiter shared by all requests.
        stats: Statistics aggregate shared with the runner and dispatcher.

    Raises:
        ConfigurationError: for an unusable configuration.
        ToolchainError: when the toolchain cannot be located.
    """

    def __init__(
        self,
        config: PlaygroundConfig | None = None,
        *,
        toolchain: Toolchain | None = None,
        runtime: SandboxRuntime | None = None,
        limiter: ResourceLimiter | None = None,
        stats: ExecutionStats | None = None,
    ):
        self.config = config or PlaygroundConfig()
        self.config.validate()
        self.stats = stats or ExecutionStats()
        self.runtime = runtime or create_runtime(self.config.sandbox.runtime, self.config.sandbox)
        self.toolchain = toolchain or Toolchain.resolve(
            self.config.toolchain, require_local=self.runtime.uses_host_toolchain()
        )
        self.limiter = limiter or ResourceLimiter(
            enforce_address_space=self.config.limits.enforce_address_space
        )
        self.runner = SandboxRunner(self.toolchain, self.runtime, self.limiter, self.stats)
        self.dispatcher = RequestDispatcher.from_config(self.runner, self.config, stats=self.stats)
        logger.info(
            f"Playground ready: runtime={self.runtime.name}, "
            f"max_concurrent={self.dispatcher.max_concurrent}, "
            f"policy={self.dispatcher.admission_policy.value}"
        )

    def parse_request(self, payload: Mapping[str, Any]) -> ExecutionRequest:
        """Validate a caller payload. Raises `RequestValidationError`."""
        return ExecutionRequest.from_payload(
            payload, max_source_bytes=self.config.limits.max_source_bytes
        )

    def execute(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Validate, run and format one request on the calling thread."""
        request = self.parse_request(payload)
        return format_outcome(self.run(request))

    def run(
        self, request: ExecutionRequest, cancel_event: threading.Event | None = None
    ) -> ExecutionOutcome:
        return self.dispatcher.execute(request, cancel_event)

    def submit(self, payload: Mapping[str, Any]) -> RequestHandle:
        """Validate a request and run it in the background."""
        return self.dispatcher.submit(self.parse_request(payload))

    def cancel(self, request_id: str) -> bool:
        return self.dispatcher.cancel(request_id)

    def health(self) -> dict[str, Any]:
        dispatcher = self.dispatcher
        return {
            "status": "ok",
            "name": self.config.name,
            "runtime": self.runtime.name,
            "cargo": self.toolchain.cargo,
            "admission_policy": dispatcher.admission_policy.value,
            "max_concurrent": dispatcher.max_concurrent,
            "in_flight": dispatcher.in_flight,
            "peak_in_flight": dispatcher.peak_in_flight,
            "waiting": dispatcher.waiting,
            "limits": dispatcher.base_budget.to_dict(),
            "stats": self.stats.snapshot(),
        }

    def close(self, wait: bool = True) -> None:
        """Stop accepting work; in-flight requests are cancelled."""
        self.dispatcher.shutdown(wait=wait, cancel_pending=True)

    def __enter__(self) -> PlaygroundService:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
