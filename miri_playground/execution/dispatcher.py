"""
Request dispatcher: admission control, working-area ownership and cancellation.

Admission policy
----------------
At most ``max_concurrent`` requests execute at once. What happens to the next
one depends on `AdmissionPolicy`:

* ``wait`` -- up to ``queue_limit`` callers wait for a slot, each for at most
  ``queue_timeout_seconds``. A full queue or an expired wait raises
  `DispatcherBusyError`.
* ``reject`` -- requests beyond the cap raise `DispatcherBusyError`
  immediately.

`RequestDispatcher.submit` never accepts more than
``max_concurrent + queue_limit`` pending requests, so nothing is queued
without bound.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Any

from ..core.exceptions import ConfigurationError, DispatcherBusyError, RequestValidationError
from ..core.logging import get_logger
from ..core.stats import ExecutionStats
from ..sandbox.budget import ResourceBudget
from ..sandbox.workarea import WorkingAreaFactory
from .models import ExecutionOutcome, ExecutionRequest
from .runner import SandboxRunner

logger = get_logger(__name__)

# Upper bound on how long a queued caller sleeps before re-checking its cancel flag.
_QUEUE_POLL_SECONDS = 0.25


class AdmissionPolicy(str, Enum):
    WAIT = "wait"
    REJECT = "reject"


class RequestHandle:
    """Handle on a request submitted for background execution."""

    def __init__(self, request_id: str, future: Future, cancel_event: threading.Event):
        self.request_id = request_id
        self._future = future
        self._cancel_event = cancel_event

    def result(self, timeout: float | None = None) -> ExecutionOutcome:
        """
        Wait for the outcome.

        Raises:
            DispatcherBusyError: if the request never obtained an execution slot.
        """
        return self._future.result(timeout)

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> None:
        """Ask for the request to be stopped; its outcome becomes ``cancelled``."""
        self._cancel_event.set()


class RequestDispatcher:
    """Runs requests through a `SandboxRunner` under a concurrency cap."""

    def __init__(
        self,
        runner: SandboxRunner,
        workareas: WorkingAreaFactory,
        *,
        base_budget: ResourceBudget,
        max_timeout_seconds: float,
        max_memory_limit_mb: int,
        max_concurrent: int = 4,
        admission_policy: AdmissionPolicy | str = AdmissionPolicy.WAIT,
        queue_limit: int = 64,
        queue_timeout_seconds: float = 60.0,
        stats: ExecutionStats | None = None,
    ):
        if max_concurrent < 1:
            raise ConfigurationError("max_concurrent must be at least 1")
        if queue_limit < 0:
            raise ConfigurationError("queue_limit must not be negative")
        try:
            self.admission_policy = AdmissionPolicy(str(getattr(admission_policy, "value", admission_policy)).lower())
        except ValueError as exc:
            raise ConfigurationError(f"Unknown admission policy {admission_policy!r}") from exc

        self.runner = runner
        self.workareas = workareas
        self.base_budget = base_budget
        self.max_timeout_seconds = max_timeout_seconds
        self.max_memory_limit_mb = max_memory_limit_mb
        self.max_concurrent = max_concurrent
        self.queue_limit = queue_limit if self.admission_policy is AdmissionPolicy.WAIT else 0
        self.queue_timeout_seconds = queue_timeout_seconds
        self.stats = stats or runner.stats

        self._cond = threading.Condition()
        self._in_flight = 0
        self._peak_in_flight = 0
        self._waiting = 0
        self._pending = 0
        self._cancel_events: dict[str, threading.Event] = {}
        self._executor: ThreadPoolExecutor | None = None
        self._closed = False

    @classmethod
    def from_config(
        cls,
        runner: SandboxRunner,
        config: Any,
        stats: ExecutionStats | None = None,
    ) -> RequestDispatcher:
        """Build a dispatcher from a ``PlaygroundConfig``."""
        limits = config.limits
        dispatcher_cfg = config.dispatcher
        return cls(
            runner,
            WorkingAreaFactory(dispatcher_cfg.workarea_root),
            base_budget=limits.default_budget(),
            max_timeout_seconds=float(limits.max_timeout_seconds),
            max_memory_limit_mb=int(limits.max_memory_limit_mb),
            max_concurrent=int(dispatcher_cfg.max_concurrent),
            admission_policy=dispatcher_cfg.admission_policy,
            queue_limit=int(dispatcher_cfg.queue_limit),
            queue_timeout_seconds=float(dispatcher_cfg.queue_timeout_seconds),
            stats=stats,
        )

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        with self._cond:
            return self._peak_in_flight

    @property
    def waiting(self) -> int:
        with self._cond:
            return self._waiting

    def budget_for(self, request: ExecutionRequest) -> ResourceBudget:
        """Administrator defaults with the request's overrides clamped to the ceilings."""
        return self.base_budget.with_overrides(
            timeout_seconds=request.timeout_seconds,
            memory_limit_mb=request.memory_limit_mb,
            max_timeout_seconds=self.max_timeout_seconds,
            max_memory_limit_mb=self.max_memory_limit_mb,
        )

    def execute(
        self, request: ExecutionRequest, cancel_event: threading.Event | None = None
    ) -> ExecutionOutcome:
        """
        Run a request on the calling thread.

        Raises:
            RequestValidationError: if a request with the same id is in flight.
            DispatcherBusyError: if no slot is available under the admission policy.
        """
        event = self._register(request, cancel_event)
        try:
            return self._execute_registered(request, event)
        finally:
            self._unregister(request.request_id)

    def submit(self, request: ExecutionRequest) -> RequestHandle:
        """Run a request on the dispatcher's worker pool."""
        event = self._register(request)
        with self._cond:
            capacity = self.max_concurrent + self.queue_limit
            if self._closed or self._pending >= capacity:
                in_flight, waiting = self._in_flight, self._waiting
                self._cancel_events.pop(request.request_id, None)
                raise DispatcherBusyError(
                    f"{self._pending} requests pending; capacity is {capacity}",
                    in_flight=in_flight,
                    waiting=waiting,
                )
            self._pending += 1
            executor = self._pool()

        def task() -> ExecutionOutcome:
            try:
                return self._execute_registered(request, event)
            finally:
                with self._cond:
                    self._pending -= 1
                self._unregister(request.request_id)

        return RequestHandle(request.request_id, executor.submit(task), event)

    def cancel(self, request_id: str) -> bool:
        """Cancel a queued or running request. Returns False for unknown ids."""
        with self._cond:
            event = self._cancel_events.get(request_id)
            if event is None:
                return False
            event.set()
            self._cond.notify_all()
        logger.info(f"Cancellation requested for {request_id}")
        return True

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        with self._cond:
            self._closed = True
            if cancel_pending:
                for event in self._cancel_events.values():
                    event.set()
                self._cond.notify_all()
            executor = self._executor
        if executor is not None:
            executor.shutdown(wait=wait)

    def _execute_registered(
        self, request: ExecutionRequest, cancel_event: threading.Event
    ) -> ExecutionOutcome:
        budget = self.budget_for(request)
        queued_at = time.monotonic()

        if not self._admit(cancel_event):
            outcome = ExecutionOutcome.cancelled(request.request_id, time.monotonic() - queued_at)
        else:
            try:
                self.stats.record_timing("queue", time.monotonic() - queued_at)
                outcome = self._run_in_workarea(request, budget, cancel_event)
            finally:
                self._release()

        self.stats.record_outcome(outcome.tag.value, outcome.elapsed)
        logger.info(
            f"Request {request.request_id} ({request.mode.value}) finished: "
            f"{outcome.tag.value} in {outcome.elapsed:.2f}s"
        )
        return outcome

    def _run_in_workarea(
        self, request: ExecutionRequest, budget: ResourceBudget, cancel_event: threading.Event
    ) -> ExecutionOutcome:
        try:
            with self.workareas.allocate() as area:
                return self.runner.run(request, area, budget, cancel_event)
        except OSError as exc:
            logger.error(f"Request {request.request_id}: cannot allocate a working area: {exc}")
            return ExecutionOutcome.internal_error(
                request.request_id, f"cannot allocate working area: {exc}"
            )

    def _admit(self, cancel_event: threading.Event) -> bool:
        """Take an execution slot. Returns False if cancelled while queued."""
        with self._cond:
            if self._closed:
                raise DispatcherBusyError("Dispatcher is shut down")
            if cancel_event.is_set():
                return False
            if self._in_flight < self.max_concurrent:
                self._take_slot()
                return True
            if self.admission_policy is AdmissionPolicy.REJECT:
                raise DispatcherBusyError(
                    f"All {self.max_concurrent} execution slots are busy",
                    in_flight=self._in_flight,
                    waiting=self._waiting,
                )
            if self._waiting >= self.queue_limit:
                raise DispatcherBusyError(
                    f"Admission queue is full ({self.queue_limit} waiting)",
                    in_flight=self._in_flight,
                    waiting=self._waiting,
                )

            self._waiting += 1
            deadline = time.monotonic() + self.queue_timeout_seconds
            try:
                while True:
                    if cancel_event.is_set():
                        return False
                    if self._in_flight < self.max_concurrent:
                        self._take_slot()
                        return True
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise DispatcherBusyError(
                            f"No execution slot became free within {self.queue_timeout_seconds:g}s",
                            in_flight=self._in_flight,
                            waiting=self._waiting,
                        )
                    self._cond.wait(min(remaining, _QUEUE_POLL_SECONDS))
            finally:
                self._waiting -= 1

    def _take_slot(self) -> None:
        self._in_flight += 1
        self._peak_in_flight = max(self._peak_in_flight, self._in_flight)

    def _release(self) -> None:
        with self._cond:
            self._in_flight -= 1
            self._cond.notify()

    def _register(
        self, request: ExecutionRequest, cancel_event: threading.Event | None = None
    ) -> threading.Event:
        with self._cond:
            if request.request_id in self._cancel_events:
                raise RequestValidationError(
                    f"Request id '{request.request_id}' is already in flight"
                )
            event = cancel_event or threading.Event()
            self._cancel_events[request.request_id] = event
            return event

    def _unregister(self, request_id: str) -> None:
        with self._cond:
            self._cancel_events.pop(request_id, None)

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_concurrent + self.queue_limit,
                thread_name_prefix="playground-request",
            )
        return self._executor
