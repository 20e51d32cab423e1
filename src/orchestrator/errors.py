"""Orchestration error taxonomy."""

from typing import Any


class OrchestrationError(Exception):
    """Base class for every error raised by the orchestration core.

    ``strategy`` and ``execution_time_ms`` are filled in by the executor
    when the error escapes ``execute_strategy``.
    """

    strategy: str | None = None
    execution_time_ms: float | None = None


class WorkerNotFoundError(OrchestrationError):
    """Referenced worker id is absent from the registry."""

    def __init__(self, worker_id: str):
        self.worker_id = worker_id
        super().__init__(f"Worker not found: {worker_id}")


class WorkerUnavailableError(OrchestrationError):
    """Worker exists but is not idle."""

    def __init__(self, worker_id: str, status: Any):
        self.worker_id = worker_id
        self.status = status
        super().__init__(f"Worker {worker_id} is not idle (status: {status})")


class WorkerTimeoutError(OrchestrationError, TimeoutError):
    """Per-call timer expired before the worker settled."""

    def __init__(self, worker_id: str, timeout_ms: float):
        self.worker_id = worker_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Worker {worker_id} timed out after {timeout_ms:.0f}ms")


class WorkerExecutionError(OrchestrationError):
    """Worker's execute() raised."""

    def __init__(self, worker_id: str, cause: BaseException):
        self.worker_id = worker_id
        self.cause = cause
        super().__init__(f"Worker {worker_id} failed: {cause}")


class UnknownStrategyError(OrchestrationError):
    """Unrecognized strategy tag."""

    def __init__(self, strategy_type: Any):
        self.strategy_type = strategy_type
        super().__init__(f"Unknown execution strategy: {strategy_type}")


class PipelineStepError(OrchestrationError):
    """A pipeline step failed; later steps were not invoked."""

    def __init__(self, step: int, worker_id: str, cause: BaseException):
        self.step = step
        self.worker_id = worker_id
        self.cause = cause
        super().__init__(f"Pipeline failed at step {step} (worker {worker_id}): {cause}")


class AggregateFailureError(OrchestrationError):
    """Every attempt of a fan-out or fallback failed."""

    def __init__(self, message: str, errors: list[BaseException] | None = None):
        self.errors = list(errors or [])
        super().__init__(message)


class InvalidStatusTransitionError(OrchestrationError):
    """Status change not allowed by the worker state machine."""

    def __init__(self, worker_id: str, old_status: Any, new_status: Any):
        self.worker_id = worker_id
        self.old_status = old_status
        self.new_status = new_status
        super().__init__(
            f"Invalid status transition for {worker_id}: {old_status} -> {new_status}"
        )


class NoAvailableWorkersError(OrchestrationError):
    """Router found no idle worker to route a task to."""

    def __init__(self, domain: str):
        self.domain = domain
        super().__init__(f"No workers available for {domain} task")


class ConsensusError(OrchestrationError):
    """No decision could be reached from the given results."""

    def __init__(self, message: str, algorithm: Any = None):
        self.algorithm = algorithm
        super().__init__(message)
