"""Orchestrator - strategies, convergence and task routing for worker pools.

Only leaf modules are re-exported here; import ``executor``, ``convergence``,
``consensus`` and ``task_router`` from their modules.
"""

from .config import Settings, configure_logging
from .errors import (
    AggregateFailureError,
    ConsensusError,
    InvalidStatusTransitionError,
    NoAvailableWorkersError,
    OrchestrationError,
    PipelineStepError,
    UnknownStrategyError,
    WorkerExecutionError,
    WorkerNotFoundError,
    WorkerTimeoutError,
    WorkerUnavailableError,
)
from .state_machine import WorkerStatus
from .strategies import StrategyOptions, StrategyType, parse_strategy
from .task import Task, WorkerResult

__all__ = [
    "AggregateFailureError",
    "ConsensusError",
    "InvalidStatusTransitionError",
    "NoAvailableWorkersError",
    "OrchestrationError",
    "PipelineStepError",
    "Settings",
    "StrategyOptions",
    "StrategyType",
    "Task",
    "UnknownStrategyError",
    "WorkerExecutionError",
    "WorkerNotFoundError",
    "WorkerResult",
    "WorkerStatus",
    "WorkerTimeoutError",
    "WorkerUnavailableError",
    "configure_logging",
    "parse_strategy",
]
