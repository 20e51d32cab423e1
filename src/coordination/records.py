"""Worker records held by the registry."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from src.agents.base import DEFAULT_PRIORITY, Worker
from src.orchestrator.state_machine import WorkerStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PerformanceStats:
    """Running means; both start neutral."""
    tasks_completed: int = 0
    average_time_ms: float = 0.0
    success_rate: float = 1.0


@dataclass(frozen=True)
class TaskRecord:
    task_id: str
    success: bool
    duration_ms: float
    timestamp: datetime


@dataclass
class PerformanceHistory:
    """Recent outcomes (ring buffer) and raw samples trimmed by cleanup()."""
    recent_tasks: deque[TaskRecord]
    response_times: list[float] = field(default_factory=list)
    accuracy: list[float] = field(default_factory=list)

    @classmethod
    def with_limit(cls, recent_task_limit: int) -> "PerformanceHistory":
        return cls(recent_tasks=deque(maxlen=recent_task_limit))


@dataclass
class WorkerRecord:
    """Registry entry for one worker. Status changes go through the registry."""
    id: str
    worker: Worker
    history: PerformanceHistory
    status: WorkerStatus = WorkerStatus.IDLE
    current_task: str | None = None
    performance: PerformanceStats = field(default_factory=PerformanceStats)
    last_activity: datetime = field(default_factory=utc_now)
    specialties: set[str] = field(default_factory=set)
    capabilities: set[str] = field(default_factory=set)
    priority: int = DEFAULT_PRIORITY

    @classmethod
    def for_worker(cls, worker_id: str, worker: Worker, recent_task_limit: int) -> "WorkerRecord":
        """Fresh record with metadata copied from the worker."""
        return cls(
            id=worker_id,
            worker=worker,
            history=PerformanceHistory.with_limit(recent_task_limit),
            specialties=set(getattr(worker, "specialties", None) or ()),
            capabilities=set(getattr(worker, "capabilities", None) or ()),
            priority=getattr(worker, "priority", None) or DEFAULT_PRIORITY,
        )

    @property
    def is_idle(self) -> bool:
        return self.status == WorkerStatus.IDLE
