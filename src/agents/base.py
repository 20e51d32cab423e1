"""Base worker class - the capability the orchestrator consumes."""

from abc import ABC, abstractmethod
from typing import Protocol, runtime_checkable

from src.orchestrator.task import Task, WorkerResult

DEFAULT_PRIORITY = 5


@runtime_checkable
class Worker(Protocol):
    """Anything the registry can pool.

    ``execute`` may raise; the orchestrator treats a raised exception as a
    failed call and a returned ``WorkerResult(success=False)`` as a completed
    but unsuccessful task.
    """
    specialties: set[str]
    capabilities: set[str]
    priority: int

    async def execute(self, task: Task) -> WorkerResult:
        ...


class BaseWorker(ABC):
    """Base class for workers with static metadata."""

    def __init__(
        self,
        specialties: set[str] | None = None,
        capabilities: set[str] | None = None,
        priority: int = DEFAULT_PRIORITY,
    ):
        self.specialties = set(specialties or ())
        self.capabilities = set(capabilities or ())
        self.priority = priority

    @property
    @abstractmethod
    def worker_type(self) -> str:
        """Worker type identifier."""
        ...

    @abstractmethod
    async def execute(self, task: Task) -> WorkerResult:
        """Execute a task."""
        ...

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(type={self.worker_type!r}, "
            f"specialties={sorted(self.specialties)}, priority={self.priority})"
        )
