"""Task and worker result models."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel


class PipelineContext(BaseModel):
    """Position of a task inside a sequential pipeline."""
    step: int
    total_steps: int
    previous_results: list[Any] = []


class CollaborationContext(BaseModel):
    """Session state handed to each collaborator every round."""
    session_id: str
    iteration: int
    max_iterations: int
    shared_context: dict[str, Any] = {}
    previous_results: list[Any] = []
    participants: list[str] = []


class ParallelContext(BaseModel):
    """Slot of a task inside a parallel fan-out."""
    index: int
    total: int
    worker_id: str


class Task(BaseModel):
    """Unit of work handed to a worker.

    Tasks are ephemeral. Strategies derive per-worker inputs with
    ``model_copy(update=...)`` and fill one of the context fields.
    """
    id: str | None = None
    description: str = ""
    type: str | None = None
    requirements: list[str] = []

    # Strategy-provided inputs
    previous_result: Any = None
    pipeline_context: PipelineContext | None = None
    collaboration: CollaborationContext | None = None
    parallel: ParallelContext | None = None


@dataclass
class WorkerResult:
    """Result of a worker execution."""
    success: bool = True
    output: Any = None
    confidence: float | None = None
    shared_updates: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    tokens_used: dict[str, int] = field(default_factory=dict)  # model -> tokens


def result_field(result: Any, name: str, default: Any = None) -> Any:
    """Read a field from a WorkerResult-like object or a plain mapping."""
    if isinstance(result, Mapping):
        return result.get(name, default)
    return getattr(result, name, default)
