"""Strategy descriptors and strategy results."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .errors import UnknownStrategyError
from .task import WorkerResult


class StrategyType(str, Enum):
    """Execution topologies."""
    SINGLE = "single"
    PIPELINE = "pipeline"
    CONSENSUS_ENSEMBLE = "consensus_ensemble"
    COLLABORATIVE_SESSION = "collaborative_session"
    PARALLEL_EXECUTION = "parallel_execution"
    CASCADING_FALLBACK = "cascading_fallback"


class StrategyOptions(BaseModel):
    """Per-call options. Timeouts are in milliseconds."""
    timeout: float | None = Field(default=None, gt=0)
    step_timeout: float | None = Field(default=None, gt=0)
    agent_timeout: float | None = Field(default=None, gt=0)
    max_iterations: int | None = Field(default=None, ge=1)

    def merged(self, overrides: "StrategyOptions | None") -> "StrategyOptions":
        """Return a copy with every field explicitly set on overrides applied."""
        if overrides is None:
            return self
        return self.model_copy(update=overrides.model_dump(exclude_unset=True))


# === Descriptors ===

class SingleStrategy(BaseModel):
    type: Literal["single"] = "single"
    worker: str
    options: StrategyOptions = StrategyOptions()
    reason: str | None = None


class PipelineStrategy(BaseModel):
    """Ordered workers; each step sees the previous step's result."""
    type: Literal["pipeline"] = "pipeline"
    workers: list[str]
    options: StrategyOptions = StrategyOptions()
    reason: str | None = None


class ConsensusStrategy(BaseModel):
    type: Literal["consensus_ensemble"] = "consensus_ensemble"
    workers: list[str]
    options: StrategyOptions = StrategyOptions()
    reason: str | None = None


class CollaborativeStrategy(BaseModel):
    type: Literal["collaborative_session"] = "collaborative_session"
    workers: list[str]
    options: StrategyOptions = StrategyOptions()
    reason: str | None = None


class ParallelStrategy(BaseModel):
    type: Literal["parallel_execution"] = "parallel_execution"
    workers: list[str]
    options: StrategyOptions = StrategyOptions()
    reason: str | None = None


class FallbackStrategy(BaseModel):
    """Ordered workers tried one at a time until one succeeds."""
    type: Literal["cascading_fallback"] = "cascading_fallback"
    workers: list[str]
    options: StrategyOptions = StrategyOptions()
    reason: str | None = None


Strategy = Annotated[
    Union[
        SingleStrategy,
        PipelineStrategy,
        ConsensusStrategy,
        CollaborativeStrategy,
        ParallelStrategy,
        FallbackStrategy,
    ],
    Field(discriminator="type"),
]

_strategy_adapter: TypeAdapter[Strategy] = TypeAdapter(Strategy)


def parse_strategy(data: dict[str, Any]) -> Strategy:
    """Build a strategy descriptor from a plain mapping."""
    strategy_type = data.get("type")
    try:
        strategy_type = StrategyType(strategy_type).value
    except ValueError:
        raise UnknownStrategyError(strategy_type) from None
    try:
        return _strategy_adapter.validate_python({**data, "type": strategy_type})
    except ValidationError as e:
        raise ValueError(f"Invalid {strategy_type} strategy: {e}") from e


# === Results ===

@dataclass(kw_only=True)
class StrategyResult:
    """Common fields of every strategy result."""
    strategy: StrategyType
    execution_time_ms: float = 0.0


@dataclass(kw_only=True)
class WorkerOutcome:
    """Settled outcome of one worker call inside a fan-out."""
    worker_id: str
    success: bool
    result: WorkerResult | None = None
    error: str | None = None
    duration_ms: float = 0.0
    index: int | None = None
    exception: BaseException | None = field(default=None, repr=False, compare=False)


@dataclass(kw_only=True)
class SingleResult(StrategyResult):
    strategy: StrategyType = StrategyType.SINGLE
    worker_id: str
    result: WorkerResult
    success: bool


@dataclass(kw_only=True)
class PipelineStep:
    worker_id: str
    step: int
    result: WorkerResult
    duration_ms: float


@dataclass(kw_only=True)
class PipelineResult(StrategyResult):
    strategy: StrategyType = StrategyType.PIPELINE
    pipeline: list[str]
    steps: list[PipelineStep]
    final_result: WorkerResult | None
    total_steps: int


@dataclass(kw_only=True)
class ConsensusResult(StrategyResult):
    """All outcomes plus the successful subset; weighting is left to the caller."""
    strategy: StrategyType = StrategyType.CONSENSUS_ENSEMBLE
    participants: list[str]
    results: list[WorkerOutcome]
    successful_results: list[WorkerOutcome]
    consensus_ready: bool = True

    @property
    def failures(self) -> list[WorkerOutcome]:
        return [r for r in self.results if not r.success]


@dataclass(kw_only=True)
class Contribution:
    """One collaborator's successful result in one round."""
    worker_id: str
    iteration: int
    result: WorkerResult
    duration_ms: float


@dataclass(kw_only=True)
class ConvergenceCheck:
    converged: bool
    reason: str
    stability_ratio: float = 0.0
    stable_results: int = 0
    compared: int = 0


@dataclass(kw_only=True)
class CollaborationConsensus:
    """Summary of the last completed round."""
    iteration: int
    participant_count: int
    average_confidence: float
    highest_confidence_result: Contribution
    consensus_strength: float


@dataclass(kw_only=True)
class CollaborativeResult(StrategyResult):
    strategy: StrategyType = StrategyType.COLLABORATIVE_SESSION
    session_id: str
    iterations: int
    results: list[Contribution]
    shared_context: dict[str, Any]
    convergence: ConvergenceCheck
    final_consensus: CollaborationConsensus | None
    failures: list[WorkerOutcome] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.convergence.converged


@dataclass(kw_only=True)
class ParallelResult(StrategyResult):
    strategy: StrategyType = StrategyType.PARALLEL_EXECUTION
    workers: list[str]
    results: list[WorkerOutcome]
    success_count: int
    failure_count: int


@dataclass(kw_only=True)
class FallbackResult(StrategyResult):
    strategy: StrategyType = StrategyType.CASCADING_FALLBACK
    successful_worker: str
    attempt_number: int
    result: WorkerResult
    fallback_chain: list[str]
    errors: list[str] = field(default_factory=list)


ExecutionResult = Union[
    SingleResult,
    PipelineResult,
    ConsensusResult,
    CollaborativeResult,
    ParallelResult,
    FallbackResult,
]
