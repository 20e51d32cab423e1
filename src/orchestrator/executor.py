"""Strategy executor - runs a task under one of six execution topologies."""

import asyncio
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

import structlog

from src.coordination.records import WorkerRecord
from src.coordination.registry import WorkerRegistry

from .config import Settings
from .convergence import ConvergenceDetector
from .errors import (
    AggregateFailureError,
    OrchestrationError,
    PipelineStepError,
    UnknownStrategyError,
    WorkerExecutionError,
    WorkerNotFoundError,
    WorkerTimeoutError,
    WorkerUnavailableError,
)
from .state_machine import WorkerStatus
from .strategies import (
    CollaborativeResult,
    CollaborativeStrategy,
    ConsensusResult,
    ConsensusStrategy,
    Contribution,
    ConvergenceCheck,
    ExecutionResult,
    FallbackResult,
    FallbackStrategy,
    ParallelResult,
    ParallelStrategy,
    PipelineResult,
    PipelineStep,
    PipelineStrategy,
    SingleResult,
    SingleStrategy,
    Strategy,
    StrategyOptions,
    StrategyType,
    WorkerOutcome,
    parse_strategy,
)
from .task import (
    CollaborationContext,
    ParallelContext,
    PipelineContext,
    Task,
    WorkerResult,
    result_field,
)

logger = structlog.get_logger()


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000


def _succeeded(result: Any) -> bool:
    return result_field(result, "success", True) is not False


def _strategy_tag(strategy: Any) -> Any:
    """Type tag of a descriptor or raw mapping, as a plain string where possible."""
    if isinstance(strategy, Mapping):
        tag = strategy.get("type")
    else:
        tag = getattr(strategy, "type", None)
    return tag.value if isinstance(tag, StrategyType) else tag


class StrategyExecutor:
    """Applies registry workers to a task under a strategy descriptor.

    Every worker the executor marks busy is returned to ``idle`` when its
    call settles successfully and to ``error`` when it raises, times out or
    is cancelled. Per-call timeouts use ``asyncio.wait_for``, which cancels
    the worker coroutine when the timer fires.
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        settings: Settings | None = None,
        detector: ConvergenceDetector | None = None,
    ):
        self.registry = registry
        self.settings = settings or registry.settings
        self.detector = detector or ConvergenceDetector(
            stability_threshold=self.settings.stability_threshold,
            convergence_ratio=self.settings.convergence_ratio,
        )

    async def execute_strategy(
        self,
        strategy: Strategy | Mapping[str, Any],
        task_id: str,
        task: Task | Mapping[str, Any],
        options: StrategyOptions | None = None,
    ) -> ExecutionResult:
        """Run task_id under strategy and return the strategy-tagged result.

        Errors escaping this method carry ``strategy`` and
        ``execution_time_ms`` when they are OrchestrationErrors.
        """
        start = time.monotonic()
        strategy_type = _strategy_tag(strategy)
        log = logger.bind(strategy=strategy_type, task_id=task_id)
        log.info("Executing strategy")

        try:
            if isinstance(strategy, Mapping):
                strategy = parse_strategy(dict(strategy))
            if not isinstance(task, Task):
                task = Task.model_validate(task)
            opts = strategy.options.merged(options)
            result = await self._dispatch(strategy, task_id, task, opts)
        except Exception as e:
            duration = _elapsed_ms(start)
            if isinstance(e, OrchestrationError):
                e.strategy = strategy_type
                e.execution_time_ms = duration
            log.error("Strategy failed", duration_ms=round(duration, 2), error=str(e))
            raise

        result.execution_time_ms = _elapsed_ms(start)
        log.info("Strategy completed", duration_ms=round(result.execution_time_ms, 2))
        return result

    async def _dispatch(
        self,
        strategy: Strategy,
        task_id: str,
        task: Task,
        opts: StrategyOptions,
    ) -> ExecutionResult:
        match strategy:
            case SingleStrategy():
                return await self._execute_single(strategy, task_id, task, opts)
            case PipelineStrategy():
                return await self._execute_pipeline(strategy, task_id, task, opts)
            case ConsensusStrategy():
                return await self._execute_consensus(strategy, task_id, task, opts)
            case CollaborativeStrategy():
                return await self._execute_collaborative(strategy, task_id, task, opts)
            case ParallelStrategy():
                return await self._execute_parallel(strategy, task_id, task, opts)
            case FallbackStrategy():
                return await self._execute_fallback(strategy, task_id, task, opts)
            case _:
                raise UnknownStrategyError(getattr(strategy, "type", strategy))

    # === Worker handling ===

    def _timeout_ms(self, strategy_type: StrategyType, opts: StrategyOptions) -> float:
        """Strategy-specific option, then the generic timeout, then the setting."""
        match strategy_type:
            case StrategyType.SINGLE:
                specific, default = None, self.settings.single_timeout_ms
            case StrategyType.PIPELINE:
                specific, default = opts.step_timeout, self.settings.pipeline_step_timeout_ms
            case StrategyType.COLLABORATIVE_SESSION:
                specific, default = opts.step_timeout, self.settings.collaboration_step_timeout_ms
            case StrategyType.CASCADING_FALLBACK:
                specific, default = opts.agent_timeout, self.settings.fallback_timeout_ms
            case _:
                specific, default = opts.agent_timeout, self.settings.ensemble_timeout_ms
        return specific or opts.timeout or default

    def _acquire(self, worker_id: str) -> WorkerRecord:
        """Look up a worker that must exist and be idle."""
        record = self.registry.get_worker(worker_id)
        if record is None:
            raise WorkerNotFoundError(worker_id)
        if not record.is_idle:
            raise WorkerUnavailableError(worker_id, record.status)
        return record

    @contextmanager
    def _lease(self, worker_id: str, task_id: str) -> Iterator[None]:
        """Hold a worker busy; release to idle on success, error otherwise."""
        self.registry.update_status(worker_id, WorkerStatus.BUSY, task_id)
        leased = self.registry.get_worker(worker_id)
        succeeded = False
        try:
            yield
            succeeded = True
        finally:
            # Release only the record this lease marked busy
            record = self.registry.get_worker(worker_id)
            if record is not None and record is leased and record.status == WorkerStatus.BUSY:
                self.registry.update_status(
                    worker_id,
                    WorkerStatus.IDLE if succeeded else WorkerStatus.ERROR,
                )

    async def _invoke(
        self,
        record: WorkerRecord,
        task: Task,
        timeout_ms: float,
    ) -> tuple[WorkerResult, float]:
        """Call the worker under the per-call timeout; returns (result, duration_ms)."""
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(record.worker.execute(task), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise WorkerTimeoutError(record.id, timeout_ms) from e
        except Exception as e:
            raise WorkerExecutionError(record.id, e) from e
        return result, _elapsed_ms(start)

    async def _settle(
        self,
        record: WorkerRecord,
        task_id: str,
        task: Task,
        timeout_ms: float,
        semaphore: asyncio.Semaphore,
        index: int | None = None,
    ) -> WorkerOutcome:
        """Run one fan-out call and report its outcome instead of raising."""
        worker_id = record.id
        if not record.is_idle:
            error = WorkerUnavailableError(worker_id, record.status)
            logger.warning("Worker unavailable, skipping call", worker_id=worker_id, status=record.status.value)
            return WorkerOutcome(
                worker_id=worker_id, success=False, error=str(error), exception=error, index=index,
            )

        try:
            with self._lease(worker_id, task_id):
                async with semaphore:
                    result, duration = await self._invoke(record, task, timeout_ms)
        except OrchestrationError as e:
            logger.warning("Worker call failed", worker_id=worker_id, task_id=task_id, error=str(e))
            return WorkerOutcome(
                worker_id=worker_id, success=False, error=str(e), exception=e, index=index,
            )

        self.registry.record_task_completion(worker_id, task_id, result, duration)
        return WorkerOutcome(
            worker_id=worker_id, success=True, result=result, duration_ms=duration, index=index,
        )

    # === Strategies ===

    async def _execute_single(
        self,
        strategy: SingleStrategy,
        task_id: str,
        task: Task,
        opts: StrategyOptions,
    ) -> SingleResult:
        worker_id = strategy.worker
        record = self._acquire(worker_id)
        timeout_ms = self._timeout_ms(StrategyType.SINGLE, opts)

        with self._lease(worker_id, task_id):
            result, duration = await self._invoke(record, task, timeout_ms)

        self.registry.record_task_completion(worker_id, task_id, result, duration)
        return SingleResult(worker_id=worker_id, result=result, success=_succeeded(result))

    async def _execute_pipeline(
        self,
        strategy: PipelineStrategy,
        task_id: str,
        task: Task,
        opts: StrategyOptions,
    ) -> PipelineResult:
        """Sequential steps; the first failure stops the pipeline."""
        pipeline = list(strategy.workers)
        total = len(pipeline)
        timeout_ms = self._timeout_ms(StrategyType.PIPELINE, opts)
        steps: list[PipelineStep] = []
        current = task

        for index, worker_id in enumerate(pipeline):
            step = index + 1
            logger.info("Pipeline step", task_id=task_id, step=step, total_steps=total, worker_id=worker_id)

            try:
                record = self._acquire(worker_id)
                with self._lease(worker_id, task_id):
                    result, duration = await self._invoke(record, current, timeout_ms)
            except OrchestrationError as e:
                raise PipelineStepError(step, worker_id, e) from e

            self.registry.record_task_completion(worker_id, task_id, result, duration)
            steps.append(PipelineStep(worker_id=worker_id, step=step, result=result, duration_ms=duration))

            current = task.model_copy(update={
                "previous_result": result,
                "pipeline_context": PipelineContext(
                    step=step,
                    total_steps=total,
                    previous_results=list(steps),
                ),
            })

        return PipelineResult(
            pipeline=pipeline,
            steps=steps,
            final_result=steps[-1].result if steps else None,
            total_steps=len(steps),
        )

    async def _execute_consensus(
        self,
        strategy: ConsensusStrategy,
        task_id: str,
        task: Task,
        opts: StrategyOptions,
    ) -> ConsensusResult:
        """Same task to every worker; wait for all of them to settle."""
        timeout_ms = self._timeout_ms(StrategyType.CONSENSUS_ENSEMBLE, opts)
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_workers)
        logger.info("Running consensus ensemble", task_id=task_id, workers=len(strategy.workers))

        calls = []
        for worker_id in strategy.workers:
            record = self.registry.get_worker(worker_id)
            if record is None:
                logger.warning("Worker not found, skipping", worker_id=worker_id, task_id=task_id)
                continue
            calls.append(self._settle(record, task_id, task, timeout_ms, semaphore))

        outcomes = list(await asyncio.gather(*calls))
        successful = [o for o in outcomes if o.success]

        if not successful:
            raise AggregateFailureError(
                "All workers failed in consensus ensemble",
                [o.exception for o in outcomes if o.exception is not None],
            )

        return ConsensusResult(
            participants=list(strategy.workers),
            results=outcomes,
            successful_results=successful,
        )

    async def _execute_collaborative(
        self,
        strategy: CollaborativeStrategy,
        task_id: str,
        task: Task,
        opts: StrategyOptions,
    ) -> CollaborativeResult:
        """Rounds of sequential contributions until results stabilize.

        A collaborator that fails is skipped for that round only: the
        session resets it from error before the next round.
        """
        participants = list(strategy.workers)
        max_iterations = opts.max_iterations or self.settings.max_iterations
        timeout_ms = self._timeout_ms(StrategyType.COLLABORATIVE_SESSION, opts)

        shared_context: dict[str, Any] = {}
        contributions: list[Contribution] = []
        failures: list[WorkerOutcome] = []
        failed_last_round: set[str] = set()
        convergence = ConvergenceCheck(converged=False, reason="No rounds completed")
        iteration = 0

        logger.info("Starting collaborative session", task_id=task_id, participants=len(participants))

        while iteration < max_iterations:
            iteration += 1
            logger.info("Collaboration round", task_id=task_id, iteration=iteration, max_iterations=max_iterations)

            for worker_id in participants:
                record = self.registry.get_worker(worker_id)
                if record is None:
                    logger.warning("Collaborator not registered, skipping round", worker_id=worker_id)
                    continue
                if worker_id in failed_last_round and record.status == WorkerStatus.ERROR:
                    self.registry.reset_worker(worker_id)
                failed_last_round.discard(worker_id)
                if not record.is_idle:
                    logger.warning(
                        "Collaborator unavailable, skipping round",
                        worker_id=worker_id,
                        status=record.status.value,
                    )
                    continue

                round_task = task.model_copy(update={
                    "collaboration": CollaborationContext(
                        session_id=task_id,
                        iteration=iteration,
                        max_iterations=max_iterations,
                        shared_context=dict(shared_context),
                        previous_results=[c for c in contributions if c.iteration < iteration],
                        participants=participants,
                    ),
                })

                try:
                    with self._lease(worker_id, task_id):
                        result, duration = await self._invoke(record, round_task, timeout_ms)
                except OrchestrationError as e:
                    logger.warning(
                        "Collaborator failed",
                        worker_id=worker_id,
                        iteration=iteration,
                        error=str(e),
                    )
                    failed_last_round.add(worker_id)
                    failures.append(WorkerOutcome(
                        worker_id=worker_id, success=False, error=str(e), exception=e, index=iteration,
                    ))
                    continue

                contributions.append(Contribution(
                    worker_id=worker_id, iteration=iteration, result=result, duration_ms=duration,
                ))
                shared_updates = result_field(result, "shared_updates")
                if shared_updates:
                    shared_context.update(shared_updates)
                self.registry.record_task_completion(worker_id, task_id, result, duration)

            convergence = self.detector.check(contributions, iteration)
            if convergence.converged:
                logger.info("Collaboration converged", task_id=task_id, iteration=iteration)
                break

        if not contributions:
            raise AggregateFailureError(
                "Every collaborator failed in collaborative session",
                [f.exception for f in failures if f.exception is not None],
            )

        return CollaborativeResult(
            session_id=task_id,
            iterations=iteration,
            results=contributions,
            shared_context=dict(shared_context),
            convergence=convergence,
            final_consensus=self.detector.build_consensus(contributions),
            failures=failures,
        )

    async def _execute_parallel(
        self,
        strategy: ParallelStrategy,
        task_id: str,
        task: Task,
        opts: StrategyOptions,
    ) -> ParallelResult:
        """Independent calls, each told its slot; partial failure is reported, not raised."""
        workers = list(strategy.workers)
        total = len(workers)
        timeout_ms = self._timeout_ms(StrategyType.PARALLEL_EXECUTION, opts)
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_workers)
        logger.info("Executing in parallel", task_id=task_id, workers=total)

        calls = []
        for index, worker_id in enumerate(workers):
            record = self.registry.get_worker(worker_id)
            if record is None:
                logger.warning("Worker not found, skipping", worker_id=worker_id, task_id=task_id)
                continue
            slot_task = task.model_copy(update={
                "parallel": ParallelContext(index=index, total=total, worker_id=worker_id),
            })
            calls.append(self._settle(record, task_id, slot_task, timeout_ms, semaphore, index=index))

        outcomes = sorted(await asyncio.gather(*calls), key=lambda o: o.index or 0)
        success_count = sum(1 for o in outcomes if o.success)

        if outcomes and not success_count:
            raise AggregateFailureError(
                "All workers failed in parallel execution",
                [o.exception for o in outcomes if o.exception is not None],
            )

        return ParallelResult(
            workers=workers,
            results=outcomes,
            success_count=success_count,
            failure_count=len(outcomes) - success_count,
        )

    async def _execute_fallback(
        self,
        strategy: FallbackStrategy,
        task_id: str,
        task: Task,
        opts: StrategyOptions,
    ) -> FallbackResult:
        """Try workers in order; missing or non-idle workers are skipped."""
        timeout_ms = self._timeout_ms(StrategyType.CASCADING_FALLBACK, opts)
        attempted: list[str] = []
        errors: list[OrchestrationError] = []

        for worker_id in strategy.workers:
            record = self.registry.get_worker(worker_id)
            if record is None:
                logger.warning("Worker not found, trying next", worker_id=worker_id, task_id=task_id)
                continue
            if not record.is_idle:
                logger.warning("Worker not idle, trying next", worker_id=worker_id, status=record.status.value)
                continue

            attempted.append(worker_id)
            logger.info("Fallback attempt", task_id=task_id, attempt=len(attempted), worker_id=worker_id)

            try:
                with self._lease(worker_id, task_id):
                    result, duration = await self._invoke(record, task, timeout_ms)
            except OrchestrationError as e:
                logger.warning("Fallback worker failed", worker_id=worker_id, error=str(e))
                errors.append(e)
                continue

            self.registry.record_task_completion(worker_id, task_id, result, duration)
            logger.info("Fallback succeeded", task_id=task_id, worker_id=worker_id)
            return FallbackResult(
                successful_worker=worker_id,
                attempt_number=len(attempted),
                result=result,
                fallback_chain=list(attempted),
                errors=[str(e) for e in errors],
            )

        if not attempted:
            raise AggregateFailureError("No workers available for fallback execution")
        raise AggregateFailureError(f"All fallback workers failed. Last error: {errors[-1]}", errors)
