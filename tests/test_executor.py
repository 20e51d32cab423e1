"""Tests for the strategy executor."""

import asyncio

import pytest
from pydantic import ValidationError

from src.agents.base import BaseWorker
from src.coordination.registry import WorkerRegistry
from src.orchestrator.config import Settings
from src.orchestrator.errors import (
    AggregateFailureError,
    PipelineStepError,
    UnknownStrategyError,
    WorkerExecutionError,
    WorkerNotFoundError,
    WorkerTimeoutError,
    WorkerUnavailableError,
)
from src.orchestrator.executor import StrategyExecutor
from src.orchestrator.state_machine import WorkerStatus
from src.orchestrator.strategies import (
    CollaborativeStrategy,
    ConsensusStrategy,
    FallbackStrategy,
    ParallelStrategy,
    PipelineStrategy,
    SingleStrategy,
    StrategyOptions,
    StrategyType,
    parse_strategy,
)
from tests.fakes import FakeWorker


def status(registry, worker_id):
    return registry.get_worker(worker_id).status


class MappingWorker(BaseWorker):
    """Worker that returns a plain dict instead of a WorkerResult."""

    def __init__(self, result):
        super().__init__()
        self.result = result

    @property
    def worker_type(self) -> str:
        return "mapping"

    async def execute(self, task):
        return dict(self.result)


class TestSingle:
    """Test single-worker execution."""

    @pytest.mark.asyncio
    async def test_success_releases_worker(self, registry, executor, task):
        """A successful call returns the result and frees the worker."""
        worker = FakeWorker(output="looks good", confidence=0.9)
        registry.register("a", worker)

        result = await executor.execute_strategy(SingleStrategy(worker="a"), "t1", task)

        assert result.strategy == StrategyType.SINGLE
        assert result.worker_id == "a"
        assert result.success
        assert result.result.output == "looks good"
        assert result.execution_time_ms >= 0
        assert status(registry, "a") == WorkerStatus.IDLE
        assert registry.get_worker("a").performance.tasks_completed == 1
        assert worker.calls[0].description == task.description

    @pytest.mark.asyncio
    async def test_missing_worker(self, executor, task):
        """Unknown worker ids fail with the strategy and timing attached."""
        with pytest.raises(WorkerNotFoundError) as exc_info:
            await executor.execute_strategy(SingleStrategy(worker="ghost"), "t1", task)
        assert exc_info.value.strategy == "single"
        assert exc_info.value.execution_time_ms is not None

    @pytest.mark.asyncio
    async def test_busy_worker(self, registry, executor, task):
        """A busy worker is refused without touching its current task."""
        registry.register("a", FakeWorker())
        registry.update_status("a", WorkerStatus.BUSY, "other")

        with pytest.raises(WorkerUnavailableError):
            await executor.execute_strategy(SingleStrategy(worker="a"), "t1", task)
        assert registry.get_worker("a").current_task == "other"

    @pytest.mark.asyncio
    async def test_failure_marks_error(self, registry, executor, task):
        """A raising worker ends in error and records no completion."""
        registry.register("a", FakeWorker(fail=True))

        with pytest.raises(WorkerExecutionError) as exc_info:
            await executor.execute_strategy(SingleStrategy(worker="a"), "t1", task)

        assert isinstance(exc_info.value.cause, RuntimeError)
        assert status(registry, "a") == WorkerStatus.ERROR
        assert registry.get_worker("a").performance.tasks_completed == 0

    @pytest.mark.asyncio
    async def test_timeout_marks_error(self, registry, executor, task):
        """A worker that outlives its timeout is cancelled and marked error."""
        registry.register("a", FakeWorker(delay=1.0))
        strategy = SingleStrategy(worker="a", options=StrategyOptions(timeout=20))

        with pytest.raises(WorkerTimeoutError) as exc_info:
            await executor.execute_strategy(strategy, "t1", task)

        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.timeout_ms == 20
        assert status(registry, "a") == WorkerStatus.ERROR

    @pytest.mark.asyncio
    async def test_call_options_override_descriptor(self, registry, executor, task):
        """Per-call options win over descriptor options."""
        registry.register("a", FakeWorker(delay=1.0))
        strategy = SingleStrategy(worker="a", options=StrategyOptions(timeout=60000))

        with pytest.raises(WorkerTimeoutError):
            await executor.execute_strategy(strategy, "t1", task, StrategyOptions(timeout=20))

    @pytest.mark.asyncio
    async def test_descriptor_from_mapping(self, registry, executor):
        """Plain mappings are accepted for both strategy and task."""
        registry.register("a", FakeWorker(output="done"))

        result = await executor.execute_strategy(
            {"type": "single", "worker": "a"}, "t1", {"description": "Say hi"}
        )

        assert result.result.output == "done"

    @pytest.mark.asyncio
    async def test_unknown_strategy(self, executor, task):
        """An unknown tag fails with the tag and timing attached."""
        with pytest.raises(UnknownStrategyError) as exc_info:
            await executor.execute_strategy({"type": "round_robin", "workers": []}, "t1", task)

        assert exc_info.value.strategy_type == "round_robin"
        assert exc_info.value.strategy == "round_robin"
        assert exc_info.value.execution_time_ms is not None

    @pytest.mark.asyncio
    async def test_invalid_task_leases_nothing(self, registry, executor):
        """A task mapping that fails validation is rejected before any lease."""
        registry.register("a", FakeWorker())

        with pytest.raises(ValidationError):
            await executor.execute_strategy(
                {"type": "single", "worker": "a"}, "t1", {"requirements": "not-a-list"}
            )
        assert status(registry, "a") == WorkerStatus.IDLE

    @pytest.mark.asyncio
    async def test_duration_is_measured(self, registry, executor, task):
        """Recorded durations reflect how long the worker actually ran."""
        registry.register("a", FakeWorker(delay=0.05))

        result = await executor.execute_strategy(SingleStrategy(worker="a"), "t1", task)

        assert registry.get_worker("a").performance.average_time_ms >= 40
        assert result.execution_time_ms >= 40

    @pytest.mark.asyncio
    async def test_reregistered_worker_keeps_its_status(self, registry, executor, task):
        """A call on a replaced record does not release the new record."""
        registry.register("a", FakeWorker(delay=0.05))
        first = asyncio.create_task(
            executor.execute_strategy(SingleStrategy(worker="a"), "t1", task)
        )
        await asyncio.sleep(0.01)

        registry.register("a", FakeWorker(delay=0.3))
        second = asyncio.create_task(
            executor.execute_strategy(SingleStrategy(worker="a"), "t2", task)
        )
        await asyncio.sleep(0.01)

        await first
        assert status(registry, "a") == WorkerStatus.BUSY
        assert registry.get_worker("a").current_task == "t2"

        await second
        assert status(registry, "a") == WorkerStatus.IDLE

    def test_invalid_descriptor(self):
        """A descriptor missing required fields is rejected."""
        with pytest.raises(ValueError):
            parse_strategy({"type": "single"})


class TestPipeline:
    """Test sequential pipelines."""

    @pytest.mark.asyncio
    async def test_steps_see_previous_result(self, registry, executor, task):
        """Each step receives the previous result and its pipeline position."""
        first = FakeWorker(output="draft")
        second = FakeWorker(output="final")
        registry.register("a", first)
        registry.register("b", second)

        result = await executor.execute_strategy(PipelineStrategy(workers=["a", "b"]), "t1", task)

        assert result.total_steps == 2
        assert [s.worker_id for s in result.steps] == ["a", "b"]
        assert [s.step for s in result.steps] == [1, 2]
        assert result.final_result.output == "final"

        handed_over = second.calls[0]
        assert handed_over.previous_result.output == "draft"
        assert handed_over.pipeline_context.step == 1
        assert handed_over.pipeline_context.total_steps == 2
        assert first.calls[0].pipeline_context is None

    @pytest.mark.asyncio
    async def test_failure_stops_pipeline(self, registry, executor, task):
        """The first failing step aborts the rest of the pipeline."""
        first = FakeWorker()
        broken = FakeWorker(fail=True)
        never = FakeWorker()
        registry.register("a", first)
        registry.register("b", broken)
        registry.register("c", never)

        with pytest.raises(PipelineStepError) as exc_info:
            await executor.execute_strategy(PipelineStrategy(workers=["a", "b", "c"]), "t1", task)

        error = exc_info.value
        assert error.step == 2
        assert error.worker_id == "b"
        assert error.strategy == "pipeline"
        assert never.calls == []
        assert registry.get_worker("a").performance.tasks_completed == 1
        assert status(registry, "a") == WorkerStatus.IDLE
        assert status(registry, "b") == WorkerStatus.ERROR
        assert status(registry, "c") == WorkerStatus.IDLE

    @pytest.mark.asyncio
    async def test_missing_step_worker(self, registry, executor, task):
        """A missing step worker is reported as that step's failure."""
        registry.register("a", FakeWorker())

        with pytest.raises(PipelineStepError) as exc_info:
            await executor.execute_strategy(PipelineStrategy(workers=["a", "ghost"]), "t1", task)

        assert isinstance(exc_info.value.cause, WorkerNotFoundError)

    @pytest.mark.asyncio
    async def test_step_durations(self, registry, executor, task):
        """Each step records the time its worker took."""
        registry.register("a", FakeWorker(delay=0.05))
        registry.register("b", FakeWorker())

        result = await executor.execute_strategy(PipelineStrategy(workers=["a", "b"]), "t1", task)

        assert result.steps[0].duration_ms >= 40
        assert result.steps[1].duration_ms < result.steps[0].duration_ms


class TestConsensus:
    """Test consensus ensembles."""

    @pytest.mark.asyncio
    async def test_partial_failure(self, registry, executor, task):
        """Failed members are reported alongside the successful ones."""
        registry.register("a", FakeWorker(output="yes"))
        registry.register("b", FakeWorker(fail=True))
        registry.register("c", FakeWorker(output="yes"))

        result = await executor.execute_strategy(
            ConsensusStrategy(workers=["a", "b", "c"]), "t1", task
        )

        assert len(result.results) == 3
        assert [o.worker_id for o in result.successful_results] == ["a", "c"]
        assert [o.worker_id for o in result.failures] == ["b"]
        assert result.consensus_ready
        assert status(registry, "b") == WorkerStatus.ERROR
        assert status(registry, "a") == WorkerStatus.IDLE

    @pytest.mark.asyncio
    async def test_missing_and_busy_workers(self, registry, executor, task):
        """Missing workers are skipped and busy ones recorded as failures."""
        registry.register("a", FakeWorker())
        registry.register("busy", FakeWorker())
        registry.update_status("busy", WorkerStatus.BUSY, "other")

        result = await executor.execute_strategy(
            ConsensusStrategy(workers=["a", "ghost", "busy"]), "t1", task
        )

        assert [o.worker_id for o in result.results] == ["a", "busy"]
        assert "not idle" in result.failures[0].error
        assert status(registry, "busy") == WorkerStatus.BUSY

    @pytest.mark.asyncio
    async def test_all_fail(self, registry, executor, task):
        """Every member failing raises an aggregate error."""
        registry.register("a", FakeWorker(fail=True))
        registry.register("b", FakeWorker(fail=True))

        with pytest.raises(AggregateFailureError) as exc_info:
            await executor.execute_strategy(ConsensusStrategy(workers=["a", "b"]), "t1", task)

        assert len(exc_info.value.errors) == 2
        assert exc_info.value.strategy == "consensus_ensemble"

    @pytest.mark.asyncio
    async def test_outcome_durations(self, registry, executor, task):
        """Each outcome records its own worker's elapsed time."""
        registry.register("a", FakeWorker(delay=0.05))
        registry.register("b", FakeWorker())

        result = await executor.execute_strategy(ConsensusStrategy(workers=["a", "b"]), "t1", task)

        durations = {o.worker_id: o.duration_ms for o in result.results}
        assert durations["a"] >= 40
        assert durations["b"] < durations["a"]

    @pytest.mark.asyncio
    async def test_slow_member_times_out(self, registry, executor, task):
        """A member that exceeds agent_timeout fails alone; the rest are returned."""
        registry.register("slow", FakeWorker(delay=1.0))
        registry.register("fast", FakeWorker(output="quick"))
        strategy = ConsensusStrategy(
            workers=["slow", "fast"], options=StrategyOptions(agent_timeout=20)
        )

        result = await executor.execute_strategy(strategy, "t1", task)

        assert [o.worker_id for o in result.successful_results] == ["fast"]
        assert result.successful_results[0].result.output == "quick"
        assert isinstance(result.failures[0].exception, WorkerTimeoutError)
        assert status(registry, "slow") == WorkerStatus.ERROR
        assert status(registry, "fast") == WorkerStatus.IDLE


class TestCollaborative:
    """Test iterative collaboration sessions."""

    @pytest.mark.asyncio
    async def test_stable_results_converge(self, registry, executor, task):
        """Unchanged results across two rounds end the session."""
        registry.register("a", FakeWorker(output="same answer", confidence=0.8))
        registry.register("b", FakeWorker(output="other answer", confidence=0.7))

        result = await executor.execute_strategy(
            CollaborativeStrategy(workers=["a", "b"]), "t1", task
        )

        assert result.converged
        assert result.iterations == 2
        assert len(result.results) == 4
        assert result.final_consensus.iteration == 2
        assert result.final_consensus.highest_confidence_result.worker_id == "a"

    @pytest.mark.asyncio
    async def test_stops_at_max_iterations(self, registry, executor, task):
        """Drifting results run until the iteration cap."""
        drifting = FakeWorker(outputs=["aaaa", "bbbb", "cccc", "dddd", "eeee"])
        registry.register("a", drifting)

        result = await executor.execute_strategy(
            CollaborativeStrategy(workers=["a"], options=StrategyOptions(max_iterations=3)),
            "t1",
            task,
        )

        assert not result.converged
        assert result.iterations == 3
        assert len(drifting.calls) == 3
        assert [c.collaboration.iteration for c in drifting.calls] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_shared_context_and_history(self, registry, executor, task):
        """Collaborators see shared notes and earlier rounds."""
        planner = FakeWorker(output="plan", shared_updates={"approach": "cache"})
        reviewer = FakeWorker(output="review")
        registry.register("a", planner)
        registry.register("b", reviewer)

        result = await executor.execute_strategy(
            CollaborativeStrategy(workers=["a", "b"]), "t1", task
        )

        first_call = reviewer.calls[0].collaboration
        assert first_call.shared_context == {"approach": "cache"}
        assert first_call.previous_results == []
        assert first_call.participants == ["a", "b"]
        assert first_call.session_id == "t1"

        second_call = planner.calls[1].collaboration
        assert [c.worker_id for c in second_call.previous_results] == ["a", "b"]
        assert result.shared_context == {"approach": "cache"}

    @pytest.mark.asyncio
    async def test_failed_collaborator_skips_round(self, registry, executor, task):
        """A failing collaborator is retried next round while others continue."""
        registry.register("a", FakeWorker(output="steady", confidence=0.9))
        flaky = FakeWorker(fail=True)
        registry.register("b", flaky)

        result = await executor.execute_strategy(
            CollaborativeStrategy(workers=["a", "b"]), "t1", task
        )

        assert result.converged
        assert len(flaky.calls) == 2
        assert len(result.failures) == 2
        assert all(c.worker_id == "a" for c in result.results)

    @pytest.mark.asyncio
    async def test_slow_collaborator_times_out(self, registry, executor, task):
        """A collaborator that exceeds step_timeout is dropped from that round."""
        registry.register("slow", FakeWorker(delay=1.0))
        registry.register("fast", FakeWorker(output="steady", confidence=0.9))
        strategy = CollaborativeStrategy(
            workers=["slow", "fast"], options=StrategyOptions(step_timeout=20)
        )

        result = await executor.execute_strategy(strategy, "t1", task)

        assert result.converged
        assert all(c.worker_id == "fast" for c in result.results)
        assert len(result.failures) == 2
        assert all(isinstance(f.exception, WorkerTimeoutError) for f in result.failures)
        assert status(registry, "slow") == WorkerStatus.ERROR
        assert status(registry, "fast") == WorkerStatus.IDLE

    @pytest.mark.asyncio
    async def test_mapping_results_share_context(self, registry, executor, task):
        """Workers returning plain mappings still publish shared notes."""
        registry.register("a", MappingWorker({"output": "plan", "shared_updates": {"approach": "cache"}}))
        reviewer = FakeWorker(output="review")
        registry.register("b", reviewer)

        result = await executor.execute_strategy(
            CollaborativeStrategy(workers=["a", "b"]), "t1", task
        )

        assert reviewer.calls[0].collaboration.shared_context == {"approach": "cache"}
        assert result.shared_context == {"approach": "cache"}

    @pytest.mark.asyncio
    async def test_every_collaborator_fails(self, registry, executor, task):
        """A session with no successful contribution raises."""
        registry.register("a", FakeWorker(fail=True))

        with pytest.raises(AggregateFailureError):
            await executor.execute_strategy(
                CollaborativeStrategy(workers=["a"], options=StrategyOptions(max_iterations=2)),
                "t1",
                task,
            )


class TestParallel:
    """Test independent parallel execution."""

    @pytest.mark.asyncio
    async def test_slots_and_counts(self, registry, executor, task):
        """Each call learns its slot; successes and failures are counted."""
        workers = {wid: FakeWorker(output=wid) for wid in ("a", "b")}
        workers["c"] = FakeWorker(fail=True)
        for wid, worker in workers.items():
            registry.register(wid, worker)

        result = await executor.execute_strategy(
            ParallelStrategy(workers=["a", "b", "c"]), "t1", task
        )

        assert result.success_count == 2
        assert result.failure_count == 1
        assert [o.index for o in result.results] == [0, 1, 2]
        slot = workers["b"].calls[0].parallel
        assert (slot.index, slot.total, slot.worker_id) == (1, 3, "b")

    @pytest.mark.asyncio
    async def test_all_fail(self, registry, executor, task):
        """Every member failing raises an aggregate error."""
        registry.register("a", FakeWorker(fail=True))

        with pytest.raises(AggregateFailureError):
            await executor.execute_strategy(ParallelStrategy(workers=["a"]), "t1", task)

    @pytest.mark.asyncio
    async def test_no_attempts(self, executor, task):
        """No registered workers yields an empty result rather than an error."""
        result = await executor.execute_strategy(ParallelStrategy(workers=["ghost"]), "t1", task)
        assert result.results == []
        assert result.success_count == 0

    @pytest.mark.asyncio
    async def test_width_is_bounded(self, task):
        """Concurrent calls never exceed max_concurrent_workers."""
        registry = WorkerRegistry(Settings(max_concurrent_workers=2))
        executor = StrategyExecutor(registry)
        in_flight = {"active": 0, "peak": 0}
        ids = [f"w{i}" for i in range(5)]
        for wid in ids:
            registry.register(wid, FakeWorker(delay=0.01, in_flight=in_flight))

        result = await executor.execute_strategy(ParallelStrategy(workers=ids), "t1", task)

        assert result.success_count == 5
        assert in_flight["peak"] <= 2

    @pytest.mark.asyncio
    async def test_slow_slot_times_out(self, registry, executor, task):
        """A slot that exceeds agent_timeout fails alone; the others are returned."""
        registry.register("fast", FakeWorker(output="quick"))
        registry.register("slow", FakeWorker(delay=1.0))
        strategy = ParallelStrategy(
            workers=["fast", "slow"], options=StrategyOptions(agent_timeout=20)
        )

        result = await executor.execute_strategy(strategy, "t1", task)

        assert (result.success_count, result.failure_count) == (1, 1)
        assert result.results[0].result.output == "quick"
        assert isinstance(result.results[1].exception, WorkerTimeoutError)
        assert status(registry, "slow") == WorkerStatus.ERROR
        assert status(registry, "fast") == WorkerStatus.IDLE


class TestFallback:
    """Test cascading fallback."""

    @pytest.mark.asyncio
    async def test_skips_busy_and_failed(self, registry, executor, task):
        """Busy workers are skipped and failed ones move the chain along."""
        registry.register("a", FakeWorker(fail=True))
        registry.register("b", FakeWorker())
        last = FakeWorker(output="rescued")
        registry.register("c", last)
        registry.update_status("b", WorkerStatus.BUSY, "other")

        result = await executor.execute_strategy(
            FallbackStrategy(workers=["a", "b", "c"]), "t1", task
        )

        assert result.successful_worker == "c"
        assert result.fallback_chain == ["a", "c"]
        assert result.attempt_number == 2
        assert result.result.output == "rescued"
        assert len(result.errors) == 1
        assert status(registry, "a") == WorkerStatus.ERROR

    @pytest.mark.asyncio
    async def test_stops_at_first_success(self, registry, executor, task):
        """Later workers are not called once one succeeds."""
        spare = FakeWorker()
        registry.register("a", FakeWorker())
        registry.register("b", spare)

        result = await executor.execute_strategy(FallbackStrategy(workers=["a", "b"]), "t1", task)

        assert result.successful_worker == "a"
        assert spare.calls == []

    @pytest.mark.asyncio
    async def test_all_fail(self, registry, executor, task):
        """Every member failing raises an aggregate error."""
        registry.register("a", FakeWorker(fail=True))
        registry.register("b", FakeWorker(fail=True))

        with pytest.raises(AggregateFailureError) as exc_info:
            await executor.execute_strategy(FallbackStrategy(workers=["a", "b"]), "t1", task)

        assert len(exc_info.value.errors) == 2

    @pytest.mark.asyncio
    async def test_none_available(self, executor, task):
        """A chain with no usable worker raises with no collected errors."""
        with pytest.raises(AggregateFailureError) as exc_info:
            await executor.execute_strategy(FallbackStrategy(workers=["ghost"]), "t1", task)
        assert exc_info.value.errors == []
