"""Task router - picks an execution strategy per task and learns from outcomes."""

import time
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any

import structlog

from src.coordination.records import WorkerRecord, utc_now
from src.coordination.registry import (
    WorkerRegistry,
    extract_task_capabilities,
    identify_task_domain,
)

from .config import Settings
from .errors import NoAvailableWorkersError, OrchestrationError
from .executor import StrategyExecutor
from .strategies import (
    CollaborativeStrategy,
    ConsensusStrategy,
    ExecutionResult,
    FallbackStrategy,
    ParallelStrategy,
    PipelineStrategy,
    SingleStrategy,
    Strategy,
    StrategyType,
)
from .task import Task

logger = structlog.get_logger()

# Registry domain -> routing domain
ROUTING_DOMAINS = {
    "code": "code_analysis",
    "architecture": "architecture_design",
    "security": "security_analysis",
    "performance": "performance_optimization",
    "testing": "testing",
    "documentation": "documentation",
    "devops": "devops",
}
COMPLEX_DOMAIN = "complex_analysis"
GENERAL_DOMAIN = "general"

PARALLEL_KEYWORDS = ("each", "batch", "multiple", "parallel", "independent")
URGENT_KEYWORDS = ("urgent", "asap", "hotfix", "immediately")
CRITICAL_KEYWORDS = ("critical", "production", "outage")
RISK_KEYWORDS = ("migration", "production", "delete", "payment")

LOW_SUCCESS_RATE = 0.7
SLOW_RESPONSE_MS = 120000
RECENT_ACTIVITY = timedelta(seconds=60)
RECENT_DECISION_LIMIT = 50


@dataclass(frozen=True)
class RoutingRule:
    """Per-domain routing preferences. Thresholds are complexities in [0, 1]."""
    preferred_workers: tuple[str, ...]
    strategy: StrategyType = StrategyType.SINGLE
    fallback_strategy: StrategyType = StrategyType.CASCADING_FALLBACK
    complexity_threshold: float = 0.5
    collaboration_threshold: float = 0.7


DEFAULT_RULE = RoutingRule(preferred_workers=("code_analyst",))

DEFAULT_RULES: dict[str, RoutingRule] = {
    "code_analysis": RoutingRule(
        preferred_workers=("code_analyst", "security"),
        strategy=StrategyType.SINGLE,
        fallback_strategy=StrategyType.CONSENSUS_ENSEMBLE,
        complexity_threshold=0.6,
        collaboration_threshold=0.8,
    ),
    "architecture_design": RoutingRule(
        preferred_workers=("architect",),
        strategy=StrategyType.SINGLE,
        fallback_strategy=StrategyType.COLLABORATIVE_SESSION,
        complexity_threshold=0.5,
        collaboration_threshold=0.7,
    ),
    "security_analysis": RoutingRule(
        preferred_workers=("security", "code_analyst"),
        strategy=StrategyType.CONSENSUS_ENSEMBLE,
        fallback_strategy=StrategyType.PIPELINE,
        complexity_threshold=0.4,
        collaboration_threshold=0.6,
    ),
    "performance_optimization": RoutingRule(
        preferred_workers=("performance", "code_analyst", "architect"),
        strategy=StrategyType.PIPELINE,
        fallback_strategy=StrategyType.COLLABORATIVE_SESSION,
        complexity_threshold=0.6,
        collaboration_threshold=0.8,
    ),
    "testing": RoutingRule(
        preferred_workers=("testing", "code_analyst"),
        strategy=StrategyType.SINGLE,
        fallback_strategy=StrategyType.PARALLEL_EXECUTION,
        complexity_threshold=0.5,
        collaboration_threshold=0.7,
    ),
    "documentation": RoutingRule(
        preferred_workers=("documentation", "architect"),
        strategy=StrategyType.SINGLE,
        fallback_strategy=StrategyType.PIPELINE,
        complexity_threshold=0.4,
        collaboration_threshold=0.6,
    ),
    "devops": RoutingRule(
        preferred_workers=("devops", "security", "performance"),
        strategy=StrategyType.PIPELINE,
        fallback_strategy=StrategyType.COLLABORATIVE_SESSION,
        complexity_threshold=0.7,
        collaboration_threshold=0.8,
    ),
    COMPLEX_DOMAIN: RoutingRule(
        preferred_workers=("code_analyst", "architect", "security", "performance"),
        strategy=StrategyType.COLLABORATIVE_SESSION,
        fallback_strategy=StrategyType.CONSENSUS_ENSEMBLE,
        complexity_threshold=0.8,
        collaboration_threshold=0.9,
    ),
}

ALTERNATIVES: dict[StrategyType, tuple[StrategyType, ...]] = {
    StrategyType.SINGLE: (StrategyType.CONSENSUS_ENSEMBLE, StrategyType.CASCADING_FALLBACK),
    StrategyType.PIPELINE: (StrategyType.COLLABORATIVE_SESSION, StrategyType.CONSENSUS_ENSEMBLE),
    StrategyType.CONSENSUS_ENSEMBLE: (StrategyType.COLLABORATIVE_SESSION, StrategyType.PIPELINE),
    StrategyType.COLLABORATIVE_SESSION: (StrategyType.CONSENSUS_ENSEMBLE, StrategyType.PIPELINE),
    StrategyType.PARALLEL_EXECUTION: (StrategyType.CONSENSUS_ENSEMBLE, StrategyType.SINGLE),
    StrategyType.CASCADING_FALLBACK: (StrategyType.SINGLE, StrategyType.CONSENSUS_ENSEMBLE),
}

MULTI_WORKER_STRATEGIES = {
    StrategyType.PIPELINE: PipelineStrategy,
    StrategyType.CONSENSUS_ENSEMBLE: ConsensusStrategy,
    StrategyType.COLLABORATIVE_SESSION: CollaborativeStrategy,
    StrategyType.PARALLEL_EXECUTION: ParallelStrategy,
    StrategyType.CASCADING_FALLBACK: FallbackStrategy,
}


@dataclass
class TaskAnalysis:
    """Routing inputs derived from a task."""
    domain: str
    complexity: float = 0.5
    capabilities: list[str] = field(default_factory=list)
    collaboration_needed: bool = False
    parallelizable: bool = False
    urgency: str = "normal"  # low | normal | high
    reliability: str = "normal"  # normal | critical
    risk_level: str = "low"  # low | medium | high


@dataclass
class RoutingDecision:
    strategy: StrategyType
    workers: list[str]
    complexity: float
    reason: str | None
    timestamp: float = field(default_factory=time.time)


@dataclass
class StrategyStats:
    """Decisions and outcomes for one (strategy, domain) pair."""
    decisions: int = 0
    attempts: int = 0
    successes: int = 0
    total_duration_ms: float = 0.0
    recent_decisions: deque[RoutingDecision] = field(
        default_factory=lambda: deque(maxlen=RECENT_DECISION_LIMIT)
    )

    @property
    def success_rate(self) -> float | None:
        """None until an outcome is recorded."""
        return self.successes / self.attempts if self.attempts else None

    @property
    def average_duration_ms(self) -> float:
        return self.total_duration_ms / self.attempts if self.attempts else 0.0


@dataclass
class RoutingStatistics:
    total_decisions: int
    strategy_usage: dict[str, int]
    domain_distribution: dict[str, int]
    average_workers_per_task: float
    performance: dict[str, dict[str, Any]]


def workers_of(strategy: Strategy) -> list[str]:
    if isinstance(strategy, SingleStrategy):
        return [strategy.worker]
    return list(strategy.workers)


def build_strategy(strategy_type: StrategyType, workers: list[str], reason: str | None = None) -> Strategy:
    """Descriptor of strategy_type over workers; single uses the first worker."""
    strategy_type = StrategyType(strategy_type)
    if strategy_type == StrategyType.SINGLE:
        return SingleStrategy(worker=workers[0], reason=reason)
    return MULTI_WORKER_STRATEGIES[strategy_type](workers=list(workers), reason=reason)


def estimate_complexity(task: Task, capabilities: list[str]) -> float:
    """Heuristic complexity in [0, 1] from description length and breadth."""
    score = 0.2
    score += min(len(task.description) / 1000, 0.3)
    score += 0.1 * len(task.requirements)
    score += 0.15 * len(capabilities)
    return round(min(score, 1.0), 2)


class TaskRouter:
    """Routes tasks to a strategy over the registry's idle workers.

    Per (strategy, domain) outcome statistics feed back into later decisions:
    a strategy whose recorded success rate for a domain drops below 0.7 is
    swapped for an alternative with a better (or no) record.
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        executor: StrategyExecutor | None = None,
        settings: Settings | None = None,
    ):
        self.registry = registry
        self.settings = settings or registry.settings
        self.executor = executor or StrategyExecutor(registry, self.settings)
        self.rules: dict[str, RoutingRule] = dict(DEFAULT_RULES)
        self._stats: dict[tuple[StrategyType, str], StrategyStats] = {}

    # === Rules ===

    def get_rule(self, domain: str) -> RoutingRule:
        return self.rules.get(domain, DEFAULT_RULE)

    def update_rule(self, domain: str, **changes: Any) -> RoutingRule:
        """Replace fields of a domain's rule, starting from the default rule if absent."""
        if "preferred_workers" in changes:
            changes["preferred_workers"] = tuple(changes["preferred_workers"])
        rule = replace(self.get_rule(domain), **changes)
        self.rules[domain] = rule
        logger.info("Updated routing rule", domain=domain)
        return rule

    # === Analysis ===

    def analyze(self, task: Task) -> TaskAnalysis:
        capabilities = extract_task_capabilities(task)
        complexity = estimate_complexity(task, capabilities)
        domain = ROUTING_DOMAINS.get(identify_task_domain(task), GENERAL_DOMAIN)
        if len(capabilities) >= 3 and complexity >= 0.8:
            domain = COMPLEX_DOMAIN

        text = f"{task.description} {' '.join(task.requirements)}".lower()
        return TaskAnalysis(
            domain=domain,
            complexity=complexity,
            capabilities=capabilities,
            collaboration_needed=len(capabilities) > 1,
            parallelizable=any(k in text for k in PARALLEL_KEYWORDS),
            urgency="high" if any(k in text for k in URGENT_KEYWORDS) else "normal",
            reliability="critical" if any(k in text for k in CRITICAL_KEYWORDS) else "normal",
            risk_level="high" if any(k in text for k in RISK_KEYWORDS) else "low",
        )

    # === Selection ===

    def score_worker(self, record: WorkerRecord, rule: RoutingRule, analysis: TaskAnalysis) -> float:
        score = 0.0
        if record.id in rule.preferred_workers:
            score += 1.0
        score += 0.3 * sum(1 for c in analysis.capabilities if c in record.specialties)
        score += 0.5 * record.performance.success_rate

        average_ms = record.performance.average_time_ms or self.settings.response_time_threshold_ms
        if average_ms < self.settings.response_time_threshold_ms:
            score += 0.2
        elif average_ms > SLOW_RESPONSE_MS:
            score -= 0.2

        if utc_now() - record.last_activity < RECENT_ACTIVITY:
            score += 0.1
        return max(0.0, score)

    def rank_workers(self, rule: RoutingRule, analysis: TaskAnalysis) -> list[WorkerRecord]:
        """Idle workers with a positive score, best first; ties keep registration order."""
        scored = [
            (self.score_worker(record, rule, analysis), record)
            for record in self.registry.get_available_workers()
        ]
        scored = [(score, record) for score, record in scored if score > 0]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [record for _, record in scored]

    def determine_strategy(self, analysis: TaskAnalysis) -> Strategy:
        logger.info("Routing task", domain=analysis.domain, complexity=analysis.complexity)

        rule = self.get_rule(analysis.domain)
        ranked = [r.id for r in self.rank_workers(rule, analysis)]

        if not ranked:
            logger.warning("No scored workers, using fallback strategy", domain=analysis.domain)
            strategy = self._fallback_strategy(rule, analysis)
        else:
            strategy = self._select_strategy(rule, analysis, ranked)
            strategy = self._adjust_for_performance(strategy, analysis.domain)

        self._record_decision(analysis, strategy)
        logger.info(
            "Selected strategy",
            strategy=strategy.type,
            workers=workers_of(strategy),
            reason=strategy.reason,
        )
        return strategy

    def _select_strategy(self, rule: RoutingRule, analysis: TaskAnalysis, ranked: list[str]) -> Strategy:
        available = len(ranked)

        if analysis.urgency == "high":
            return build_strategy(StrategyType.SINGLE, ranked, "high_urgency_single_worker")

        if analysis.complexity >= rule.complexity_threshold and analysis.collaboration_needed:
            if available >= 3:
                return build_strategy(
                    StrategyType.COLLABORATIVE_SESSION, ranked[:4], "high_complexity_collaboration"
                )
            if available == 2:
                return build_strategy(
                    StrategyType.CONSENSUS_ENSEMBLE, ranked[:2], "medium_complexity_consensus"
                )

        if analysis.complexity >= rule.collaboration_threshold and available >= 3:
            return build_strategy(StrategyType.PIPELINE, ranked[:3], "complex_sequential_processing")

        if analysis.parallelizable and available >= 2:
            return build_strategy(StrategyType.PARALLEL_EXECUTION, ranked[:4], "parallelizable_workload")

        if available >= 2 and self._needs_fallback_chain(analysis):
            return build_strategy(StrategyType.CASCADING_FALLBACK, ranked[:3], "reliability_focused")

        workers = ranked[:1] if rule.strategy == StrategyType.SINGLE else ranked[:3]
        return build_strategy(rule.strategy, workers, "default_rule_application")

    @staticmethod
    def _needs_fallback_chain(analysis: TaskAnalysis) -> bool:
        return (
            analysis.reliability == "critical"
            or analysis.risk_level == "high"
            or analysis.complexity > 0.8
        )

    def _fallback_strategy(self, rule: RoutingRule, analysis: TaskAnalysis) -> Strategy:
        idle = [r.id for r in self.registry.get_available_workers()]
        if not idle:
            raise NoAvailableWorkersError(analysis.domain)
        if len(idle) == 1:
            return build_strategy(StrategyType.SINGLE, idle, "only_worker_available")
        return build_strategy(rule.fallback_strategy, idle[:3], "preferred_workers_unavailable")

    def _adjust_for_performance(self, strategy: Strategy, domain: str) -> Strategy:
        strategy_type = StrategyType(strategy.type)
        success_rate = self.strategy_success_rate(strategy_type, domain)
        if success_rate is None or success_rate >= LOW_SUCCESS_RATE:
            return strategy

        logger.info(
            "Strategy has low success rate, adjusting",
            strategy=strategy_type.value,
            domain=domain,
            success_rate=round(success_rate, 2),
        )
        for alternative in ALTERNATIVES[strategy_type]:
            alternative_rate = self.strategy_success_rate(alternative, domain)
            if alternative_rate is None or alternative_rate > success_rate:
                logger.info("Switching strategy", from_strategy=strategy_type.value, to_strategy=alternative.value)
                return build_strategy(alternative, workers_of(strategy), "performance_adjustment")
        return strategy

    # === Learning ===

    def strategy_success_rate(self, strategy_type: StrategyType, domain: str) -> float | None:
        stats = self._stats.get((StrategyType(strategy_type), domain))
        return stats.success_rate if stats else None

    def _stats_for(self, strategy_type: StrategyType, domain: str) -> StrategyStats:
        key = (StrategyType(strategy_type), domain)
        if key not in self._stats:
            self._stats[key] = StrategyStats()
        return self._stats[key]

    def _record_decision(self, analysis: TaskAnalysis, strategy: Strategy) -> None:
        stats = self._stats_for(StrategyType(strategy.type), analysis.domain)
        stats.decisions += 1
        stats.recent_decisions.append(RoutingDecision(
            strategy=StrategyType(strategy.type),
            workers=workers_of(strategy),
            complexity=analysis.complexity,
            reason=strategy.reason,
        ))

    def record_strategy_outcome(
        self,
        strategy_type: StrategyType | str,
        domain: str,
        success: bool,
        duration_ms: float,
    ) -> None:
        stats = self._stats_for(StrategyType(strategy_type), domain)
        stats.attempts += 1
        stats.total_duration_ms += duration_ms
        if success:
            stats.successes += 1

    def get_routing_statistics(self) -> RoutingStatistics:
        strategy_usage: dict[str, int] = {}
        domain_distribution: dict[str, int] = {}
        performance: dict[str, dict[str, Any]] = {}
        decisions: list[RoutingDecision] = []

        for (strategy_type, domain), stats in self._stats.items():
            strategy_usage[strategy_type.value] = strategy_usage.get(strategy_type.value, 0) + stats.decisions
            domain_distribution[domain] = domain_distribution.get(domain, 0) + stats.decisions
            performance[f"{strategy_type.value}/{domain}"] = {
                "decisions": stats.decisions,
                "attempts": stats.attempts,
                "success_rate": stats.success_rate,
                "average_duration_ms": stats.average_duration_ms,
            }
            decisions.extend(stats.recent_decisions)

        average_workers = (
            sum(len(d.workers) for d in decisions) / len(decisions) if decisions else 0.0
        )
        return RoutingStatistics(
            total_decisions=sum(strategy_usage.values()),
            strategy_usage=strategy_usage,
            domain_distribution=domain_distribution,
            average_workers_per_task=average_workers,
            performance=performance,
        )

    # === Dispatch ===

    async def dispatch(
        self,
        task_id: str,
        task: Task | Mapping[str, Any],
        analysis: TaskAnalysis | None = None,
    ) -> ExecutionResult:
        """Analyze, route and execute a task, recording the strategy's outcome."""
        if not isinstance(task, Task):
            task = Task.model_validate(task)
        analysis = analysis or self.analyze(task)
        strategy = self.determine_strategy(analysis)

        start = time.monotonic()
        try:
            result = await self.executor.execute_strategy(strategy, task_id, task)
        except OrchestrationError:
            self.record_strategy_outcome(
                strategy.type, analysis.domain, False, (time.monotonic() - start) * 1000
            )
            raise

        success = getattr(result, "success", True) is not False
        self.record_strategy_outcome(strategy.type, analysis.domain, success, result.execution_time_ms)
        return result
