"""Consensus engine - reduces a set of worker results to one decision.

The executor's consensus ensemble only gathers results; this module is
where callers pick an answer from them. Seven algorithms are available,
from plain majority voting to a Byzantine fault tolerant clustering vote.
Every decision is timed and kept in a bounded history for metrics.
"""

import statistics
import time
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, is_dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from src.coordination.records import utc_now
from src.coordination.registry import WorkerRegistry

from .config import Settings
from .convergence import similarity
from .errors import ConsensusError
from .strategies import ConsensusResult, WorkerOutcome
from .task import result_field

logger = structlog.get_logger()

DEFAULT_CONFIDENCE = 0.5
DEFAULT_EXPERTS = ("architect", "security", "performance")
DEFAULT_EXPERT_PRIORITY = {"architect": 3, "security": 3, "performance": 2}
EXPERT_CONFIDENCE_BOOST = 0.1
DEFAULT_WEIGHTING_FACTORS = {"performance": 0.3, "recency": 0.2, "specialty": 0.3, "consensus": 0.2}
MIN_DYNAMIC_WEIGHT = 0.1
RECENCY_WINDOW = timedelta(hours=24)
QUALITY_METRICS = ("confidence", "completeness", "accuracy")
RESULT_KEY_LENGTH = 100
METRICS_WINDOW = 100
TREND_WINDOW = 20


class ConsensusAlgorithm(str, Enum):
    """Ways of choosing one result from many."""
    MAJORITY_VOTE = "majority_vote"
    WEIGHTED_AVERAGE = "weighted_average"
    CONFIDENCE_BASED = "confidence_based"
    EXPERT_OVERRIDE = "expert_override"
    BYZANTINE_FAULT_TOLERANT = "byzantine_fault_tolerant"
    DYNAMIC_WEIGHTING = "dynamic_weighting"
    QUALITY_THRESHOLD = "quality_threshold"


@dataclass(kw_only=True)
class Candidate:
    """One worker's result entering a decision."""
    worker_id: str
    result: Any

    @property
    def confidence(self) -> float:
        score = result_field(self.result, "confidence")
        return DEFAULT_CONFIDENCE if score is None else float(score)

    @property
    def has_confidence(self) -> bool:
        return result_field(self.result, "confidence") is not None


@dataclass(kw_only=True)
class ConsensusDecision:
    """Chosen result plus how strongly the inputs back it."""
    algorithm: ConsensusAlgorithm
    consensus: Any
    confidence: float
    selected_worker: str | None = None
    supporters: list[str] = field(default_factory=list)
    threshold_met: bool = True
    details: dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0


@dataclass(frozen=True)
class ConsensusRecord:
    algorithm: ConsensusAlgorithm
    input_count: int
    confidence: float
    duration_ms: float
    timestamp: datetime


@dataclass(kw_only=True)
class ConsensusTrends:
    confidence_trend: str
    confidence_change_pct: float | None
    duration_trend: str
    duration_change_pct: float | None


@dataclass(kw_only=True)
class ConsensusMetrics:
    """Summary of recent decisions."""
    total_decisions: int = 0
    recent_decisions: int = 0
    average_confidence: float = 0.0
    average_duration_ms: float = 0.0
    algorithm_usage: dict[str, int] = field(default_factory=dict)
    confidence_distribution: dict[str, int] = field(default_factory=dict)
    trends: ConsensusTrends | None = None


def candidates_from(results: Any) -> list[Candidate]:
    """Normalize the accepted input shapes into candidates.

    Accepts a ConsensusResult, an iterable of WorkerOutcome or
    ``(worker_id, result)`` pairs, or a mapping of worker id to result.
    Failed outcomes and results flagged as errors are dropped.
    """
    if isinstance(results, ConsensusResult):
        results = results.results
    if isinstance(results, Mapping):
        results = results.items()

    candidates = []
    for item in results:
        if isinstance(item, WorkerOutcome):
            if not item.success or item.result is None:
                continue
            worker_id, result = item.worker_id, item.result
        else:
            worker_id, result = item
        if result is None or result_field(result, "error") is not None:
            continue
        if result_field(result, "success", True) is False:
            continue
        candidates.append(Candidate(worker_id=worker_id, result=result))
    return candidates


def result_key(result: Any) -> str:
    """Grouping key for votes: equal outputs vote together."""
    output = result_field(result, "output")
    if isinstance(output, str):
        return " ".join(output.split()).lower()[:RESULT_KEY_LENGTH]
    return repr(output)[:RESULT_KEY_LENGTH]


def cluster_candidates(candidates: list[Candidate], threshold: float) -> list[list[Candidate]]:
    """Greedy clustering: each candidate joins the first cluster whose seed it resembles."""
    clusters: list[list[Candidate]] = []
    for candidate in candidates:
        for cluster in clusters:
            if similarity(candidate.result, cluster[0].result) >= threshold:
                cluster.append(candidate)
                break
        else:
            clusters.append([candidate])
    return clusters


def consensus_strength(confidences: list[float]) -> float:
    """High mean and low spread both strengthen agreement."""
    if len(confidences) < 2:
        return DEFAULT_CONFIDENCE
    mean = statistics.fmean(confidences)
    spread = statistics.pstdev(confidences)
    return ((1 - spread) + mean) / 2


def completeness(result: Any) -> float:
    score = 0.5
    if result_field(result, "output"):
        score += 0.2
    if result_field(result, "confidence") is not None:
        score += 0.1
    if result_field(result, "metadata") or result_field(result, "shared_updates"):
        score += 0.1
    if result_field(result, "reasoning") or result_field(result, "explanation"):
        score += 0.1
    return min(score, 1.0)


def accuracy(result: Any) -> float:
    explicit = result_field(result, "accuracy")
    if explicit is not None:
        return float(explicit)
    confidence = result_field(result, "confidence")
    if confidence is not None:
        return float(confidence)

    score = 0.5
    if result_field(result, "error"):
        score -= 0.3
    score -= 0.1 * len(result_field(result, "warnings") or ())
    if result_field(result, "validation_passed"):
        score += 0.2
    return max(0.0, min(score, 1.0))


def _with_confidence(result: Any, confidence: float) -> Any:
    if is_dataclass(result):
        return replace(result, confidence=confidence)
    if isinstance(result, Mapping):
        return {**result, "confidence": confidence}
    return result


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _change_pct(recent: float, older: float) -> float | None:
    if not older:
        return None
    return round((recent - older) / older * 100, 1)


class ConsensusEngine:
    """Builds consensus decisions and remembers how they went.

    ``registry`` is optional; dynamic weighting reads worker performance
    from it and treats every worker equally without one.
    """

    def __init__(self, registry: WorkerRegistry | None = None, settings: Settings | None = None):
        self.registry = registry
        self.settings = settings or (registry.settings if registry is not None else Settings())
        self.history: deque[ConsensusRecord] = deque(maxlen=self.settings.consensus_history_limit)

    def build_consensus(
        self,
        results: Any,
        algorithm: ConsensusAlgorithm | str = ConsensusAlgorithm.CONFIDENCE_BASED,
        **options: Any,
    ) -> ConsensusDecision:
        """Run one algorithm over results and record the decision.

        Options are passed to the algorithm method as keyword arguments.
        Raises ConsensusError for unknown algorithms and when no decision
        can be reached.
        """
        try:
            algorithm = ConsensusAlgorithm(algorithm)
        except ValueError:
            raise ConsensusError(f"Unknown consensus algorithm: {algorithm}", algorithm) from None

        candidates = candidates_from(results)
        log = logger.bind(algorithm=algorithm.value, candidates=len(candidates))
        log.info("Building consensus")

        start = time.monotonic()
        try:
            decision = self._dispatch(algorithm, candidates, options)
        except ConsensusError as e:
            log.error("Consensus failed", error=str(e))
            raise

        decision.duration_ms = (time.monotonic() - start) * 1000
        self.history.append(ConsensusRecord(
            algorithm=algorithm,
            input_count=len(candidates),
            confidence=decision.confidence,
            duration_ms=decision.duration_ms,
            timestamp=utc_now(),
        ))
        log.info(
            "Consensus built",
            selected_worker=decision.selected_worker,
            confidence=round(decision.confidence, 3),
            duration_ms=round(decision.duration_ms, 2),
        )
        return decision

    def _dispatch(
        self,
        algorithm: ConsensusAlgorithm,
        candidates: list[Candidate],
        options: dict[str, Any],
    ) -> ConsensusDecision:
        if not candidates:
            raise ConsensusError("No valid results to build consensus from", algorithm)

        match algorithm:
            case ConsensusAlgorithm.MAJORITY_VOTE:
                return self.majority_vote(candidates, **options)
            case ConsensusAlgorithm.WEIGHTED_AVERAGE:
                return self.weighted_average(candidates, **options)
            case ConsensusAlgorithm.CONFIDENCE_BASED:
                return self.confidence_based(candidates, **options)
            case ConsensusAlgorithm.EXPERT_OVERRIDE:
                return self.expert_override(candidates, **options)
            case ConsensusAlgorithm.BYZANTINE_FAULT_TOLERANT:
                return self.byzantine_fault_tolerant(candidates, **options)
            case ConsensusAlgorithm.DYNAMIC_WEIGHTING:
                return self.dynamic_weighting(candidates, **options)
            case ConsensusAlgorithm.QUALITY_THRESHOLD:
                return self.quality_threshold(candidates, **options)
            case _:
                raise ConsensusError(f"Unknown consensus algorithm: {algorithm}", algorithm)

    # === Algorithms ===

    def majority_vote(
        self,
        candidates: list[Candidate],
        worker_weights: Mapping[str, float] | None = None,
    ) -> ConsensusDecision:
        """Most heavily backed output wins; ties keep the first seen."""
        weights = worker_weights or {}
        votes: dict[str, dict[str, Any]] = {}
        total_weight = 0.0

        for candidate in candidates:
            weight = weights.get(candidate.worker_id, 1.0)
            total_weight += weight
            key = result_key(candidate.result)
            vote = votes.setdefault(key, {"count": 0.0, "result": candidate.result, "supporters": []})
            vote["count"] += weight
            vote["supporters"].append(candidate.worker_id)

        winner = max(votes.values(), key=lambda v: v["count"])
        return ConsensusDecision(
            algorithm=ConsensusAlgorithm.MAJORITY_VOTE,
            consensus=winner["result"],
            confidence=winner["count"] / total_weight if total_weight else 0.0,
            selected_worker=winner["supporters"][0],
            supporters=list(winner["supporters"]),
            details={"vote_distribution": {key: v["count"] for key, v in votes.items()}},
        )

    def weighted_average(
        self,
        candidates: list[Candidate],
        worker_weights: Mapping[str, float] | None = None,
    ) -> ConsensusDecision:
        """Confidence-weighted mean for numeric outputs, best weighted result otherwise."""
        weights = worker_weights or {}
        scored = [c for c in candidates if c.has_confidence] or candidates
        combined = {c.worker_id: c.confidence * weights.get(c.worker_id, 1.0) for c in scored}
        total = sum(combined.values())
        confidence = total / len(scored)

        outputs = [result_field(c.result, "output") for c in scored]
        if all(_is_number(o) for o in outputs) and total > 0:
            mean = sum(o * combined[c.worker_id] for o, c in zip(outputs, scored)) / total
            return ConsensusDecision(
                algorithm=ConsensusAlgorithm.WEIGHTED_AVERAGE,
                consensus=mean,
                confidence=confidence,
                supporters=[c.worker_id for c in scored],
                details={"components": len(scored), "total_weight": total},
            )

        best = max(scored, key=lambda c: combined[c.worker_id])
        return ConsensusDecision(
            algorithm=ConsensusAlgorithm.WEIGHTED_AVERAGE,
            consensus=best.result,
            confidence=confidence,
            selected_worker=best.worker_id,
            supporters=[best.worker_id],
            details={"best_weight": combined[best.worker_id], "total_weight": total},
        )

    def confidence_based(
        self,
        candidates: list[Candidate],
        threshold: float = 0.0,
    ) -> ConsensusDecision:
        """Most confident result among those at or above threshold."""
        qualified = [c for c in candidates if c.confidence >= threshold]
        if not qualified:
            logger.warning("No result meets confidence threshold, using all", threshold=threshold)
            qualified = candidates

        best = max(qualified, key=lambda c: c.confidence)
        confidences = [c.confidence for c in qualified]
        return ConsensusDecision(
            algorithm=ConsensusAlgorithm.CONFIDENCE_BASED,
            consensus=best.result,
            confidence=best.confidence,
            selected_worker=best.worker_id,
            supporters=[best.worker_id],
            details={
                "qualified": len(qualified),
                "average_confidence": statistics.fmean(confidences),
                "consensus_strength": consensus_strength(confidences),
            },
        )

    def expert_override(
        self,
        candidates: list[Candidate],
        experts: Iterable[str] = DEFAULT_EXPERTS,
        expert_priority: Mapping[str, float] | None = None,
    ) -> ConsensusDecision:
        """An expert's answer wins, ranked by priority times confidence."""
        priority = expert_priority or DEFAULT_EXPERT_PRIORITY
        expert_ids = set(experts)
        expert_results = [c for c in candidates if c.worker_id in expert_ids]

        if not expert_results:
            logger.info("No expert results, falling back to confidence")
            decision = self.confidence_based(candidates)
            decision.details["fallback_from"] = ConsensusAlgorithm.EXPERT_OVERRIDE.value
            return decision

        best = max(expert_results, key=lambda c: priority.get(c.worker_id, 1) * c.confidence)
        return ConsensusDecision(
            algorithm=ConsensusAlgorithm.EXPERT_OVERRIDE,
            consensus=best.result,
            confidence=min(best.confidence + EXPERT_CONFIDENCE_BOOST, 1.0),
            selected_worker=best.worker_id,
            supporters=[best.worker_id],
            details={
                "expert_priority": priority.get(best.worker_id, 1),
                "experts_consulted": [c.worker_id for c in expert_results],
            },
        )

    def byzantine_fault_tolerant(
        self,
        candidates: list[Candidate],
        fault_tolerance: int | None = None,
        similarity_threshold: float | None = None,
    ) -> ConsensusDecision:
        """Agreement of at least n - f results, tolerating f faulty ones.

        f defaults to floor(n / 3); n must be at least 3f + 1.
        """
        n = len(candidates)
        f = n // 3 if fault_tolerance is None else fault_tolerance
        if n < 3 * f + 1:
            raise ConsensusError(
                f"Byzantine consensus needs at least {3 * f + 1} results to tolerate {f} faults, got {n}",
                ConsensusAlgorithm.BYZANTINE_FAULT_TOLERANT,
            )

        threshold = (
            self.settings.consensus_cluster_similarity
            if similarity_threshold is None
            else similarity_threshold
        )
        clusters = cluster_candidates(candidates, threshold)
        largest = max(clusters, key=len)
        required = n - f
        if len(largest) < required:
            raise ConsensusError(
                f"No Byzantine agreement: largest cluster has {len(largest)} of {required} required results",
                ConsensusAlgorithm.BYZANTINE_FAULT_TOLERANT,
            )

        best = max(largest, key=lambda c: c.confidence)
        average = statistics.fmean(c.confidence for c in largest)
        return ConsensusDecision(
            algorithm=ConsensusAlgorithm.BYZANTINE_FAULT_TOLERANT,
            consensus=_with_confidence(best.result, average),
            confidence=len(largest) / n,
            selected_worker=best.worker_id,
            supporters=[c.worker_id for c in largest],
            details={
                "fault_tolerance": f,
                "required_agreement": required,
                "clusters": [len(c) for c in clusters],
            },
        )

    def dynamic_weighting(
        self,
        candidates: list[Candidate],
        domain: str | None = None,
        weighting_factors: Mapping[str, float] | None = None,
    ) -> ConsensusDecision:
        """Confidence scaled by a weight derived from each worker's track record."""
        factors = {**DEFAULT_WEIGHTING_FACTORS, **(weighting_factors or {})}
        weights = {c.worker_id: self.dynamic_weight(c.worker_id, domain, factors) for c in candidates}

        best = max(candidates, key=lambda c: c.confidence * weights[c.worker_id])
        score = best.confidence * weights[best.worker_id]
        average_weight = statistics.fmean(weights.values())
        return ConsensusDecision(
            algorithm=ConsensusAlgorithm.DYNAMIC_WEIGHTING,
            consensus=best.result,
            confidence=min(score / average_weight, 1.0),
            selected_worker=best.worker_id,
            supporters=[best.worker_id],
            details={"weights": weights, "weighted_score": score, "average_weight": average_weight},
        )

    def dynamic_weight(self, worker_id: str, domain: str | None, factors: Mapping[str, float]) -> float:
        """1.0 plus bonuses for success rate, recency, specialty and past accuracy."""
        record = self.registry.get_worker(worker_id) if self.registry is not None else None
        if record is None:
            return 1.0

        weight = 1.0
        if record.performance.tasks_completed:
            weight += factors["performance"] * record.performance.success_rate

        age = utc_now() - record.last_activity
        weight += factors["recency"] * max(0.0, 1 - age / RECENCY_WINDOW)

        if domain is not None and domain in record.specialties:
            weight += factors["specialty"]

        if record.history.accuracy:
            weight += factors["consensus"] * statistics.fmean(record.history.accuracy)

        return max(weight, MIN_DYNAMIC_WEIGHT)

    def quality_threshold(
        self,
        candidates: list[Candidate],
        threshold: float | None = None,
        metrics: Iterable[str] = QUALITY_METRICS,
    ) -> ConsensusDecision:
        """Best result whose mean quality score clears threshold."""
        threshold = self.settings.consensus_quality_threshold if threshold is None else threshold
        metrics = tuple(metrics)
        scored = [(c, self.quality_scores(c.result, metrics)) for c in candidates]
        quality = {c.worker_id: statistics.fmean(scores.values()) for c, scores in scored}

        qualified = [c for c, _ in scored if quality[c.worker_id] >= threshold]
        threshold_met = bool(qualified)
        if not threshold_met:
            logger.warning("No result meets quality threshold, using best available", threshold=threshold)
            qualified = candidates

        best = max(qualified, key=lambda c: quality[c.worker_id])
        return ConsensusDecision(
            algorithm=ConsensusAlgorithm.QUALITY_THRESHOLD,
            consensus=best.result,
            confidence=quality[best.worker_id],
            selected_worker=best.worker_id,
            supporters=[c.worker_id for c in qualified] if threshold_met else [best.worker_id],
            threshold_met=threshold_met,
            details={"quality": quality, "threshold": threshold},
        )

    @staticmethod
    def quality_scores(result: Any, metrics: Iterable[str]) -> dict[str, float]:
        scores = {}
        for metric in metrics:
            match metric:
                case "confidence":
                    score = result_field(result, "confidence")
                    scores[metric] = DEFAULT_CONFIDENCE if score is None else float(score)
                case "completeness":
                    explicit = result_field(result, "completeness")
                    scores[metric] = completeness(result) if explicit is None else float(explicit)
                case "accuracy":
                    scores[metric] = accuracy(result)
                case _:
                    score = result_field(result, metric)
                    scores[metric] = DEFAULT_CONFIDENCE if score is None else float(score)
        return scores

    # === Metrics ===

    def get_consensus_metrics(self) -> ConsensusMetrics:
        """Averages over the most recent decisions, with trends once history allows."""
        if not self.history:
            return ConsensusMetrics()

        history = list(self.history)
        recent = history[-METRICS_WINDOW:]
        usage: dict[str, int] = {}
        distribution = {"low": 0, "medium": 0, "high": 0}
        for record in recent:
            usage[record.algorithm.value] = usage.get(record.algorithm.value, 0) + 1
            if record.confidence < 0.5:
                distribution["low"] += 1
            elif record.confidence < 0.8:
                distribution["medium"] += 1
            else:
                distribution["high"] += 1

        return ConsensusMetrics(
            total_decisions=len(history),
            recent_decisions=len(recent),
            average_confidence=statistics.fmean(r.confidence for r in recent),
            average_duration_ms=statistics.fmean(r.duration_ms for r in recent),
            algorithm_usage=usage,
            confidence_distribution=distribution,
            trends=self._trends(history),
        )

    @staticmethod
    def _trends(history: list[ConsensusRecord]) -> ConsensusTrends | None:
        # Compare the latest window with the one before it
        if len(history) < 2 * TREND_WINDOW:
            return None
        recent = history[-TREND_WINDOW:]
        older = history[-2 * TREND_WINDOW:-TREND_WINDOW]

        recent_confidence = statistics.fmean(r.confidence for r in recent)
        older_confidence = statistics.fmean(r.confidence for r in older)
        recent_duration = statistics.fmean(r.duration_ms for r in recent)
        older_duration = statistics.fmean(r.duration_ms for r in older)

        return ConsensusTrends(
            confidence_trend="improving" if recent_confidence > older_confidence else "declining",
            confidence_change_pct=_change_pct(recent_confidence, older_confidence),
            duration_trend="improving" if recent_duration < older_duration else "declining",
            duration_change_pct=_change_pct(recent_duration, older_duration),
        )
