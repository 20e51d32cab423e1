"""Performance snapshots and registry health reporting."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from src.orchestrator.config import Settings
from src.orchestrator.state_machine import WorkerStatus

from .records import PerformanceStats, WorkerRecord

HEALTHY_RATIO = 0.8
WARNING_RATIO = 0.6

WARNING_RECOMMENDATIONS = [
    "Monitor worker performance",
    "Consider worker retraining",
]
CRITICAL_RECOMMENDATIONS = [
    "Immediate worker performance review",
    "Consider worker replacement",
    "Scale resources",
]


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class RegistryHealth:
    status: HealthStatus
    message: str
    health_ratio: float = 0.0
    recommendations: list[str] = field(default_factory=list)


@dataclass
class PerformanceMetrics:
    """Running means combined with averages over the recorded samples."""
    worker_id: str
    status: WorkerStatus
    tasks_completed: int
    average_time_ms: float
    success_rate: float
    average_response_time_ms: float
    average_accuracy: float
    recent_task_count: int
    recent_success_rate: float


@dataclass
class WorkerSnapshot:
    status: WorkerStatus
    current_task: str | None
    performance: PerformanceStats
    last_activity: datetime
    capabilities: list[str]
    specialties: list[str]


@dataclass
class RegistryStatus:
    total_workers: int
    available_workers: int
    busy_workers: int
    error_workers: int
    workers: dict[str, WorkerSnapshot]
    health: RegistryHealth


def _mean(values, default: float = 0.0) -> float:
    values = list(values)
    return sum(values) / len(values) if values else default


def build_metrics(record: WorkerRecord) -> PerformanceMetrics:
    history = record.history
    return PerformanceMetrics(
        worker_id=record.id,
        status=record.status,
        tasks_completed=record.performance.tasks_completed,
        average_time_ms=record.performance.average_time_ms,
        success_rate=record.performance.success_rate,
        average_response_time_ms=_mean(history.response_times),
        average_accuracy=_mean(history.accuracy),
        recent_task_count=len(history.recent_tasks),
        recent_success_rate=_mean((1.0 if t.success else 0.0 for t in history.recent_tasks), 1.0),
    )


def build_snapshot(record: WorkerRecord) -> WorkerSnapshot:
    return WorkerSnapshot(
        status=record.status,
        current_task=record.current_task,
        performance=PerformanceStats(**vars(record.performance)),
        last_activity=record.last_activity,
        capabilities=sorted(record.capabilities),
        specialties=sorted(record.specialties),
    )


def check_registry_health(records: list[WorkerRecord], settings: Settings) -> RegistryHealth:
    """Map the share of workers meeting both thresholds to a health tier.

    A worker is healthy when its success rate is at least
    ``success_rate_threshold`` and its mean latency does not exceed
    ``response_time_threshold_ms``. An empty registry is always critical.
    """
    if not records:
        return RegistryHealth(
            status=HealthStatus.CRITICAL,
            message="No workers registered",
            recommendations=list(CRITICAL_RECOMMENDATIONS),
        )

    underperforming = sum(
        1 for r in records if r.performance.success_rate < settings.success_rate_threshold
    )
    slow = sum(
        1 for r in records if r.performance.average_time_ms > settings.response_time_threshold_ms
    )
    healthy = sum(
        1 for r in records
        if r.performance.success_rate >= settings.success_rate_threshold
        and r.performance.average_time_ms <= settings.response_time_threshold_ms
    )
    ratio = healthy / len(records)

    if ratio >= HEALTHY_RATIO:
        return RegistryHealth(
            status=HealthStatus.HEALTHY,
            message="All systems operational",
            health_ratio=ratio,
        )
    if ratio >= WARNING_RATIO:
        return RegistryHealth(
            status=HealthStatus.WARNING,
            message=f"{underperforming} underperforming, {slow} slow workers",
            health_ratio=ratio,
            recommendations=list(WARNING_RECOMMENDATIONS),
        )
    return RegistryHealth(
        status=HealthStatus.CRITICAL,
        message=f"System degraded: {underperforming} underperforming, {slow} slow workers",
        health_ratio=ratio,
        recommendations=list(CRITICAL_RECOMMENDATIONS),
    )
