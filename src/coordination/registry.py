"""Worker registry - pool membership, selection and performance tracking."""

from datetime import timedelta
from typing import Any

import structlog

from src.agents.base import Worker
from src.orchestrator.config import Settings
from src.orchestrator.errors import InvalidStatusTransitionError
from src.orchestrator.state_machine import WorkerStatus, can_transition
from src.orchestrator.task import Task, result_field

from .events import RegistryEvent, RegistryEventKind, RegistryListener
from .health import (
    PerformanceMetrics,
    RegistryHealth,
    RegistryStatus,
    build_metrics,
    build_snapshot,
    check_registry_health,
)
from .records import TaskRecord, WorkerRecord, utc_now

logger = structlog.get_logger()

# Ordered: the first domain whose keyword appears wins
DOMAIN_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("code", ("code",)),
    ("architecture", ("architecture",)),
    ("devops", ("devops",)),
    ("security", ("security",)),
    ("performance", ("performance",)),
    ("documentation", ("documentation",)),
    ("testing", ("testing",)),
)
DEFAULT_DOMAIN = "general"

CAPABILITY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("coding", ("code", "programming")),
    ("testing", ("test", "testing")),
    ("deployment", ("deploy", "deployment")),
    ("security", ("security", "secure")),
    ("performance", ("performance", "optimize")),
    ("documentation", ("document", "docs")),
)

SPECIALTY_BONUS = 0.3
LATENCY_BONUS = 0.1


def identify_task_domain(task: Task) -> str:
    """Classify a task by case-insensitive keyword match on description and type."""
    description = (task.description or "").lower()
    task_type = (task.type or "").lower()
    for domain, keywords in DOMAIN_KEYWORDS:
        if any(k in description or k in task_type for k in keywords):
            return domain
    return DEFAULT_DOMAIN


def extract_task_capabilities(task: Task) -> list[str]:
    """Capabilities implied by the description and requirements."""
    text = f"{task.description or ''} {' '.join(task.requirements)}".lower()
    return [
        capability
        for capability, keywords in CAPABILITY_KEYWORDS
        if any(k in text for k in keywords)
    ]


class WorkerRegistry:
    """Owns worker records, their status and their performance statistics.

    The registry is the only writer of a record's status and performance
    fields. Listeners added with ``subscribe`` receive a ``RegistryEvent``
    for registrations, status transitions and completed tasks.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._workers: dict[str, WorkerRecord] = {}
        self._listeners: list[RegistryListener] = []

    # === Listeners ===

    def subscribe(self, listener: RegistryListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: RegistryListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind: RegistryEventKind, worker_id: str, **data: Any) -> None:
        event = RegistryEvent(kind=kind, worker_id=worker_id, data=data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Registry listener failed", kind=kind.value, worker_id=worker_id)

    # === Membership ===

    def register(self, worker_id: str, worker: Worker) -> WorkerRecord:
        """Insert or fully replace the record for worker_id."""
        record = WorkerRecord.for_worker(worker_id, worker, self.settings.recent_task_limit)
        replaced = worker_id in self._workers
        self._workers[worker_id] = record

        logger.info("Registered worker", worker_id=worker_id, replaced=replaced)
        self._emit(RegistryEventKind.REGISTERED, worker_id, replaced=replaced)
        return record

    def unregister(self, worker_id: str) -> bool:
        """Remove the record if present."""
        record = self._workers.pop(worker_id, None)
        if record is None:
            return False

        logger.info("Unregistered worker", worker_id=worker_id)
        self._emit(RegistryEventKind.UNREGISTERED, worker_id, status=record.status)
        return True

    def get_worker(self, worker_id: str) -> WorkerRecord | None:
        return self._workers.get(worker_id)

    def get_all_workers(self) -> list[WorkerRecord]:
        return list(self._workers.values())

    def __contains__(self, worker_id: object) -> bool:
        return worker_id in self._workers

    def __len__(self) -> int:
        return len(self._workers)

    # === Queries ===

    def get_available_workers(self) -> list[WorkerRecord]:
        return [r for r in self._workers.values() if r.status == WorkerStatus.IDLE]

    def get_busy_workers(self) -> list[WorkerRecord]:
        return [r for r in self._workers.values() if r.status == WorkerStatus.BUSY]

    def get_workers_by_capability(self, capability: str) -> list[WorkerRecord]:
        return [
            r for r in self._workers.values()
            if capability in r.capabilities or capability in r.specialties
        ]

    def get_best_worker_for_task(self, task: Task) -> WorkerRecord | None:
        """Highest-scoring idle worker matching the task's domain or capabilities.

        Ties go to the first candidate in registration order.
        """
        domain = identify_task_domain(task)
        required = set(extract_task_capabilities(task))

        candidates = [
            r for r in self._workers.values()
            if r.status == WorkerStatus.IDLE
            and (domain in r.specialties or (r.capabilities | r.specialties) & required)
        ]
        if not candidates:
            logger.debug("No candidate worker", domain=domain, capabilities=sorted(required))
            return None

        return max(candidates, key=lambda r: self.score_worker(r, domain))

    def score_worker(self, record: WorkerRecord, domain: str) -> float:
        score = record.performance.success_rate
        score += record.priority / 10
        if domain in record.specialties:
            score += SPECIALTY_BONUS
        if record.performance.average_time_ms < self.settings.response_time_threshold_ms:
            score += LATENCY_BONUS
        return score

    # === Status ===

    def update_status(
        self,
        worker_id: str,
        status: WorkerStatus,
        task_id: str | None = None,
    ) -> bool:
        """Transition a worker's status; the only way status changes.

        Returns False when the worker is unknown. Raises
        InvalidStatusTransitionError for transitions the state machine forbids.
        """
        record = self._workers.get(worker_id)
        if record is None:
            return False

        status = WorkerStatus(status)
        old_status = record.status
        if not can_transition(old_status, status):
            raise InvalidStatusTransitionError(worker_id, old_status, status)

        record.status = status
        record.current_task = task_id
        if status == WorkerStatus.IDLE:
            record.last_activity = utc_now()

        logger.debug(
            "Worker status changed",
            worker_id=worker_id,
            from_status=old_status.value,
            to_status=status.value,
            task_id=task_id,
        )
        self._emit(
            RegistryEventKind.STATUS_CHANGED,
            worker_id,
            old_status=old_status,
            new_status=status,
            task_id=task_id,
        )
        return True

    def reset_worker(self, worker_id: str) -> bool:
        """Explicit error -> idle reset."""
        return self.update_status(worker_id, WorkerStatus.IDLE)

    # === Performance ===

    def record_task_completion(
        self,
        worker_id: str,
        task_id: str,
        result: Any,
        duration_ms: float,
    ) -> bool:
        """Fold one finished task into the worker's running means and history."""
        record = self._workers.get(worker_id)
        if record is None:
            logger.warning("Completion for unknown worker", worker_id=worker_id, task_id=task_id)
            return False

        success = result_field(result, "success", True) is not False
        confidence = result_field(result, "confidence")

        perf = record.performance
        perf.tasks_completed += 1
        count = perf.tasks_completed
        perf.average_time_ms = (perf.average_time_ms * (count - 1) + duration_ms) / count
        perf.success_rate = (perf.success_rate * (count - 1) + (1 if success else 0)) / count

        history = record.history
        history.response_times.append(duration_ms)
        history.accuracy.append(
            float(confidence) if confidence is not None else (1.0 if success else 0.0)
        )
        # deque(maxlen) drops the oldest entry
        history.recent_tasks.append(
            TaskRecord(task_id=task_id, success=success, duration_ms=duration_ms, timestamp=utc_now())
        )

        logger.debug(
            "Recorded task completion",
            worker_id=worker_id,
            task_id=task_id,
            success=success,
            duration_ms=round(duration_ms, 2),
        )
        self._emit(
            RegistryEventKind.TASK_COMPLETED,
            worker_id,
            task_id=task_id,
            success=success,
            duration_ms=duration_ms,
        )
        return True

    def get_performance_metrics(
        self,
        worker_id: str | None = None,
    ) -> PerformanceMetrics | dict[str, PerformanceMetrics] | None:
        """Metrics for one worker (None if unknown), or for all workers keyed by id."""
        if worker_id is not None:
            record = self._workers.get(worker_id)
            return build_metrics(record) if record else None
        return {wid: build_metrics(record) for wid, record in self._workers.items()}

    # === Reporting ===

    def get_registry_status(self) -> RegistryStatus:
        records = list(self._workers.values())
        return RegistryStatus(
            total_workers=len(records),
            available_workers=sum(1 for r in records if r.status == WorkerStatus.IDLE),
            busy_workers=sum(1 for r in records if r.status == WorkerStatus.BUSY),
            error_workers=sum(1 for r in records if r.status == WorkerStatus.ERROR),
            workers={r.id: build_snapshot(r) for r in records},
            health=check_registry_health(records, self.settings),
        )

    def check_health(self) -> RegistryHealth:
        return check_registry_health(list(self._workers.values()), self.settings)

    def cleanup(self) -> list[str]:
        """Evict stale error workers and trim sample histories.

        Returns the evicted worker ids.
        """
        stale_before = utc_now() - timedelta(hours=self.settings.stale_error_hours)
        limit = self.settings.history_limit
        evicted: list[str] = []

        for worker_id, record in list(self._workers.items()):
            if record.status == WorkerStatus.ERROR and record.last_activity < stale_before:
                logger.info("Evicting stale worker", worker_id=worker_id)
                self.unregister(worker_id)
                self._emit(RegistryEventKind.EVICTED, worker_id)
                evicted.append(worker_id)
                continue

            record.history.response_times = record.history.response_times[-limit:]
            record.history.accuracy = record.history.accuracy[-limit:]

        return evicted
