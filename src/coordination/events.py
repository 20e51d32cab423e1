"""Registry notifications delivered to an explicit listener list."""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class RegistryEventKind(str, Enum):
    REGISTERED = "worker.registered"
    UNREGISTERED = "worker.unregistered"
    STATUS_CHANGED = "worker.status_changed"
    TASK_COMPLETED = "worker.task_completed"
    EVICTED = "worker.evicted"


@dataclass(frozen=True)
class RegistryEvent:
    """Something happened to a worker record."""
    kind: RegistryEventKind
    worker_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


RegistryListener = Callable[[RegistryEvent], None]
