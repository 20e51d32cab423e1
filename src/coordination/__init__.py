"""Coordination layer - worker registry, events and health."""

from .events import RegistryEvent, RegistryEventKind
from .health import HealthStatus, RegistryHealth, RegistryStatus
from .registry import WorkerRegistry

__all__ = [
    "HealthStatus",
    "RegistryEvent",
    "RegistryEventKind",
    "RegistryHealth",
    "RegistryStatus",
    "WorkerRegistry",
]
