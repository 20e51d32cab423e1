"""Worker implementations."""

from .base import BaseWorker, Worker
from .worker import ROLE_PRESETS, ClaudeWorker, build_worker_pool

__all__ = [
    "BaseWorker",
    "ClaudeWorker",
    "ROLE_PRESETS",
    "Worker",
    "build_worker_pool",
]
