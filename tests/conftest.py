"""Shared fixtures."""

import pytest

from src.coordination.registry import WorkerRegistry
from src.orchestrator.config import Settings
from src.orchestrator.executor import StrategyExecutor
from src.orchestrator.task import Task


@pytest.fixture
def settings():
    """Default settings."""
    return Settings(anthropic_api_key="test")


@pytest.fixture
def registry(settings):
    return WorkerRegistry(settings)


@pytest.fixture
def executor(registry, settings):
    return StrategyExecutor(registry, settings)


@pytest.fixture
def task():
    return Task(id="task-1", description="Review the login handler")
