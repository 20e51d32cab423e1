"""Configuration management."""

import logging

import structlog
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Orchestration settings from environment."""

    # Logging
    log_level: str = "INFO"

    # Registry thresholds
    success_rate_threshold: float = 0.8
    response_time_threshold_ms: float = 30000
    recent_task_limit: int = 50
    history_limit: int = 100
    stale_error_hours: int = 24

    # Per-call timeouts (milliseconds)
    single_timeout_ms: float = 300000
    pipeline_step_timeout_ms: float = 120000
    ensemble_timeout_ms: float = 180000
    collaboration_step_timeout_ms: float = 90000
    fallback_timeout_ms: float = 120000

    # Collaboration
    max_iterations: int = 5
    stability_threshold: float = 0.9
    convergence_ratio: float = 0.8

    # Fan-out width
    max_concurrent_workers: int = 10

    # Consensus engine
    consensus_history_limit: int = 1000
    consensus_cluster_similarity: float = 0.8
    consensus_quality_threshold: float = 0.7

    # Anthropic
    anthropic_api_key: str = ""

    # Models
    model_haiku: str = "claude-haiku-4-5-20251001"
    model_sonnet: str = "claude-sonnet-4-5-20250929"
    model_opus: str = "claude-opus-4-5-20251101"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def configure_logging(settings: Settings) -> None:
    """Install the structlog pipeline at the configured level."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=False,
    )
