"""Application configuration using Pydantic Settings.

This module provides centralized configuration for the research engine and its
LLM collaborators. All settings can be overridden via environment variables or
a .env file.
"""

import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        default_model: Model used by any collaborator without its own override.
        decomposer_model: Model that proposes sub-tasks.
        researcher_model: Model that executes sub-tasks.
        synthesizer_model: Model that writes the final report.
        llm_fallback_model: Model tried once after the primary exhausts retries.
        llm_api_base: Optional base URL for an OpenAI-compatible endpoint.
        temperature: Sampling temperature passed to collaborators.
        llm_retry_attempts: Self-repair retries for unparseable decomposer output.
        llm_max_retries: Transport retries for transient provider errors.
        llm_retry_delay_seconds: Base delay for exponential backoff.
        llm_request_timeout_seconds: Timeout for a single LLM request.
        llm_rate_limit_rpm: Requests per minute across all collaborators.
        llm_rate_limit_tpm: Tokens per minute across all collaborators.
        max_sub_tasks: Breadth ceiling; also the default iteration ceiling.
        min_sub_tasks: Completed sub-tasks required before normal completion.
        completion_threshold: Progress fraction required for completion.
        concurrency_limit: Sub-tasks executed at the same time.
        per_task_timeout_seconds: Wall-clock limit for one sub-task.
        failure_penalty_weight: Weight of failed and blocked work in progress.
        search_max_results: Hits requested from the search provider per task.
        max_key_findings: Findings kept in the synthesized report.
        max_recommendations: Recommendations kept in the synthesized report.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    # Model names must include the provider prefix LiteLLM expects (e.g. openai/, anthropic/)
    default_model: str = "openai/gpt-4o-mini"
    decomposer_model: str | None = None
    researcher_model: str | None = None
    synthesizer_model: str | None = None
    llm_fallback_model: str | None = None
    llm_api_base: str | None = None
    temperature: float = 0.3

    # Retries and timeouts
    llm_retry_attempts: int = 2
    llm_max_retries: int = 3
    llm_retry_delay_seconds: float = 1.0
    llm_request_timeout_seconds: int = 120

    # LLM Rate Limiting
    llm_rate_limit_rpm: int = 30  # Requests per minute
    llm_rate_limit_tpm: int = 100000  # Tokens per minute

    # Research bounds
    max_sub_tasks: int = 8
    min_sub_tasks: int = 3
    completion_threshold: float = 0.8
    concurrency_limit: int = 3
    per_task_timeout_seconds: float = 300.0
    failure_penalty_weight: float = 0.5

    # Collaborator tuning
    search_max_results: int = 5
    max_key_findings: int = 10
    max_recommendations: int = 5

    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("completion_threshold", mode="before")
    @classmethod
    def parse_completion_threshold(cls, v: Any) -> Any:
        """Accept the threshold as a fraction or as a percentage.

        Accepts:
        - Fraction: '0.8'
        - Percentage: '80' or '80%'
        """
        if isinstance(v, str):
            v = v.strip().rstrip("%")
            v = float(v) if v else 0.8
        if isinstance(v, int | float) and v > 1:
            return v / 100.0
        return v

    model_config = SettingsConfigDict(
        # Support running from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_for(self, role: str) -> str:
        """Resolve the model for a collaborator role, falling back to the default."""
        override = getattr(self, f"{role}_model", None)
        return override or self.default_model


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)
