"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the Kilatflow backend.
All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderLimit(BaseModel):
    """Shared request budget for one generation provider.

    Attributes:
        max_rpm: Maximum admitted requests per window across all instances.
        max_concurrent: Maximum in-flight requests across all instances.
        window_ms: Length of the fixed admission window in milliseconds.
    """

    max_rpm: int
    max_concurrent: int
    window_ms: int = 60_000


DEFAULT_PROVIDER_LIMITS: dict[str, ProviderLimit] = {
    "groq": ProviderLimit(max_rpm=25, max_concurrent=3),
    "pollinations": ProviderLimit(max_rpm=50, max_concurrent=15),
    "openrouter": ProviderLimit(max_rpm=150, max_concurrent=10),
    "default": ProviderLimit(max_rpm=30, max_concurrent=5),
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        default_model: Model used for sub-task generation.
        decomposer_model: Model used to split a request into a task plan.
        reviewer_model: Model used for review, fix and merge calls.
        fallback_model: Model tried once after the primary exhausts retries.
        use_mock_llm: If True, use mock LLM responses for testing.
        task_timeout_seconds: Upper bound on a single sub-task.
        admission_timeout_seconds: How long a call may wait for a rate-limit slot.
        verification_max_attempts: Validate/fix rounds per result.
        verification_timeout_seconds: Bound on the whole verification stage.
        decomposition_fallback_enabled: Run a single-task plan when
            decomposition fails instead of failing the request.
        redis_url: Shared store for the distributed rate limiter. Empty means
            every instance uses its local fallback budget.
        provider_limits_json: JSON object overriding ``DEFAULT_PROVIDER_LIMITS``.
        database_path: SQLite file holding jobs and traces.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    # Model names must include provider prefix for LiteLLM (e.g., groq/, openrouter/)
    default_model: str = "groq/llama-3.3-70b-versatile"
    decomposer_model: str = "groq/llama-3.3-70b-versatile"
    reviewer_model: str = "groq/llama-3.3-70b-versatile"
    fallback_model: str | None = None
    embedding_model: str = "text-embedding-3-small"
    use_mock_llm: bool = False
    llm_max_retries: int = 3
    llm_request_timeout_seconds: int = 120

    # Orchestration
    task_timeout_seconds: float = 60.0
    admission_timeout_seconds: float = 30.0
    verification_max_attempts: int = 5
    verification_timeout_seconds: float = 45.0
    decomposition_fallback_enabled: bool = False
    context_preview_chars: int = 200
    context_summary_max_chars: int = 4000
    merge_preview_chars: int = 500

    # Distributed rate limiting
    redis_url: str = ""
    rate_limit_estimated_instances: int = 5
    rate_limit_concurrency_ttl_seconds: int = 300
    rate_limit_retry_hint_ms: int = 1000
    rate_limit_max_backoff_ms: int = 5000
    provider_limits_json: str = ""

    # Cache tiers
    durable_cache_max_age_hours: float = 72.0
    durable_cache_scan_limit: int = 100
    durable_cache_threshold: float = 0.7
    response_cache_threshold: float = 0.75
    response_cache_ttl_seconds: int = 3600
    response_cache_max_entries: int = 500
    semantic_cache_threshold: float = 0.8
    semantic_cache_max_entries: int = 1000

    # Database Configuration
    database_path: str = "./data/kilatflow.db"
    trace_retention_days: int = 7

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def provider_limits(self) -> dict[str, ProviderLimit]:
        """Per-provider limits with any JSON overrides applied.

        ``PROVIDER_LIMITS_JSON='{"groq": {"max_rpm": 10, "max_concurrent": 2}}'``
        replaces the groq entry and keeps the other defaults.
        """
        limits = dict(DEFAULT_PROVIDER_LIMITS)
        if self.provider_limits_json.strip():
            overrides = json.loads(self.provider_limits_json)
            for provider, raw in overrides.items():
                limits[provider.lower()] = ProviderLimit.model_validate(raw)
        return limits


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
        structlog.processors.format_exc_info,
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
