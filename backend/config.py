"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the Campaign Saga backend.
All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        default_model: LiteLLM model used by the stage agents.
        llm_fallback_model: Model tried once when the primary keeps failing.
        use_mock_llm: If True, stage agents answer with canned JSON.
        llm_max_retries: Retries for transient LLM errors.
        llm_request_timeout_seconds: Timeout for a single LLM request.
        llm_rate_limit_rpm: Requests per minute allowed by the rate limiter.
        llm_rate_limit_tpm: Tokens per minute allowed by the rate limiter.
        dispatch_max_attempts: Queue submission attempts before a dispatch fails.
        dispatch_retry_delay_seconds: Base delay for linear dispatch backoff.
        handler_max_redeliveries: Redeliveries of a failing Completed event
            before it is dead-lettered.
        handler_retry_delay_seconds: Base delay for linear redelivery backoff.
        worker_concurrency: Number of concurrent worker loops.
        notification_put_timeout_seconds: Per-subscriber delivery timeout.
        topic_token_secret: HMAC secret for topic subscriber tokens.
        topic_token_ttl_minutes: Lifetime of a subscriber token.
        status_poll_attempts: Attempts made by the status poller.
        status_poll_interval_seconds: Delay between status polls.
        stage_timeouts_seconds: Client-side "taking longer" threshold per stage.
        database_path: SQLite database file.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    default_model: str = "openai/gpt-4o-mini"
    llm_fallback_model: str | None = None
    use_mock_llm: bool = False
    llm_max_retries: int = 3
    llm_request_timeout_seconds: int = 120

    # LLM Rate Limiting
    llm_rate_limit_rpm: int = 30  # Requests per minute
    llm_rate_limit_tpm: int = 100000  # Tokens per minute

    # Dispatch & Delivery
    dispatch_max_attempts: int = 3
    dispatch_retry_delay_seconds: float = 0.5
    handler_max_redeliveries: int = 3
    handler_retry_delay_seconds: float = 1.0
    worker_concurrency: int = 2

    # Notifications
    notification_put_timeout_seconds: float = 5.0
    topic_token_secret: str = "change-me-topic-secret-at-least-32-bytes"
    topic_token_ttl_minutes: int = 60

    # Status polling fallback
    status_poll_attempts: int = 30
    status_poll_interval_seconds: float = 1.0
    stage_timeouts_seconds: dict[str, float] = {
        "persona": 120.0,
        "competitor_detection": 180.0,
        "competitor_analysis": 300.0,
        "strategy": 300.0,
        "assets": 240.0,
    }

    # Database Configuration
    database_path: str = "./data/campaigns.db"

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
        - Single value: 'http://localhost:3000'
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

logger = structlog.get_logger(__name__)
