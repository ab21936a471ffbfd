"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the workflow
coordination backend. All settings can be overridden via environment
variables or a .env file.
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
        database_path: Path to the SQLite database holding workflows,
            sessions, subtasks and artifacts.
        database_busy_timeout_seconds: How long a writer waits for the
            SQLite write lock before giving up.
        project_root: Repository root the agents operate on.
        workflow_branch_prefix: Prefix of the per-workflow working branch
            (the branch is ``{prefix}{workflow_id}``).
        git_diff_timeout_seconds: Upper bound on a single `git diff` call.
        agent_runner: Optional import path (``module:attr``) of the agent
            runtime. When empty, the scripted runner is used.
        max_parallel_tasks: Upper bound on tasks a single fan-out may spawn.
        subtask_liveness_seconds: Deadline after which an idle pending or
            running subtask is failed by the watchdog.
        watchdog_interval_seconds: Interval between watchdog sweeps.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Persistence
    database_path: str = "./data/project.db"
    database_busy_timeout_seconds: float = 30.0

    # Workflow / git
    project_root: str = "."
    workflow_branch_prefix: str = "autarch/"
    git_diff_timeout_seconds: float = 60.0

    # Agent runtime
    agent_runner: str = ""

    # Fan-out limits
    max_parallel_tasks: int = 16

    # Liveness watchdog
    subtask_liveness_seconds: int = 1800
    watchdog_interval_seconds: float = 60.0

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

    def workflow_branch(self, workflow_id: str) -> str:
        """Return the working branch name for a workflow."""
        return f"{self.workflow_branch_prefix}{workflow_id}"


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

# Create a logger for this module
logger = structlog.get_logger(__name__)
