"""Structured logging configuration for Harbormaster.

This module configures structlog with support for:
- JSON and console output formats
- File rotation based on size
- A deployment ID attached to every event of one invocation
- Environment and container context binding

Log output goes to stderr so that it never mixes with the step-by-step
progress the CLI prints on stdout.

Example usage:
    >>> from harbormaster.config import LoggingConfig
    >>> from harbormaster.logging import setup_logging, get_logger, bind_deployment_context
    >>>
    >>> setup_logging(LoggingConfig(level="INFO", format="json"))
    >>> logger = get_logger(__name__)
    >>> bind_deployment_context(environment="staging", container_name="todos-staging")
    >>> logger.info("deployment_started", image="ghcr.io/acme/todos:1.4.0")
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import sys
from typing import Any

import structlog

from harbormaster.config import LoggingConfig

_deployment_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "deployment_id", default=None
)


def add_deployment_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add deployment_id to log event if set in context.

    Args:
        logger: Logger instance (unused, required by structlog protocol)
        method_name: Log method name (unused, required by structlog protocol)
        event_dict: Current event dictionary to augment

    Returns:
        Event dictionary with deployment_id added if available
    """
    deployment_id = _deployment_id.get()
    if deployment_id is not None:
        event_dict["deployment_id"] = deployment_id
    return event_dict


def set_deployment_id(deployment_id: str | None) -> None:
    """Set the deployment ID for the current context."""
    _deployment_id.set(deployment_id)


def get_deployment_id() -> str | None:
    """Get the deployment ID of the current context."""
    return _deployment_id.get()


def bind_deployment_context(environment: str, container_name: str) -> None:
    """Bind environment and container name to all subsequent logs.

    Args:
        environment: Target environment identity (e.g. staging, production)
        container_name: Canonical container name being deployed
    """
    structlog.contextvars.bind_contextvars(
        environment=environment, container_name=container_name
    )


def setup_logging(config: LoggingConfig) -> None:
    """Configure structlog with the given configuration.

    Sets up the complete logging pipeline including:
    - JSON or console rendering based on config.format
    - File rotation if config.file is specified, stderr otherwise
    - Timestamp, log level, and logger name processors
    - Deployment ID processor
    - One rendered line per event, exceptions included as a field

    Args:
        config: Logging configuration from HarbormasterConfig
    """
    log_level = getattr(logging, config.level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    if config.file is not None:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.handlers.RotatingFileHandler(
            filename=config.file,
            maxBytes=config.rotation_size_mb * 1024 * 1024,
            backupCount=config.retention_count,
            encoding="utf-8",
        )
    else:
        handler = logging.StreamHandler(sys.stderr)

    handler.setLevel(log_level)
    root_logger.addHandler(handler)

    if config.format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    shared_processors: list[Any] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        add_deployment_id,
    ]

    # Records from docker and httpx render through the same formatter
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                renderer,
            ],
        )
    )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Configured structlog BoundLogger instance
    """
    return structlog.get_logger(name)
