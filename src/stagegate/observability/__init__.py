"""Observability: structured logging and correlation context."""

from stagegate.observability.logging import (
    LoggingConfig,
    LoggingHandle,
    configure_structlog,
    correlation_scope,
    redact_text,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "LoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "redact_text",
    "setup_logging",
    "shutdown_logging",
]
