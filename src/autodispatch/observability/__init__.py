"""Public observability primitives: structured logging."""

from autodispatch.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    correlation_scope,
    get_active_logging_handle,
    redact_event,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "StructuredLoggingHandle",
    "correlation_scope",
    "get_active_logging_handle",
    "redact_event",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
