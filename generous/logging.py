from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask values whose key looks like a credential (webhook secrets, session tokens)."""
    sensitive = {"password", "secret", "token", "api_key", "authorization", "signature"}
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(marker in lower_key for marker in sensitive):
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 4:
                event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_TRUTHY = {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


def log_execution_summary(
    workflow_id: str,
    execution_id: str,
    node_statuses: Dict[str, str],
    logger: Optional[Any] = None,
) -> None:
    """Log the per-node outcome of a finished execution in one event."""
    log = logger or get_logger("workflow")
    log.info(
        "workflow_execution_summary",
        workflow_id=workflow_id,
        execution_id=execution_id,
        nodes=node_statuses,
    )


# Patterns that indicate internal detail leaking into an error message
_SENSITIVE_ERROR_PATTERNS = [
    r"(?i)(select|insert|update|delete)\s+.{0,40}\s+(from|into|set|where)\s+.{0,50}",
    r"(?i)database\s+error",
    r"(?i)connection\s+.*\s+(failed|refused|timeout)",
    r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
    r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+",
    r"(?i)traceback\s*\(most recent call last\)",
    r'(?i)file\s+"[^"]+",\s+line\s+\d+',
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL, filesystem paths, credentials, and stack frames from an error message.

    Tool executors and storage drivers can put arbitrary text in exception
    messages; everything that reaches an HTTP body or a persisted node result
    goes through here first.

    Args:
        error: Original error message
        replacement: String to replace sensitive content with

    Returns:
        Sanitized error message safe for API responses
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result
