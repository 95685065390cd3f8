from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation ID for per-request tracing across token operations
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}


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
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Keys whose values grant access; only their length is ever logged
_CREDENTIAL_MARKERS = ("password", "secret", "authorization", "token")
# Token metadata that merely mentions "token" in its name
_TOKEN_METADATA_KEYS = {"token_kind", "token_type", "token_count"}
# Identifiers that correlate entries without granting access
_IDENTIFIER_KEYS = {"jti", "token_id", "fingerprint"}
_IDENTIFIER_PREFIX = 8


def _mask_email(value: str) -> str:
    local, _, domain = value.partition("@")
    if not domain:
        return value[:1] + "***"
    return f"{local[:1]}***@{domain}"


def _redact_value(key: str, value: Any) -> Any:
    lower_key = key.lower()
    if lower_key in _TOKEN_METADATA_KEYS or not isinstance(value, str):
        return value
    if lower_key in _IDENTIFIER_KEYS:
        return value[:_IDENTIFIER_PREFIX] + "***" if len(value) > _IDENTIFIER_PREFIX else value
    if "email" in lower_key:
        return _mask_email(value)
    if any(marker in lower_key for marker in _CREDENTIAL_MARKERS):
        return f"<redacted len={len(value)}>"
    return value


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to keep credentials and contact details out of log entries.

    Signed tokens, one-time tokens and secrets are replaced outright. Token
    ids and blacklist fingerprints keep a short prefix and emails keep their
    domain, so operators can still correlate entries.
    """
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        event_dict[key] = _redact_value(key, value)
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
        _redact_pii,
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


# Initialize logging on module import
_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)
