"""
Shared logging configuration for the Access Token Broker.

Events are rendered as JSON lines on stdout. Every event carries the service
name and, inside a request, the request id and the verified subject. Token
material never reaches the renderer: values under the keys in
``SENSITIVE_KEYS`` are replaced before rendering, including inside nested
``details`` mappings.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Callable, Dict, Optional

import structlog

# Correlation context for the current request
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)

SENSITIVE_KEYS = frozenset({
    "access_token",
    "assertion",
    "authorization",
    "google_sa_json",
    "id_token",
    "private_key",
})
REDACTED = "[redacted]"

Processor = Callable[[Any, str, Dict[str, Any]], Dict[str, Any]]


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structured JSON logging for a service."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            service_context(service_name),
            add_correlation_context,
            redact_sensitive,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def service_context(service_name: str) -> Processor:
    """Processor stamping events with the owning service."""

    def add_service(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request and subject correlation to log events."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    user_id = user_id_var.get()
    if user_id:
        event_dict["user_id"] = user_id

    return event_dict


def redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Replace token material with a placeholder."""
    return _redact(event_dict)


def _redact(values: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in values.items():
        if key.lower() in SENSITIVE_KEYS:
            values[key] = REDACTED
        elif isinstance(value, dict):
            values[key] = _redact(dict(value))
    return values


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context, generating one when the caller sent none."""
    if not request_id:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_user_context(user_id: Optional[str] = None):
    """Bind the verified subject to subsequent log events."""
    if user_id:
        user_id_var.set(user_id)


def clear_context():
    """Clear all context variables."""
    request_id_var.set(None)
    user_id_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
