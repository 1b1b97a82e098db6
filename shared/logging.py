"""
Structured logging for the access gating service.

Events are rendered as JSON and carry the service prefix of the logger
name, the active trace and span ids, and the correlation fields bound for
the current request (request id, user, course and resource).
"""

import sys
import uuid
import logging
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from opentelemetry import trace

_correlation: ContextVar[Optional[Dict[str, str]]] = ContextVar("gating_correlation", default=None)


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structlog on top of stdlib logging for ``service_name``."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_trace_context,
            add_correlation_context,
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


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    # Logger names look like "gating.engine"; the first segment is the service
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["service"] = logger_name.split(".")[0]
    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        if span_context.span_id != 0:
            event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Copy bound correlation fields without overriding explicit ones."""
    for key, value in (_correlation.get() or {}).items():
        event_dict.setdefault(key, value)
    return event_dict


def bind_correlation(**fields: Optional[str]) -> None:
    """Bind correlation fields for the rest of the current request."""
    current = dict(_correlation.get() or {})
    current.update({key: value for key, value in fields.items() if value})
    _correlation.set(current)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind the caller's request id, or a fresh one."""
    request_id = request_id or str(uuid.uuid4())
    bind_correlation(request_id=request_id)
    return request_id


def set_user_context(user_id: Optional[str] = None, course_id: Optional[str] = None):
    bind_correlation(user_id=user_id, course_id=course_id)


def set_resource_context(resource_type: str, resource_id: str):
    bind_correlation(resource=f"{resource_type}:{resource_id}")


def clear_context():
    _correlation.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
