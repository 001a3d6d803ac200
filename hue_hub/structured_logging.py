"""Structured event logging with request correlation ids.

Events are single log lines of the form ``event=<name> {json}``. Context
values under secret keys (bridge application keys) are masked before they
are serialized.
"""

import json
import logging
import uuid
from typing import Any, Dict, Optional

from flask import g, has_request_context, request


logger = logging.getLogger(__name__)

NO_CORRELATION_ID = "none"
SECRET_CONTEXT_KEYS = frozenset({"token", "application_key", "username"})


def mask_secret(value: str) -> str:
    """Keep only the last four characters of a credential."""
    if not value:
        return ""
    if len(value) <= 4:
        return "****"
    return f"****{value[-4:]}"


def get_correlation_id() -> str:
    """Return the current request's correlation id, or "none" outside a request."""
    if not has_request_context():
        return NO_CORRELATION_ID
    if not hasattr(g, "correlation_id"):
        g.correlation_id = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex
    return g.correlation_id


def _scrub(context: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: mask_secret(value) if key in SECRET_CONTEXT_KEYS and isinstance(value, str) else value
        for key, value in context.items()
    }


def _emit(level_name: str, default_level: int, prefix: str, payload: Dict[str, Any]) -> None:
    level = getattr(logging, level_name.upper(), default_level)
    if not isinstance(level, int):
        level = default_level
    logger.log(level, "%s %s", prefix, json.dumps(payload, default=str))


def log_event(
    event_type: str,
    severity: str = "INFO",
    **context: Any,
) -> None:
    """Log a structured event with correlation ID and context.

    Args:
        event_type: Name of the event (e.g., "pairing_transition", "bridge_added")
        severity: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **context: Additional context fields to include in the event
    """
    payload = {"event_type": event_type, "correlation_id": get_correlation_id()}
    payload.update(_scrub(context))
    _emit(severity, logging.INFO, f"event={event_type}", payload)


def log_error(
    operation: str,
    error_type: str,
    message: str,
    resource_id: Optional[str] = None,
    severity: str = "ERROR",
    **context: Any,
) -> None:
    """Log a structured error with full context.

    Args:
        operation: The operation being performed (e.g., "pairing_complete")
        error_type: Category of error (e.g., "registry_rejected", "invariant_violation")
        message: Human-readable error message
        resource_id: Optional bridge id affected by this error
        severity: Log level
        **context: Additional context fields
    """
    payload: Dict[str, Any] = {
        "operation": operation,
        "error_type": error_type,
        "correlation_id": get_correlation_id(),
        "message": message,
    }
    if resource_id:
        payload["resource_id"] = resource_id
    payload.update(_scrub(context))
    _emit(severity, logging.ERROR, f"error operation={operation} type={error_type}", payload)
