"""Sentry error tracking initialization and configuration.

Error tracking is enabled only when HUE_HUB_SENTRY_DSN is set. Events are
scrubbed of bridge application keys and management bearer tokens before
they leave the process.
"""

import logging
import re
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from .version_info import get_version


REDACTED = "[REDACTED]"
SENSITIVE_HEADERS = {"authorization", "hue-application-key"}
SENSITIVE_ENV_KEYS = {"HUE_HUB_MANAGEMENT_AUTH_TOKEN", "HUE_HUB_SENTRY_DSN"}
_SENSITIVE_QUERY_PATTERN = re.compile(r"([?&](?:token|username)=)[^&]+")
NOISY_PATHS = {"/health", "/ready"}


def _redact_auth_data(event: Dict[str, Any], _hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Redact credentials from a Sentry event.

    Redacts:
    - Authorization and hue-application-key header values
    - token/username query values (the bridge calls its application key "username")
    - Secret environment variable values

    Args:
        event: Sentry event dictionary to filter
        _hint: Additional context - unused but required by API

    Returns:
        Modified event
    """
    request_data = event.get("request")
    if isinstance(request_data, dict):
        headers = request_data.get("headers")
        if isinstance(headers, dict):
            for name in list(headers):
                if name.lower() in SENSITIVE_HEADERS:
                    headers[name] = REDACTED

        url = request_data.get("url")
        if isinstance(url, str):
            request_data["url"] = _SENSITIVE_QUERY_PATTERN.sub(rf"\1{REDACTED}", url)

        query_string = request_data.get("query_string")
        if isinstance(query_string, str):
            request_data["query_string"] = _SENSITIVE_QUERY_PATTERN.sub(
                rf"\1{REDACTED}", f"?{query_string}"
            )[1:]

    env = event.get("contexts", {}).get("env")
    if isinstance(env, dict):
        for key in SENSITIVE_ENV_KEYS:
            if key in env:
                env[key] = REDACTED

    return event


def _breadcrumb_filter(crumb: Dict[str, Any], _hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Drop breadcrumbs for health polling; keep everything else."""
    if crumb.get("category") == "http.client":
        url = crumb.get("data", {}).get("url", "")
        if any(path in url for path in NOISY_PATHS):
            return None
    return crumb


def _traces_sampler(sampling_context: Dict[str, Any]) -> float:
    """Trace every pairing mutation, no health polling, and 10% of other reads."""
    wsgi_environ = sampling_context.get("wsgi_environ", {})
    path = wsgi_environ.get("PATH_INFO", "")
    method = wsgi_environ.get("REQUEST_METHOD", "GET")

    if path in NOISY_PATHS:
        return 0.0
    if method in {"PATCH", "POST", "DELETE"}:
        return 1.0
    return 0.1


def init_sentry(sentry_dsn: Optional[str], environment: str = "production") -> bool:
    """Initialize the Sentry SDK when a DSN is configured.

    Args:
        sentry_dsn: Sentry DSN URL. If None or empty, Sentry stays disabled.
        environment: Environment tag attached to every event.

    Returns:
        True when Sentry was initialized.
    """
    if not sentry_dsn:
        return False

    sentry_sdk.init(  # type: ignore[call-arg]
        dsn=sentry_dsn,
        integrations=[
            FlaskIntegration(transaction_style="endpoint"),
            # WARNING+ lines become breadcrumbs, ERROR+ lines become events.
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        traces_sampler=_traces_sampler,
        release=get_version(),
        before_send=_redact_auth_data,  # type: ignore[arg-type]
        before_breadcrumb=_breadcrumb_filter,
        send_default_pii=False,
        environment=environment,
    )
    sentry_sdk.set_tag("service", "hue_hub")
    return True
