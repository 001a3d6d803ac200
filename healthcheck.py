#!/usr/bin/env python3
"""
Container healthcheck script.

Exits 0 when the hub's /health endpoint answers 200 with ``"status": "ok"``.

Optional environment variables:
  - HEALTHCHECK_URL (default: http://127.0.0.1:8000/health; local hosts only)
  - HEALTHCHECK_TIMEOUT (default: 5 seconds)
"""

import json
import os
import sys
import urllib.error
import urllib.request
from urllib.parse import urlparse


DEFAULT_HEALTHCHECK_URL = "http://127.0.0.1:8000/health"
DEFAULT_HEALTHCHECK_TIMEOUT = 5
LOCAL_HOSTS = {"127.0.0.1", "localhost", "::1"}


def _load_timeout():
    try:
        timeout = float(os.getenv("HEALTHCHECK_TIMEOUT") or DEFAULT_HEALTHCHECK_TIMEOUT)
    except ValueError:
        return DEFAULT_HEALTHCHECK_TIMEOUT
    return timeout if timeout > 0 else DEFAULT_HEALTHCHECK_TIMEOUT


def _is_allowed_url(url):
    """Only local http(s) URLs ending in /health are probed."""
    parsed_url = urlparse(url)
    return (
        parsed_url.scheme in {"http", "https"}
        and parsed_url.hostname in LOCAL_HOSTS
        and parsed_url.path.rstrip("/").endswith("/health")
    )


def _resolve_url():
    url = os.getenv("HEALTHCHECK_URL")
    if not url:
        return DEFAULT_HEALTHCHECK_URL
    if not _is_allowed_url(url):
        print(f"Warning: Invalid HEALTHCHECK_URL '{url}', using default", file=sys.stderr)
        return DEFAULT_HEALTHCHECK_URL
    return url


def _reports_ok(body):
    try:
        payload = json.loads(body)
    except ValueError:
        return False
    return isinstance(payload, dict) and payload.get("status") == "ok"


def check_health():
    """Return True when the hub answers its health endpoint with status ok."""
    try:
        with urllib.request.urlopen(_resolve_url(), timeout=_load_timeout()) as response:  # nosec B310 - local URL only
            return response.status == 200 and _reports_ok(response.read())
    except (urllib.error.URLError, TimeoutError, OSError):
        return False


if __name__ == "__main__":
    sys.exit(0 if check_health() else 1)
