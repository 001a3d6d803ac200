import logging
import os
import socket
from typing import Any, Dict

from .token_protocol import DEFAULT_APP_NAME, MAX_APP_NAME_LENGTH, MAX_INSTANCE_NAME_LENGTH


logger = logging.getLogger(__name__)

ENV_PREFIX = "HUE_HUB_"

DEFAULT_CREDENTIAL_STORE_PATH = "/data/bridge-credentials.json"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 5.0
MAX_REQUEST_TIMEOUT_SECONDS = 60.0
DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS = 300.0
DEFAULT_BIND_HOST = "127.0.0.1"
DEFAULT_PORT = 8000

_TRUE_VALUES = ("1", "true", "yes", "on")


def _env(name: str, default: str = "") -> str:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name, "")
    if not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _load_bridge_config() -> Dict[str, Any]:
    """Load bridge transport and pairing identity settings.

    Env vars:
    - HUE_HUB_CREDENTIAL_STORE_PATH (default: /data/bridge-credentials.json)
    - HUE_HUB_REQUEST_TIMEOUT_SECONDS (0 < t <= 60, default: 5.0)
    - HUE_HUB_VERIFY_TLS (default: false; bridges use self-signed certificates)
    - HUE_HUB_APP_NAME (max 20 chars, default: hue_hub)
    - HUE_HUB_INSTANCE_NAME (max 19 chars, default: hostname)

    Invalid values fall back to defaults with a warning.
    """
    raw_timeout = _env("REQUEST_TIMEOUT_SECONDS", str(DEFAULT_REQUEST_TIMEOUT_SECONDS))
    try:
        request_timeout = float(raw_timeout)
    except ValueError:
        logger.warning(
            "Invalid HUE_HUB_REQUEST_TIMEOUT_SECONDS value '%s', using default %.1f",
            raw_timeout,
            DEFAULT_REQUEST_TIMEOUT_SECONDS,
        )
        request_timeout = DEFAULT_REQUEST_TIMEOUT_SECONDS
    if not 0 < request_timeout <= MAX_REQUEST_TIMEOUT_SECONDS:
        logger.warning(
            "Invalid HUE_HUB_REQUEST_TIMEOUT_SECONDS range '%s', using default %.1f",
            raw_timeout,
            DEFAULT_REQUEST_TIMEOUT_SECONDS,
        )
        request_timeout = DEFAULT_REQUEST_TIMEOUT_SECONDS

    app_name = _env("APP_NAME", DEFAULT_APP_NAME).strip() or DEFAULT_APP_NAME
    if len(app_name) > MAX_APP_NAME_LENGTH:
        logger.warning("HUE_HUB_APP_NAME longer than %s chars, truncating", MAX_APP_NAME_LENGTH)
        app_name = app_name[:MAX_APP_NAME_LENGTH]

    instance_name = _env("INSTANCE_NAME", "").strip() or socket.gethostname()
    if len(instance_name) > MAX_INSTANCE_NAME_LENGTH:
        instance_name = instance_name[:MAX_INSTANCE_NAME_LENGTH]

    return {
        "credential_store_path": _env("CREDENTIAL_STORE_PATH", "").strip()
        or DEFAULT_CREDENTIAL_STORE_PATH,
        "request_timeout_seconds": request_timeout,
        "verify_tls": _env_bool("VERIFY_TLS"),
        "app_name": app_name,
        "instance_name": instance_name,
    }


def _load_health_check_config() -> Dict[str, Any]:
    """Load the periodic health-check interval (HUE_HUB_HEALTH_CHECK_INTERVAL_SECONDS, 0 disables)."""
    raw_interval = _env(
        "HEALTH_CHECK_INTERVAL_SECONDS", str(DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS)
    )
    try:
        interval = float(raw_interval)
    except ValueError:
        logger.warning(
            "Invalid HUE_HUB_HEALTH_CHECK_INTERVAL_SECONDS value '%s', using default %.0f",
            raw_interval,
            DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS,
        )
        interval = DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS
    if interval < 0:
        logger.warning(
            "Invalid HUE_HUB_HEALTH_CHECK_INTERVAL_SECONDS range '%s', using default %.0f",
            raw_interval,
            DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS,
        )
        interval = DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS
    return {"health_check_interval_seconds": interval}


def _load_networking_config() -> Dict[str, Any]:
    """Load HTTP bind, CORS and management auth settings.

    Env vars:
    - HUE_HUB_BIND_HOST (default: 127.0.0.1)
    - HUE_HUB_PORT (1-65535, default: 8000)
    - HUE_HUB_CORS_ENABLED (default: false)
    - HUE_HUB_MANAGEMENT_AUTH_TOKEN (bearer token for /api/*, empty disables)
    """
    bind_host = _env("BIND_HOST", DEFAULT_BIND_HOST).strip() or DEFAULT_BIND_HOST
    raw_port = _env("PORT", str(DEFAULT_PORT))
    try:
        bind_port = int(raw_port)
    except ValueError:
        logger.warning("Invalid HUE_HUB_PORT value '%s', using default %s", raw_port, DEFAULT_PORT)
        bind_port = DEFAULT_PORT
    if not 1 <= bind_port <= 65535:
        logger.warning("Invalid HUE_HUB_PORT range '%s', using default %s", raw_port, DEFAULT_PORT)
        bind_port = DEFAULT_PORT

    return {
        "bind_host": bind_host,
        "bind_port": bind_port,
        "cors_enabled": _env_bool("CORS_ENABLED"),
        "management_auth_token": _env("MANAGEMENT_AUTH_TOKEN", "").strip(),
    }


def _load_observability_config() -> Dict[str, Any]:
    return {
        "log_level": _env("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        "log_format": _env("LOG_FORMAT", "text").strip().lower() or "text",
        "log_include_identifiers": _env_bool("LOG_INCLUDE_IDENTIFIERS"),
        "sentry_dsn": _env("SENTRY_DSN", "").strip(),
    }


def load_config() -> Dict[str, Any]:
    """Load all configuration from HUE_HUB_* environment variables.

    Returns:
        Flat configuration dict consumed by ``BridgeHub.from_config`` and ``create_app``.
    """
    config: Dict[str, Any] = {}
    config.update(_load_bridge_config())
    config.update(_load_health_check_config())
    config.update(_load_networking_config())
    config.update(_load_observability_config())
    return config
