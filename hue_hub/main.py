import logging
import signal
import time
from typing import Any, Dict, Optional

from flask import Flask, g, request
from flask_cors import CORS
from werkzeug.serving import make_server

from .hub import BridgeHub
from .logging_config import configure_logging
from .management_api import register_hub_routes
from .runtime_config import load_config
from .sentry_config import init_sentry


logger = logging.getLogger(__name__)


def _register_request_logging(app: Flask) -> None:
    health_endpoints = {"/health"}

    @app.before_request
    def _track_request_start() -> None:
        g.request_started_monotonic = time.monotonic()

    @app.after_request
    def _log_request(response):
        request_started = getattr(g, "request_started_monotonic", None)
        latency_ms = 0.0
        if request_started is not None:
            latency_ms = (time.monotonic() - request_started) * 1000

        level = logging.DEBUG if request.path in health_endpoints else logging.INFO
        logger.log(
            level,
            "request method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.path,
            response.status_code,
            latency_ms,
        )
        return response


def create_app(config: Optional[Dict[str, Any]] = None, hub: Optional[BridgeHub] = None) -> Flask:
    """Build the Flask app and the bridge hub behind it.

    Args:
        config: Configuration dict; loaded from the environment when None.
        hub: Pre-built hub (tests); built from config when None.

    Returns:
        Flask app with ``app.hub`` set. The periodic health monitor is running.
    """
    cfg = load_config() if config is None else config
    init_sentry(cfg.get("sentry_dsn"))

    if hub is None:
        hub = BridgeHub.from_config(cfg)

    app = Flask(__name__)
    app.hub = hub
    _register_request_logging(app)

    if cfg.get("cors_enabled"):
        CORS(app, resources={r"/*": {"origins": ["*"]}})

    register_hub_routes(app, hub, auth_token=cfg.get("management_auth_token"))
    hub.start()

    logger.info(
        "hue_hub_initialized: auth_required=%s, credential_store=%s",
        bool(cfg.get("management_auth_token")),
        cfg.get("credential_store_path"),
    )
    return app


def handle_shutdown(app: Flask, signum: int, _frame: Optional[object]) -> None:
    hub = getattr(app, "hub", None)
    if isinstance(hub, BridgeHub):
        hub.shutdown()
    raise SystemExit(signum)


def main() -> None:
    cfg = load_config()
    configure_logging(cfg["log_level"], cfg["log_format"], cfg["log_include_identifiers"])
    app = create_app(cfg)
    signal.signal(signal.SIGTERM, lambda signum, frame: handle_shutdown(app, signum, frame))
    signal.signal(signal.SIGINT, lambda signum, frame: handle_shutdown(app, signum, frame))
    server = make_server(cfg["bind_host"], cfg["bind_port"], app, threaded=True)
    logger.info("hue_hub_listening: host=%s port=%s", cfg["bind_host"], cfg["bind_port"])
    server.serve_forever()


if __name__ == "__main__":
    main()
