"""HTTP management API for pairing bridges and inspecting their health.

All ``/api/*`` routes are guarded by an optional bearer token. Bridge
application keys are masked in every response.
"""

import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Flask, jsonify, request

from .credential_store import CredentialStoreError
from .hub import BridgeHub
from .pairing import (
    InvalidTransitionError,
    PairingBusyError,
    PairingInvariantError,
    PairingSnapshot,
)
from .registry import RegistryError, UnknownBridgeError
from .structured_logging import get_correlation_id, log_error
from .version_info import get_version


logger = logging.getLogger(__name__)


def _extract_bearer_token() -> Optional[str]:
    """Extract bearer token from Authorization header.

    Returns:
        Bearer token string if present and valid, None otherwise.
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None


def _error_response(
    code: str,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
):
    """Build standardized error response JSON.

    Args:
        code: Error code (e.g., 'PAIRING_BUSY').
        message: Error message.
        status_code: HTTP status code.
        details: Optional error details dict.

    Returns:
        Tuple of (jsonify response, status_code).
    """
    payload: Dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    }
    return jsonify(payload), status_code


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _pairing_response(snapshot: PairingSnapshot, status_code: int = 200):
    return jsonify({"pairing": snapshot.to_dict()}), status_code


def register_hub_routes(app: Flask, hub: BridgeHub, auth_token: Optional[str] = None) -> None:
    """Register health, pairing, bridge and health-check routes.

    Args:
        app: Flask application instance.
        hub: Wired hub whose pairing session, registry and sequencer back the routes.
        auth_token: Bearer token required on /api/* routes. Empty or None disables auth.
    """

    @app.before_request
    def _management_auth_guard() -> Optional[Tuple[Any, int]]:
        if not auth_token or not request.path.startswith("/api/"):
            return None
        token = _extract_bearer_token()
        if token is None or not hmac.compare_digest(token, auth_token):
            return _error_response("UNAUTHORIZED", "authentication required", 401)
        return None

    def _run_pairing_step(step: Callable[[], PairingSnapshot]):
        try:
            return _pairing_response(step())
        except PairingBusyError as exc:
            return _error_response(
                "PAIRING_BUSY", str(exc), 409, details={"pairing": hub.pairing.snapshot().to_dict()}
            )
        except InvalidTransitionError as exc:
            return _error_response(
                "INVALID_PAIRING_TRANSITION",
                str(exc),
                409,
                details={"state": exc.state.name, "operation": exc.operation},
            )
        except PairingInvariantError as exc:
            log_error("pairing_api", "invariant_violation", str(exc), path=request.path)
            return _error_response(
                "PAIRING_ABORTED", str(exc), 500, details={"pairing": hub.pairing.snapshot().to_dict()}
            )

    @app.route("/health", methods=["GET"])
    def health():
        return (
            jsonify(
                {
                    "status": "ok",
                    "version": get_version(),
                    "bridges": len(hub.registry),
                    "health_check_status": hub.health_check.status.name,
                    "pairing_state": hub.pairing.state.name,
                }
            ),
            200,
        )

    @app.route("/api/pairing", methods=["GET"])
    def get_pairing():
        return _pairing_response(hub.pairing.snapshot())

    @app.route("/api/pairing/begin", methods=["POST"])
    def begin_pairing():
        human_name = _json_body().get("human_name", "")
        if not isinstance(human_name, str):
            return _error_response("VALIDATION_ERROR", "human_name must be a string", 400)
        return _run_pairing_step(lambda: hub.pairing.begin(human_name=human_name.strip()))

    @app.route("/api/pairing/ip", methods=["POST"])
    def submit_pairing_ip():
        candidate = _json_body().get("ip")
        return _run_pairing_step(lambda: hub.pairing.submit_ip(candidate))

    @app.route("/api/pairing/button", methods=["POST"])
    def confirm_pairing_button():
        return _run_pairing_step(hub.pairing.confirm_button_pressed)

    @app.route("/api/pairing/acknowledge", methods=["POST"])
    def acknowledge_pairing_error():
        return _run_pairing_step(hub.pairing.acknowledge_error)

    @app.route("/api/pairing/back", methods=["POST"])
    def pairing_back():
        return _run_pairing_step(hub.pairing.go_back)

    @app.route("/api/pairing/complete", methods=["POST"])
    def complete_pairing():
        try:
            record = hub.pairing.complete()
        except InvalidTransitionError as exc:
            return _error_response(
                "INVALID_PAIRING_TRANSITION",
                str(exc),
                409,
                details={"state": exc.state.name, "operation": exc.operation},
            )
        except PairingInvariantError as exc:
            log_error("pairing_api", "invariant_violation", str(exc), path=request.path)
            return _error_response("PAIRING_ABORTED", str(exc), 500)

        snapshot = hub.pairing.snapshot().to_dict()
        if record is None:
            return _error_response(
                "BRIDGE_NOT_ADDED",
                "the paired bridge could not be added to the registry",
                409,
                details={"pairing": snapshot},
            )
        return jsonify({"bridge": record.to_dict(), "pairing": snapshot}), 201

    @app.route("/api/bridges", methods=["GET"])
    def list_bridges():
        bridges = sorted(hub.registry.list_bridges(), key=lambda record: record.id)
        return jsonify({"bridges": [record.to_dict() for record in bridges]}), 200

    @app.route("/api/bridges/<bridge_id>", methods=["GET"])
    def get_bridge(bridge_id: str):
        record = hub.registry.get_bridge(bridge_id)
        if record is None:
            return _error_response("BRIDGE_NOT_FOUND", f"bridge {bridge_id} not found", 404)
        return jsonify({"bridge": record.to_dict()}), 200

    @app.route("/api/bridges/<bridge_id>", methods=["PATCH"])
    def update_bridge(bridge_id: str):
        """Apply a partial update: ``ip``, ``human_name`` and/or ``connected``."""
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return _error_response("VALIDATION_ERROR", "bridge patch must be an object", 400)

        unknown_fields = sorted(set(payload) - {"ip", "human_name", "connected"})
        if unknown_fields:
            return _error_response(
                "VALIDATION_ERROR",
                "unsupported fields in bridge patch",
                400,
                details={"fields": unknown_fields},
            )
        if "human_name" in payload and not isinstance(payload["human_name"], str):
            return _error_response("VALIDATION_ERROR", "human_name must be a string", 400)
        if "connected" in payload and not isinstance(payload["connected"], bool):
            return _error_response("VALIDATION_ERROR", "connected must be a boolean", 400)

        try:
            record = hub.registry.get_bridge(bridge_id)
            if record is None:
                message = f"bridge {bridge_id} not found"
                raise UnknownBridgeError(message)
            if "ip" in payload:
                record = hub.registry.change_ip(bridge_id, payload["ip"])
            if "human_name" in payload:
                record = hub.registry.rename(bridge_id, payload["human_name"].strip())
            if "connected" in payload:
                record = hub.registry.set_connected(bridge_id, payload["connected"])
        except UnknownBridgeError as exc:
            return _error_response("BRIDGE_NOT_FOUND", str(exc), 404)
        except RegistryError as exc:
            return _error_response("VALIDATION_ERROR", str(exc), 400)
        except CredentialStoreError as exc:
            log_error("bridge_update", "credential_store", str(exc), resource_id=bridge_id)
            return _error_response("CREDENTIAL_STORE_ERROR", str(exc), 503)
        return jsonify({"bridge": record.to_dict()}), 200

    @app.route("/api/bridges/<bridge_id>", methods=["DELETE"])
    def delete_bridge(bridge_id: str):
        try:
            hub.registry.remove_bridge(bridge_id)
        except UnknownBridgeError as exc:
            return _error_response("BRIDGE_NOT_FOUND", str(exc), 404)
        except CredentialStoreError as exc:
            log_error("bridge_delete", "credential_store", str(exc), resource_id=bridge_id)
            return _error_response("CREDENTIAL_STORE_ERROR", str(exc), 503)
        return "", 204

    @app.route("/api/health-check", methods=["GET"])
    def get_health_check():
        report = hub.health_check.last_report
        return (
            jsonify(
                {
                    "status": hub.health_check.status.name,
                    "last_report": report.to_dict() if report else None,
                }
            ),
            200,
        )

    @app.route("/api/health-check", methods=["POST"])
    def run_health_check():
        """Run a health check; ``{"wait": false}`` schedules it and returns 202."""
        if _json_body().get("wait", True) is False:
            hub.health_check.run_async()
            logger.info("health_check_scheduled: correlation_id=%s", get_correlation_id())
            return jsonify({"status": "scheduled"}), 202
        report = hub.health_check.run()
        return jsonify({"report": report.to_dict()}), 200
