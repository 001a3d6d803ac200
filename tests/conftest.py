"""
Pytest configuration and shared fixtures.
"""

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest


# Add the workspace root to path so ``hue_hub`` imports without installation
WORKSPACE_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(WORKSPACE_ROOT))

from hue_hub.connectivity import ConnectivityProber  # noqa: E402
from hue_hub.credential_store import InMemoryCredentialStore  # noqa: E402
from hue_hub.transport import TransportClient, TransportResponse  # noqa: E402


BRIDGE_IP = "192.168.1.1"
REACHABILITY_URL = f"http://{BRIDGE_IP}/debug/clip.html"
REGISTRATION_URL = f"https://{BRIDGE_IP}/api"
RESOURCE_URL = f"https://{BRIDGE_IP}/clip/v2/resource/bridge"

NO_ROUTE = TransportResponse(0, error="connection failed", category="network")


def registration_success(username: str = "abc123") -> TransportResponse:
    return TransportResponse(
        200, json.dumps([{"success": {"username": username, "clientkey": "F00D"}}])
    )


def registration_error(error_type: int = 101) -> TransportResponse:
    description = "link button not pressed" if error_type == 101 else "unexpected"
    return TransportResponse(
        200,
        json.dumps([{"error": {"type": error_type, "address": "", "description": description}}]),
    )


def bridge_resource_ok() -> TransportResponse:
    return TransportResponse(200, json.dumps({"errors": [], "data": [{"id": "bridge-1"}]}))


class FakeTransport(TransportClient):
    """Scripted transport: responses keyed by (method, url), calls recorded.

    A list of responses is consumed one per call, the last one repeating.
    Unknown URLs answer like an unreachable host.
    """

    def __init__(self) -> None:
        self.routes: Dict[tuple, List[TransportResponse]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.before_response = None

    def route(self, method: str, url: str, *responses: TransportResponse) -> "FakeTransport":
        self.routes[(method, url)] = list(responses)
        return self

    def _respond(self, method: str, url: str, body: Optional[str], headers, cancel):
        self.calls.append({"method": method, "url": url, "body": body, "headers": dict(headers or {})})
        if self.before_response is not None:
            self.before_response(method, url)
        if cancel is not None and cancel.cancelled:
            return TransportResponse(0, error="request cancelled", category="cancelled")
        responses = self.routes.get((method, url))
        if not responses:
            return NO_ROUTE
        if len(responses) > 1:
            return responses.pop(0)
        return responses[0]

    def get(self, url, headers=None, cancel=None):
        return self._respond("GET", url, None, headers, cancel)

    def post(self, url, body, headers=None, cancel=None):
        return self._respond("POST", url, body, headers, cancel)

    def urls(self) -> List[str]:
        return [call["url"] for call in self.calls]


class FakeConnectivityProber(ConnectivityProber):
    def __init__(self, available: bool = True) -> None:
        self.available = available
        self.calls = 0

    def is_local_network_transport_available(self) -> bool:
        self.calls += 1
        return self.available


@pytest.fixture
def workspace_root():
    """Return the absolute path to the workspace root."""
    return WORKSPACE_ROOT


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def prober():
    return FakeConnectivityProber()


@pytest.fixture
def memory_store():
    return InMemoryCredentialStore()


@pytest.fixture
def registry(memory_store):
    from hue_hub.registry import BridgeRegistry

    return BridgeRegistry(memory_store)


@pytest.fixture
def pairing_session(registry, transport, prober):
    from hue_hub.bridge_probes import BridgeReachabilityChecker
    from hue_hub.pairing import BridgePairingSession
    from hue_hub.token_protocol import TokenAcquisitionProtocol

    session = BridgePairingSession(
        registry,
        BridgeReachabilityChecker(transport),
        TokenAcquisitionProtocol(transport, app_name="hue_hub", instance_name="test-host"),
        connectivity_prober=prober,
    )
    yield session
    session.shutdown()


@pytest.fixture
def sequencer(registry, transport, prober):
    from hue_hub.bridge_probes import BridgeReachabilityChecker, TokenValidator
    from hue_hub.health_check import HealthCheckSequencer

    health_check = HealthCheckSequencer(
        registry,
        BridgeReachabilityChecker(transport),
        TokenValidator(transport),
        connectivity_prober=prober,
    )
    yield health_check
    health_check.shutdown()


@pytest.fixture
def hub_config(tmp_path):
    """Return complete config dict with all required runtime keys."""
    return {
        "credential_store_path": str(tmp_path / "bridge-credentials.json"),
        "request_timeout_seconds": 1.0,
        "verify_tls": False,
        "app_name": "hue_hub",
        "instance_name": "test-host",
        "health_check_interval_seconds": 0,
        "bind_host": "127.0.0.1",
        "bind_port": 8000,
        "cors_enabled": False,
        "management_auth_token": "",
        "log_level": "INFO",
        "log_format": "text",
        "log_include_identifiers": False,
        "sentry_dsn": "",
    }
