import json

import pytest
from conftest import BRIDGE_IP, REACHABILITY_URL, RESOURCE_URL, bridge_resource_ok

from hue_hub.bridge_probes import TOKEN_HEADER, BridgeReachabilityChecker, TokenValidator
from hue_hub.transport import CancellationToken, TransportResponse


def test_reachable_on_2xx(transport):
    transport.route("GET", REACHABILITY_URL, TransportResponse(200, "<html/>"))

    assert BridgeReachabilityChecker(transport).is_reachable(BRIDGE_IP) is True
    assert transport.urls() == [REACHABILITY_URL]


@pytest.mark.parametrize(
    "response",
    [
        TransportResponse(404),
        TransportResponse(500),
        TransportResponse(0, error="timed out", category="timeout"),
    ],
)
def test_unreachable_on_failure(transport, response):
    transport.route("GET", REACHABILITY_URL, response)

    assert BridgeReachabilityChecker(transport).is_reachable(BRIDGE_IP) is False


@pytest.mark.parametrize("ip", ["", "19216811", "192.168.1.300"])
def test_invalid_ip_is_unreachable_without_network(transport, ip):
    assert BridgeReachabilityChecker(transport).is_reachable(ip) is False
    assert transport.calls == []


def test_reachability_honours_cancellation(transport):
    transport.route("GET", REACHABILITY_URL, TransportResponse(200))
    token = CancellationToken()
    token.cancel()

    assert BridgeReachabilityChecker(transport).is_reachable(BRIDGE_IP, token) is False


def test_token_valid_sends_application_key_header(transport):
    transport.route("GET", RESOURCE_URL, bridge_resource_ok())

    assert TokenValidator(transport).is_token_valid(BRIDGE_IP, "abc123") is True
    assert transport.calls[0]["headers"] == {TOKEN_HEADER: "abc123"}


@pytest.mark.parametrize(
    "response",
    [
        TransportResponse(403, json.dumps({"errors": [{"description": "unauthorized user"}]})),
        TransportResponse(200, json.dumps({"errors": [{"description": "unauthorized user"}]})),
        TransportResponse(200, json.dumps([{"error": {"type": 1, "description": "unauthorized user"}}])),
        TransportResponse(200, "<html>not json</html>"),
        TransportResponse(0, error="connection failed", category="network"),
    ],
)
def test_token_invalid_when_rejected_or_unreachable(transport, response):
    transport.route("GET", RESOURCE_URL, response)

    assert TokenValidator(transport).is_token_valid(BRIDGE_IP, "abc123") is False


def test_token_validation_skips_network_for_blank_token_or_bad_ip(transport):
    validator = TokenValidator(transport)

    assert validator.is_token_valid(BRIDGE_IP, "") is False
    assert validator.is_token_valid("not-an-ip", "abc123") is False
    assert transport.calls == []
