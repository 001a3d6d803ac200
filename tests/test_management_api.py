import pytest
from conftest import (
    BRIDGE_IP,
    REACHABILITY_URL,
    REGISTRATION_URL,
    RESOURCE_URL,
    FakeConnectivityProber,
    bridge_resource_ok,
    registration_error,
    registration_success,
)

from hue_hub.credential_store import FileCredentialStore, InMemoryCredentialStore
from hue_hub.hub import BridgeHub
from hue_hub.main import create_app
from hue_hub.transport import TransportResponse


@pytest.fixture
def store():
    return InMemoryCredentialStore()


@pytest.fixture
def hub(hub_config, transport, store):
    bridge_hub = BridgeHub.from_config(
        hub_config,
        transport=transport,
        credential_store=store,
        connectivity_prober=FakeConnectivityProber(),
    )
    yield bridge_hub
    bridge_hub.shutdown()


@pytest.fixture
def client(hub_config, hub):
    return create_app(hub_config, hub=hub).test_client()


def _paired_client(client, transport, name="Living room"):
    transport.route("GET", REACHABILITY_URL, TransportResponse(200))
    transport.route("POST", REGISTRATION_URL, registration_success("0123456789abcdef"))
    client.post("/api/pairing/begin", json={"human_name": name})
    client.post("/api/pairing/ip", json={"ip": BRIDGE_IP})
    client.post("/api/pairing/button")
    return client.post("/api/pairing/complete")


def test_health_reports_hub_summary(client):
    response = client.get("/health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "ok"
    assert payload["bridges"] == 0
    assert payload["health_check_status"] == "NOT_TESTED"
    assert payload["pairing_state"] == "NOT_INITIALIZING"


def test_full_pairing_flow_registers_bridge_with_masked_token(client, transport, store):
    response = _paired_client(client, transport)

    assert response.status_code == 201
    payload = response.get_json()
    assert payload["bridge"]["ip"] == BRIDGE_IP
    assert payload["bridge"]["human_name"] == "Living room"
    assert payload["bridge"]["token"] == "****cdef"
    assert payload["pairing"]["state"] == "NOT_INITIALIZING"
    assert store.get_token(payload["bridge"]["id"]) == "0123456789abcdef"

    listing = client.get("/api/bridges").get_json()
    assert [bridge["id"] for bridge in listing["bridges"]] == [payload["bridge"]["id"]]


def test_pairing_steps_report_state(client, transport):
    transport.route("GET", REACHABILITY_URL, TransportResponse(200))
    transport.route("POST", REGISTRATION_URL, registration_error(101))

    begin = client.post("/api/pairing/begin", json={"human_name": "  Hall  "})
    assert begin.get_json()["pairing"]["state"] == "STAGE_1_GET_IP"
    assert begin.get_json()["pairing"]["pending_bridge"]["human_name"] == "Hall"

    bad_ip = client.post("/api/pairing/ip", json={"ip": "192.168.1"})
    assert bad_ip.status_code == 200
    assert bad_ip.get_json()["pairing"]["state"] == "STAGE_1_ERROR_BAD_IP_FORMAT"
    assert bad_ip.get_json()["pairing"]["is_error"] is True

    client.post("/api/pairing/acknowledge")
    ip = client.post("/api/pairing/ip", json={"ip": BRIDGE_IP})
    assert ip.get_json()["pairing"]["state"] == "STAGE_2_PRESS_BRIDGE_BUTTON"

    button = client.post("/api/pairing/button")
    assert button.get_json()["pairing"]["state"] == "STAGE_2_ERROR_BUTTON_NOT_PUSHED"

    back = client.post("/api/pairing/back")
    assert back.get_json()["pairing"]["state"] == "STAGE_2_PRESS_BRIDGE_BUTTON"
    assert client.get("/api/pairing").get_json()["pairing"]["waiting_for_response"] is False


def test_invalid_pairing_transition_is_conflict(client):
    response = client.post("/api/pairing/button")

    assert response.status_code == 409
    error = response.get_json()["error"]
    assert error["code"] == "INVALID_PAIRING_TRANSITION"
    assert error["details"] == {"state": "NOT_INITIALIZING", "operation": "confirm_button_pressed"}


def test_complete_outside_final_stage_is_conflict(client):
    client.post("/api/pairing/begin")

    response = client.post("/api/pairing/complete")

    assert response.status_code == 409
    assert response.get_json()["error"]["code"] == "INVALID_PAIRING_TRANSITION"


def test_begin_rejects_non_string_name(client):
    response = client.post("/api/pairing/begin", json={"human_name": 7})

    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "VALIDATION_ERROR"


def test_already_registered_ip_is_reported_in_stage_one(client, transport):
    _paired_client(client, transport)
    client.post("/api/pairing/begin")

    response = client.post("/api/pairing/ip", json={"ip": BRIDGE_IP})

    assert response.get_json()["pairing"]["state"] == "STAGE_1_ERROR_BRIDGE_ALREADY_REGISTERED"


def test_get_unknown_bridge_is_not_found(client):
    response = client.get("/api/bridges/missing")

    assert response.status_code == 404
    assert response.get_json()["error"]["code"] == "BRIDGE_NOT_FOUND"


def test_patch_bridge_updates_fields(client, transport, store):
    bridge_id = _paired_client(client, transport).get_json()["bridge"]["id"]

    response = client.patch(
        f"/api/bridges/{bridge_id}",
        json={"ip": "192.168.1.50", "human_name": "Office", "connected": True},
    )

    assert response.status_code == 200
    bridge = response.get_json()["bridge"]
    assert bridge["ip"] == "192.168.1.50"
    assert bridge["human_name"] == "Office"
    assert bridge["connected"] is True
    assert bridge["active"] is False
    assert store.get_ip(bridge_id) == "192.168.1.50"


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"token": "x"}, "unsupported fields"),
        ({"ip": "999.1.1.1"}, "invalid"),
        ({"connected": "yes"}, "connected must be a boolean"),
        ({"human_name": None}, "human_name must be a string"),
    ],
)
def test_patch_bridge_validation_errors(client, transport, payload, message):
    bridge_id = _paired_client(client, transport).get_json()["bridge"]["id"]

    response = client.patch(f"/api/bridges/{bridge_id}", json=payload)

    assert response.status_code == 400
    assert message in response.get_json()["error"]["message"]


def test_patch_unknown_bridge_is_not_found(client):
    response = client.patch("/api/bridges/missing", json={"human_name": "x"})

    assert response.status_code == 404


def test_delete_bridge(client, transport, store):
    bridge_id = _paired_client(client, transport).get_json()["bridge"]["id"]

    assert client.delete(f"/api/bridges/{bridge_id}").status_code == 204
    assert client.delete(f"/api/bridges/{bridge_id}").status_code == 404
    assert store.list_bridge_ids() == []


def test_health_check_run_and_report(client, transport):
    _paired_client(client, transport)
    transport.route("GET", RESOURCE_URL, bridge_resource_ok())

    assert client.get("/api/health-check").get_json() == {
        "status": "NOT_TESTED",
        "last_report": None,
    }

    response = client.post("/api/health-check")

    assert response.status_code == 200
    report = response.get_json()["report"]
    assert report["status"] == "TEST_GOOD"
    assert report["reason"] == "ALL_HEALTHY"
    assert report["results"][0]["healthy"] is True
    assert client.get("/api/health-check").get_json()["status"] == "TEST_GOOD"


def test_health_check_can_be_scheduled(client, hub):
    response = client.post("/api/health-check", json={"wait": False})

    assert response.status_code == 202
    assert response.get_json() == {"status": "scheduled"}


def test_api_routes_require_bearer_token_when_configured(hub_config, hub):
    hub_config["management_auth_token"] = "secret-token"
    client = create_app(hub_config, hub=hub).test_client()

    assert client.get("/health").status_code == 200
    unauthorized = client.get("/api/bridges")
    assert unauthorized.status_code == 401
    assert unauthorized.get_json()["error"]["code"] == "UNAUTHORIZED"
    assert client.get("/api/bridges", headers={"Authorization": "Bearer wrong"}).status_code == 401
    authorized = client.get("/api/bridges", headers={"Authorization": "Bearer secret-token"})
    assert authorized.status_code == 200


def test_unreadable_credential_store_is_service_unavailable(hub_config, transport, tmp_path):
    path = tmp_path / "bridge-credentials.json"
    hub = BridgeHub.from_config(
        hub_config,
        transport=transport,
        credential_store=FileCredentialStore(str(path)),
        connectivity_prober=FakeConnectivityProber(),
    )
    try:
        client = create_app(hub_config, hub=hub).test_client()
        bridge_id = _paired_client(client, transport).get_json()["bridge"]["id"]
        path.write_bytes(b'{"bridges": {"\xff\xfe": {}}}')

        response = client.patch(f"/api/bridges/{bridge_id}", json={"human_name": "Office"})
    finally:
        hub.shutdown()

    assert response.status_code == 503
    assert response.get_json()["error"]["code"] == "CREDENTIAL_STORE_ERROR"
