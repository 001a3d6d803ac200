import re

import pytest

from hue_hub.credential_store import CredentialStoreError, InMemoryCredentialStore
from hue_hub.registry import (
    BridgeRecord,
    BridgeRegistry,
    RegistryError,
    UnknownBridgeError,
    generate_bridge_id,
)


UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")


def _paired(bridge_id: str = "bridge-1", ip: str = "192.168.1.1", token: str = "abc123"):
    return BridgeRecord(id=bridge_id, ip=ip, token=token, active=True, token_valid=True)


def test_generate_bridge_id_is_uuid_shaped_and_fresh():
    taken = {generate_bridge_id() for _ in range(5)}
    fresh = generate_bridge_id(taken)

    assert UUID_PATTERN.match(fresh)
    assert fresh not in taken


def test_add_bridge_persists_credentials(registry, memory_store):
    registry.add_bridge(_paired())

    assert memory_store.get_ip("bridge-1") == "192.168.1.1"
    assert memory_store.get_token("bridge-1") == "abc123"
    assert registry.get_bridge("bridge-1").active is True


@pytest.mark.parametrize(
    "record, message",
    [
        (BridgeRecord(id="", ip="192.168.1.1", token="t"), "id is required"),
        (BridgeRecord(id="b", ip="192.168.1", token="t"), "ip is invalid"),
        (BridgeRecord(id="b", ip="192.168.1.1", token=""), "token is required"),
    ],
)
def test_add_bridge_rejects_incomplete_records(registry, record, message):
    with pytest.raises(RegistryError, match=message):
        registry.add_bridge(record)
    assert registry.list_bridges() == []


def test_add_bridge_rejects_duplicate_id_and_ip(registry):
    registry.add_bridge(_paired())

    with pytest.raises(RegistryError, match="already exists"):
        registry.add_bridge(_paired(ip="192.168.1.2"))
    with pytest.raises(RegistryError, match="already registered"):
        registry.add_bridge(_paired(bridge_id="bridge-2"))


def test_add_bridge_leaves_registry_unchanged_when_store_fails():
    class FailingStore(InMemoryCredentialStore):
        def set_token(self, bridge_id, token):
            message = "disk full"
            raise CredentialStoreError(message)

    store = FailingStore()
    registry = BridgeRegistry(store)

    with pytest.raises(CredentialStoreError):
        registry.add_bridge(_paired())

    assert registry.list_bridges() == []
    assert store.list_bridge_ids() == []


def test_load_reads_store_with_unresolved_health():
    store = InMemoryCredentialStore(
        {"bridge-1": {"ip": "192.168.1.1", "token": "abc123", "human_name": "Hall"}}
    )
    registry = BridgeRegistry(store)

    loaded = registry.load()

    assert loaded == [
        BridgeRecord(
            id="bridge-1",
            ip="192.168.1.1",
            token="abc123",
            human_name="Hall",
            label_name="Hall",
        )
    ]
    assert loaded[0].active is False
    assert loaded[0].token_valid is None


def test_change_ip_persists_and_resets_health(registry, memory_store):
    registry.add_bridge(_paired())

    updated = registry.change_ip("bridge-1", "192.168.1.20")

    assert updated.ip == "192.168.1.20"
    assert updated.active is False
    assert updated.token_valid is None
    assert updated.token == "abc123"
    assert memory_store.get_ip("bridge-1") == "192.168.1.20"


def test_change_ip_validates_input(registry):
    registry.add_bridge(_paired())
    registry.add_bridge(_paired(bridge_id="bridge-2", ip="192.168.1.2"))

    with pytest.raises(RegistryError, match="invalid"):
        registry.change_ip("bridge-1", "not-an-ip")
    with pytest.raises(RegistryError, match="already registered"):
        registry.change_ip("bridge-1", "192.168.1.2")
    with pytest.raises(UnknownBridgeError):
        registry.change_ip("missing", "192.168.1.9")

    assert registry.get_bridge("bridge-1").ip == "192.168.1.1"


def test_records_are_immutable_snapshots(registry):
    registry.add_bridge(_paired())
    snapshot = registry.get_bridge("bridge-1")

    registry.update_health("bridge-1", "192.168.1.1", active=False, token_valid=False)

    assert snapshot.active is True
    assert registry.get_bridge("bridge-1").active is False
    with pytest.raises(AttributeError):
        snapshot.ip = "10.0.0.1"


def test_update_health_ignores_removed_bridge(registry):
    assert registry.update_health("missing", "192.168.1.1", active=True, token_valid=True) is None


def test_set_connected_and_rename(registry, memory_store):
    registry.add_bridge(_paired())

    assert registry.set_connected("bridge-1", True).connected is True
    renamed = registry.rename("bridge-1", "Office")

    assert renamed.human_name == "Office"
    assert renamed.connected is True
    assert memory_store.get_human_name("bridge-1") == "Office"


def test_remove_bridge_forgets_credentials(registry, memory_store):
    registry.add_bridge(_paired())

    removed = registry.remove_bridge("bridge-1")

    assert removed.id == "bridge-1"
    assert registry.get_bridge("bridge-1") is None
    assert memory_store.list_bridge_ids() == []
    with pytest.raises(UnknownBridgeError, match="not found"):
        registry.remove_bridge("bridge-1")


def test_find_by_ip(registry):
    registry.add_bridge(_paired())

    assert registry.find_by_ip("192.168.1.1").id == "bridge-1"
    assert registry.find_by_ip("192.168.1.2") is None
    assert registry.find_by_ip("") is None


def test_subscribers_receive_written_records(registry):
    seen = []
    unsubscribe = registry.subscribe(seen.append)

    registry.add_bridge(_paired())
    registry.update_health("bridge-1", "192.168.1.1", active=False, token_valid=None)
    unsubscribe()
    registry.set_connected("bridge-1", True)

    assert [record.active for record in seen] == [True, False]


def test_to_dict_masks_token():
    record = _paired(token="0123456789abcdef")

    assert record.to_dict()["token"] == "****cdef"
    assert record.to_dict(include_token=True)["token"] == "0123456789abcdef"
    assert BridgeRecord(id="b").to_dict()["token"] == ""


def test_update_health_ignores_result_for_previous_ip(registry):
    registry.add_bridge(_paired())
    registry.change_ip("bridge-1", "192.168.1.20")

    assert registry.update_health("bridge-1", "192.168.1.1", active=True, token_valid=True) is None

    record = registry.get_bridge("bridge-1")
    assert record.active is False
    assert record.token_valid is None


def test_add_bridge_keeps_original_error_when_rollback_fails(caplog):
    class BrokenStore(InMemoryCredentialStore):
        def set_token(self, bridge_id, token):
            message = "disk full"
            raise CredentialStoreError(message)

        def remove_bridge(self, bridge_id):
            message = "read-only file system"
            raise OSError(message)

    registry = BridgeRegistry(BrokenStore())

    with pytest.raises(CredentialStoreError, match="disk full"):
        registry.add_bridge(_paired())

    assert registry.list_bridges() == []
    assert "bridge_add_rollback_failed: bridge_id=bridge-1" in caplog.text
