"""In-memory registry of paired bridges, backed by a credential store.

Consumers only ever see ``BridgeRecord`` values, which are immutable; every
mutation replaces the stored record under the registry lock and persists the
durable fields (ip, token, human name) through the credential store.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, replace
from threading import RLock
from typing import Any, Callable, Dict, Iterable, List, Optional

from .credential_store import CredentialStore
from .ip_validation import is_valid_ip
from .structured_logging import log_event, mask_secret


logger = logging.getLogger(__name__)


class RegistryError(ValueError):
    """Raised for invalid registry input (bad IP, duplicate or unknown bridge)."""


class UnknownBridgeError(RegistryError, KeyError):
    """Raised when an operation names a bridge id the registry does not hold."""

    def __str__(self) -> str:
        return ValueError.__str__(self)


@dataclass(frozen=True)
class BridgeRecord:
    """Snapshot of one bridge.

    ``active`` and ``token_valid`` are runtime health flags recomputed by the
    health-check sequencer; ``connected`` tracks the event-stream subscription.
    None of the three is persisted.
    """

    id: str
    ip: str = ""
    token: str = ""
    active: bool = False
    connected: bool = False
    human_name: str = ""
    label_name: str = ""
    token_valid: Optional[bool] = None

    def to_dict(self, include_token: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        if not include_token:
            data["token"] = mask_secret(self.token)
        return data


def generate_bridge_id(taken: Iterable[str] = ()) -> str:
    """Return a fresh UUID-shaped id not present in taken."""
    taken_ids = set(taken)
    while True:
        candidate = str(uuid.uuid4())
        if candidate not in taken_ids:
            return candidate


class BridgeRegistry:
    """Set of BridgeRecord keyed by id.

    Attributes:
        credential_store: Durable store for ip, token and display name.
    """

    def __init__(self, credential_store: CredentialStore):
        self.credential_store = credential_store
        self._lock = RLock()
        self._bridges: Dict[str, BridgeRecord] = {}
        self._listeners: List[Callable[[BridgeRecord], None]] = []

    def load(self) -> List[BridgeRecord]:
        """Replace the in-memory records with what the credential store holds.

        Loaded records start inactive with an unresolved token until the first
        health check runs.

        Raises:
            CredentialStoreError: If the store cannot be read.
        """
        store = self.credential_store
        loaded = {}
        for bridge_id in store.list_bridge_ids():
            human_name = store.get_human_name(bridge_id)
            loaded[bridge_id] = BridgeRecord(
                id=bridge_id,
                ip=store.get_ip(bridge_id),
                token=store.get_token(bridge_id),
                human_name=human_name,
                label_name=human_name,
            )
        with self._lock:
            self._bridges = loaded
        logger.info("bridge_registry_loaded: count=%s", len(loaded))
        return list(loaded.values())

    def list_bridges(self) -> List[BridgeRecord]:
        with self._lock:
            return list(self._bridges.values())

    def bridge_ids(self) -> List[str]:
        with self._lock:
            return list(self._bridges)

    def get_bridge(self, bridge_id: str) -> Optional[BridgeRecord]:
        with self._lock:
            return self._bridges.get(bridge_id)

    def find_by_ip(self, ip: str) -> Optional[BridgeRecord]:
        if not ip:
            return None
        with self._lock:
            for record in self._bridges.values():
                if record.ip == ip:
                    return record
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._bridges)

    def subscribe(self, listener: Callable[[BridgeRecord], None]) -> Callable[[], None]:
        """Register a callable invoked with every record written to the registry.

        Returns:
            A callable that removes the listener.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, record: BridgeRecord) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(record)
            except Exception:
                logger.exception("bridge_registry_listener_failed: bridge_id=%s", record.id)

    def _require(self, bridge_id: str) -> BridgeRecord:
        record = self._bridges.get(bridge_id)
        if record is None:
            message = f"bridge {bridge_id} not found"
            raise UnknownBridgeError(message)
        return record

    def add_bridge(self, record: BridgeRecord) -> BridgeRecord:
        """Insert a freshly paired bridge and persist its credentials.

        Args:
            record: Bridge with a valid ip and a non-empty token.

        Returns:
            The stored record.

        Raises:
            RegistryError: If the id or ip is already registered, or the record is incomplete.
            CredentialStoreError: If persisting fails; the registry is left unchanged.
        """
        if not record.id:
            message = "bridge id is required"
            raise RegistryError(message)
        if not is_valid_ip(record.ip):
            message = f"bridge ip is invalid: {record.ip!r}"
            raise RegistryError(message)
        if not record.token:
            message = "bridge token is required"
            raise RegistryError(message)

        with self._lock:
            if record.id in self._bridges:
                message = f"bridge {record.id} already exists"
                raise RegistryError(message)
            existing = self.find_by_ip(record.ip)
            if existing is not None:
                message = f"bridge at {record.ip} is already registered as {existing.id}"
                raise RegistryError(message)

            store = self.credential_store
            try:
                store.set_ip(record.id, record.ip)
                store.set_token(record.id, record.token)
                store.set_human_name(record.id, record.human_name)
            except Exception:
                try:
                    store.remove_bridge(record.id)
                except Exception:
                    logger.exception("bridge_add_rollback_failed: bridge_id=%s", record.id)
                raise
            self._bridges[record.id] = record

        log_event("bridge_added", bridge_id=record.id, ip=record.ip)
        self._publish(record)
        return record

    def change_ip(self, bridge_id: str, ip: str) -> BridgeRecord:
        """Point an existing bridge at a new IP.

        Health flags reset because the new address has not been probed.

        Raises:
            UnknownBridgeError: If bridge_id is not registered.
            RegistryError: If ip is malformed or held by another bridge.
        """
        if not is_valid_ip(ip):
            message = f"bridge ip is invalid: {ip!r}"
            raise RegistryError(message)

        with self._lock:
            current = self._require(bridge_id)
            other = self.find_by_ip(ip)
            if other is not None and other.id != bridge_id:
                message = f"bridge at {ip} is already registered as {other.id}"
                raise RegistryError(message)
            self.credential_store.set_ip(bridge_id, ip)
            updated = replace(current, ip=ip, active=False, token_valid=None)
            self._bridges[bridge_id] = updated

        log_event("bridge_ip_changed", bridge_id=bridge_id, ip=ip)
        self._publish(updated)
        return updated

    def rename(self, bridge_id: str, human_name: str) -> BridgeRecord:
        with self._lock:
            current = self._require(bridge_id)
            self.credential_store.set_human_name(bridge_id, human_name)
            updated = replace(current, human_name=human_name, label_name=human_name)
            self._bridges[bridge_id] = updated

        self._publish(updated)
        return updated

    def update_health(
        self, bridge_id: str, ip: str, active: bool, token_valid: Optional[bool]
    ) -> Optional[BridgeRecord]:
        """Write health-check flags computed for ip back onto the bridge.

        Returns:
            The updated record, or None when the bridge was removed or its ip
            changed since the probe started.
        """
        with self._lock:
            current = self._bridges.get(bridge_id)
            if current is None:
                return None
            if current.ip != ip:
                logger.info(
                    "bridge_health_discarded: bridge_id=%s probed_ip=%s current_ip=%s",
                    bridge_id,
                    ip,
                    current.ip,
                )
                return None
            updated = replace(current, active=active, token_valid=token_valid)
            self._bridges[bridge_id] = updated

        self._publish(updated)
        return updated

    def set_connected(self, bridge_id: str, connected: bool) -> BridgeRecord:
        with self._lock:
            updated = replace(self._require(bridge_id), connected=connected)
            self._bridges[bridge_id] = updated

        self._publish(updated)
        return updated

    def remove_bridge(self, bridge_id: str) -> BridgeRecord:
        """Forget a bridge and its stored credentials.

        Raises:
            UnknownBridgeError: If bridge_id is not registered.
        """
        with self._lock:
            removed = self._require(bridge_id)
            self.credential_store.remove_bridge(bridge_id)
            del self._bridges[bridge_id]

        log_event("bridge_removed", bridge_id=bridge_id)
        return removed
