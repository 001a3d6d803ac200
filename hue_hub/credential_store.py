"""Persistence for paired bridge credentials.

The store keeps, per bridge id, the last known IP, the application key
("token") issued by the bridge and a display name. Runtime health flags are
never persisted.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional


try:
    import fcntl
except ImportError:  # pragma: no cover - unavailable on non-POSIX
    fcntl = None

try:
    import msvcrt
except ImportError:  # pragma: no cover - unavailable on non-Windows
    msvcrt = None


logger = logging.getLogger(__name__)

PERSISTED_FIELDS = ("ip", "token", "human_name")


class CredentialStoreError(ValueError):
    """Raised when the credential store cannot be read or written."""


class CredentialStore(ABC):
    """Key/value persistence for bridge ip, token and display name.

    Getters return "" for unknown bridges or unset values.
    """

    @abstractmethod
    def list_bridge_ids(self) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    def get_ip(self, bridge_id: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def set_ip(self, bridge_id: str, ip: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_token(self, bridge_id: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def set_token(self, bridge_id: str, token: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_human_name(self, bridge_id: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def set_human_name(self, bridge_id: str, human_name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def remove_bridge(self, bridge_id: str) -> bool:
        """Forget a bridge.

        Returns:
            True when the bridge existed.
        """
        raise NotImplementedError


class InMemoryCredentialStore(CredentialStore):
    """Non-persistent store, used by tests and ephemeral deployments."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, str]]] = None):
        self._lock = RLock()
        self._bridges: Dict[str, Dict[str, str]] = {}
        for bridge_id, fields in (initial or {}).items():
            self._bridges[bridge_id] = {name: str(fields.get(name, "")) for name in PERSISTED_FIELDS}

    def _get(self, bridge_id: str, field: str) -> str:
        with self._lock:
            return self._bridges.get(bridge_id, {}).get(field, "")

    def _set(self, bridge_id: str, field: str, value: str) -> None:
        with self._lock:
            entry = self._bridges.setdefault(bridge_id, dict.fromkeys(PERSISTED_FIELDS, ""))
            entry[field] = value

    def list_bridge_ids(self) -> List[str]:
        with self._lock:
            return list(self._bridges)

    def get_ip(self, bridge_id: str) -> str:
        return self._get(bridge_id, "ip")

    def set_ip(self, bridge_id: str, ip: str) -> None:
        self._set(bridge_id, "ip", ip)

    def get_token(self, bridge_id: str) -> str:
        return self._get(bridge_id, "token")

    def set_token(self, bridge_id: str, token: str) -> None:
        self._set(bridge_id, "token", token)

    def get_human_name(self, bridge_id: str) -> str:
        return self._get(bridge_id, "human_name")

    def set_human_name(self, bridge_id: str, human_name: str) -> None:
        self._set(bridge_id, "human_name", human_name)

    def remove_bridge(self, bridge_id: str) -> bool:
        with self._lock:
            return self._bridges.pop(bridge_id, None) is not None


class FileCredentialStore(CredentialStore):
    """JSON file store with an exclusive lock file and atomic replace on write.

    File layout::

        {"bridges": {"<id>": {"ip": "...", "token": "...", "human_name": "..."}}}

    Attributes:
        path: Path to the JSON file.

    Raises:
        CredentialStoreError: If the directory is not writable or the file is corrupted.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            message = (
                f"Permission denied accessing credential store path: {self.path.parent}. "
                f"Set HUE_HUB_CREDENTIAL_STORE_PATH to a writable location "
                f"(e.g., ./data/bridge-credentials.json)."
            )
            logger.error(message)
            raise CredentialStoreError(message) from e

    def _load(self) -> Dict[str, Dict[str, str]]:
        """Read the bridge map from disk.

        Returns:
            Mapping of bridge id to persisted fields; empty when the file is absent.

        Raises:
            CredentialStoreError: If the file cannot be read, is not valid UTF-8 JSON,
                or has the wrong shape.
        """
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            message = f"credential store file is corrupted and cannot be parsed: {self.path}"
            raise CredentialStoreError(message) from exc
        except OSError as exc:
            message = f"credential store file cannot be read: {self.path}"
            raise CredentialStoreError(message) from exc
        if not isinstance(raw, dict):
            message = f"credential store file must contain an object: {self.path}"
            raise CredentialStoreError(message)

        bridges = raw.get("bridges", {})
        if not isinstance(bridges, dict):
            message = "credential store 'bridges' must be an object"
            raise CredentialStoreError(message)

        loaded: Dict[str, Dict[str, str]] = {}
        for bridge_id, fields in bridges.items():
            if not isinstance(fields, dict):
                message = f"credential store entry for bridge {bridge_id} must be an object"
                raise CredentialStoreError(message)
            loaded[bridge_id] = {
                name: fields[name] if isinstance(fields.get(name), str) else ""
                for name in PERSISTED_FIELDS
            }
        return loaded

    def _save(self, bridges: Dict[str, Dict[str, str]]) -> None:
        with tempfile.NamedTemporaryFile(
            "w", delete=False, dir=self.path.parent, encoding="utf-8"
        ) as temp:
            json.dump({"bridges": bridges}, temp, indent=2)
            temp.flush()
            os.fsync(temp.fileno())
            temp_path = temp.name
        Path(temp_path).replace(self.path)

    @contextmanager
    def _exclusive_lock(self):
        """Hold an exclusive lock on a sibling ``.lock`` file (fcntl or msvcrt)."""
        lock_path = self.path.parent / f"{self.path.name}.lock"
        with lock_path.open("a+b") as lock_file:
            if fcntl is not None:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
                return

            if msvcrt is not None:
                if lock_file.seek(0, 2) == 0:
                    lock_file.write(b"\0")
                    lock_file.flush()
                lock_file.seek(0)
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
                try:
                    yield
                finally:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                return

            message = "No supported file-lock backend available for this platform"
            raise RuntimeError(message)

    def _get(self, bridge_id: str, field: str) -> str:
        with self._exclusive_lock():
            return self._load().get(bridge_id, {}).get(field, "")

    def _set(self, bridge_id: str, field: str, value: Any) -> None:
        if not isinstance(value, str):
            message = f"{field} must be a string"
            raise CredentialStoreError(message)
        with self._exclusive_lock():
            bridges = self._load()
            entry = bridges.setdefault(bridge_id, dict.fromkeys(PERSISTED_FIELDS, ""))
            entry[field] = value
            self._save(bridges)

    def list_bridge_ids(self) -> List[str]:
        with self._exclusive_lock():
            return list(self._load())

    def get_ip(self, bridge_id: str) -> str:
        return self._get(bridge_id, "ip")

    def set_ip(self, bridge_id: str, ip: str) -> None:
        self._set(bridge_id, "ip", ip)

    def get_token(self, bridge_id: str) -> str:
        return self._get(bridge_id, "token")

    def set_token(self, bridge_id: str, token: str) -> None:
        self._set(bridge_id, "token", token)

    def get_human_name(self, bridge_id: str) -> str:
        return self._get(bridge_id, "human_name")

    def set_human_name(self, bridge_id: str, human_name: str) -> None:
        self._set(bridge_id, "human_name", human_name)

    def remove_bridge(self, bridge_id: str) -> bool:
        with self._exclusive_lock():
            bridges = self._load()
            if bridges.pop(bridge_id, None) is None:
                return False
            self._save(bridges)
            return True
