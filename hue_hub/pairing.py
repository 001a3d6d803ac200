"""Pairing handshake with a single Hue bridge.

The handshake walks three stages:

1. the user supplies the bridge IP, which is validated and probed;
2. the user presses the bridge's link button and confirms, and the hub
   requests an application key;
3. the paired bridge is promoted into the registry.

Every failure is an explicit error state with an acknowledge transition
(retry the current stage) and a back transition (previous stage). Network
steps are single-flight: while one probe is outstanding a second call is
rejected with ``PairingBusyError``.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from threading import Lock, RLock
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from .bridge_probes import BridgeReachabilityChecker
from .connectivity import ConnectivityProber
from .credential_store import CredentialStoreError
from .ip_validation import is_valid_ip
from .registry import BridgeRecord, BridgeRegistry, RegistryError, generate_bridge_id
from .structured_logging import log_error, log_event
from .token_protocol import TokenAcquisitionProtocol, TokenErrorKind
from .transport import CancellationToken


logger = logging.getLogger(__name__)


class PairingState(Enum):
    NOT_INITIALIZING = "not_initializing"
    STAGE_1_GET_IP = "stage_1_get_ip"
    STAGE_1_ERROR_BAD_IP_FORMAT = "stage_1_error_bad_ip_format"
    STAGE_1_ERROR_NO_BRIDGE_AT_IP = "stage_1_error_no_bridge_at_ip"
    STAGE_1_ERROR_BRIDGE_ALREADY_REGISTERED = "stage_1_error_bridge_already_registered"
    STAGE_2_PRESS_BRIDGE_BUTTON = "stage_2_press_bridge_button"
    STAGE_2_ERROR_NO_TOKEN_FROM_BRIDGE = "stage_2_error_no_token_from_bridge"
    STAGE_2_ERROR_CANNOT_PARSE_RESPONSE = "stage_2_error_cannot_parse_response"
    STAGE_2_ERROR_BUTTON_NOT_PUSHED = "stage_2_error_button_not_pushed"
    STAGE_2_ERROR_UNSUCCESSFUL_RESPONSE = "stage_2_error_unsuccessful_response"
    STAGE_3_ALL_GOOD_AND_DONE = "stage_3_all_good_and_done"
    STAGE_3_ERROR_CANNOT_ADD_BRIDGE = "stage_3_error_cannot_add_bridge"

    @property
    def is_error(self) -> bool:
        return self in ERROR_STATES


STAGE_1_STATES = frozenset(
    {
        PairingState.STAGE_1_GET_IP,
        PairingState.STAGE_1_ERROR_BAD_IP_FORMAT,
        PairingState.STAGE_1_ERROR_NO_BRIDGE_AT_IP,
        PairingState.STAGE_1_ERROR_BRIDGE_ALREADY_REGISTERED,
    }
)
STAGE_1_ERROR_STATES = STAGE_1_STATES - {PairingState.STAGE_1_GET_IP}
STAGE_2_ERROR_STATES = frozenset(
    {
        PairingState.STAGE_2_ERROR_NO_TOKEN_FROM_BRIDGE,
        PairingState.STAGE_2_ERROR_CANNOT_PARSE_RESPONSE,
        PairingState.STAGE_2_ERROR_BUTTON_NOT_PUSHED,
        PairingState.STAGE_2_ERROR_UNSUCCESSFUL_RESPONSE,
    }
)
ERROR_STATES = (
    STAGE_1_ERROR_STATES
    | STAGE_2_ERROR_STATES
    | frozenset({PairingState.STAGE_3_ERROR_CANNOT_ADD_BRIDGE})
)

# Back from these returns to IP entry with the IP cleared; the remaining stage-2
# errors and the stage-3 error go back to the button prompt.
_BACK_TO_IP_ENTRY = frozenset(
    {
        PairingState.STAGE_2_PRESS_BRIDGE_BUTTON,
        PairingState.STAGE_2_ERROR_CANNOT_PARSE_RESPONSE,
        PairingState.STAGE_2_ERROR_UNSUCCESSFUL_RESPONSE,
    }
)
_BACK_TO_BUTTON_PROMPT = frozenset(
    {
        PairingState.STAGE_2_ERROR_NO_TOKEN_FROM_BRIDGE,
        PairingState.STAGE_2_ERROR_BUTTON_NOT_PUSHED,
        PairingState.STAGE_3_ERROR_CANNOT_ADD_BRIDGE,
    }
)

TOKEN_ERROR_STATES: Dict[TokenErrorKind, PairingState] = {
    TokenErrorKind.UNSUCCESSFUL_RESPONSE: PairingState.STAGE_2_ERROR_UNSUCCESSFUL_RESPONSE,
    TokenErrorKind.TOKEN_NOT_FOUND: PairingState.STAGE_2_ERROR_NO_TOKEN_FROM_BRIDGE,
    TokenErrorKind.CANNOT_PARSE_RESPONSE_BODY: PairingState.STAGE_2_ERROR_CANNOT_PARSE_RESPONSE,
    TokenErrorKind.BUTTON_NOT_HIT: PairingState.STAGE_2_ERROR_BUTTON_NOT_PUSHED,
}


class PairingError(Exception):
    """Base class for pairing misuse: calling an operation when it is not allowed."""


class PairingBusyError(PairingError):
    """Raised when a network step is requested while another one is outstanding."""


class InvalidTransitionError(PairingError):
    """Raised when an operation is not valid in the current pairing state."""

    def __init__(self, operation: str, state: PairingState):
        self.operation = operation
        self.state = state
        super().__init__(f"{operation} is not allowed in state {state.name}")


class PairingInvariantError(RuntimeError):
    """Raised when the session reaches an impossible combination; the session is reset.

    ``snapshot`` is the idle snapshot the session was reset to.
    """

    def __init__(self, message: str, snapshot: Optional["PairingSnapshot"] = None):
        super().__init__(message)
        self.snapshot = snapshot


@dataclass(frozen=True)
class PairingSnapshot:
    state: PairingState
    pending: Optional[BridgeRecord]
    waiting_for_response: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.name,
            "is_error": self.state.is_error,
            "waiting_for_response": self.waiting_for_response,
            "pending_bridge": self.pending.to_dict() if self.pending else None,
        }


PairingListener = Callable[[PairingSnapshot], None]


class BridgePairingSession:
    """State machine that pairs one bridge at a time.

    Synchronous operations run their network step on the calling thread; the
    ``*_async`` variants run it on the session's single worker and return a
    Future. Either way the single-flight guard is taken on the calling
    thread, so a second request is rejected immediately.

    Args:
        registry: Destination for the paired bridge.
        reachability_checker: Stage-1 probe.
        token_protocol: Stage-2 application-key request.
        connectivity_prober: Optional gate; without a local network no probe is attempted.
        executor: Worker for ``*_async`` calls; a private single-thread pool by default.
    """

    def __init__(
        self,
        registry: BridgeRegistry,
        reachability_checker: BridgeReachabilityChecker,
        token_protocol: TokenAcquisitionProtocol,
        connectivity_prober: Optional[ConnectivityProber] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.registry = registry
        self.reachability_checker = reachability_checker
        self.token_protocol = token_protocol
        self.connectivity_prober = connectivity_prober

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="bridge-pairing"
        )
        self._lock = RLock()
        self._flight = Lock()
        self._state = PairingState.NOT_INITIALIZING
        self._pending: Optional[BridgeRecord] = None
        self._waiting = False
        self._generation = 0
        self._inflight_cancel: Optional[CancellationToken] = None
        self._issued_ids: Set[str] = set()
        self._listeners: List[PairingListener] = []

    # Observation

    @property
    def state(self) -> PairingState:
        with self._lock:
            return self._state

    @property
    def pending_bridge(self) -> Optional[BridgeRecord]:
        with self._lock:
            return self._pending

    @property
    def waiting_for_response(self) -> bool:
        with self._lock:
            return self._waiting

    def snapshot(self) -> PairingSnapshot:
        with self._lock:
            return PairingSnapshot(self._state, self._pending, self._waiting)

    def subscribe(self, listener: PairingListener) -> Callable[[], None]:
        """Register listener for a snapshot after every change.

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

    def _notify(self, snapshot: PairingSnapshot) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("pairing_listener_failed: state=%s", snapshot.state.name)

    # Internal transitions; callers hold self._lock

    def _set_state(self, new_state: PairingState) -> PairingSnapshot:
        old_state = self._state
        self._state = new_state
        log_event(
            "pairing_transition",
            from_state=old_state.name,
            to_state=new_state.name,
            bridge_id=self._pending.id if self._pending else None,
        )
        return PairingSnapshot(self._state, self._pending, self._waiting)

    def _invalidate_inflight(self) -> None:
        self._generation += 1
        if self._inflight_cancel is not None:
            self._inflight_cancel.cancel()
            self._inflight_cancel = None

    def _reset(self) -> PairingSnapshot:
        self._invalidate_inflight()
        self._pending = None
        self._waiting = False
        return self._set_state(PairingState.NOT_INITIALIZING)

    def _require_state(self, operation: str, allowed) -> None:
        if self._state not in allowed:
            raise InvalidTransitionError(operation, self._state)

    def _abort(self, reason: str) -> PairingInvariantError:
        """Log an invariant violation, reset the session and build the error to raise."""
        log_error(
            "pairing",
            "invariant_violation",
            reason,
            resource_id=self._pending.id if self._pending else None,
            state=self._state.name,
        )
        return PairingInvariantError(reason, self._reset())

    def _require_pending(self, operation: str) -> BridgeRecord:
        if self._pending is None:
            raise self._abort(f"{operation} in {self._state.name} without a pending bridge")
        return self._pending

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold self._lock; listeners hear about an abort only after it is released."""
        try:
            with self._lock:
                yield
        except PairingInvariantError as exc:
            if exc.snapshot is not None:
                self._notify(exc.snapshot)
            raise

    # Single-flight plumbing

    def _acquire_flight(self, operation: str) -> None:
        if not self._flight.acquire(blocking=False):
            logger.warning("pairing_busy: operation=%s", operation)
            message = f"{operation} rejected: another pairing request is in progress"
            raise PairingBusyError(message)

    def _run_in_flight(self, step: Callable[..., PairingSnapshot], *args: Any) -> PairingSnapshot:
        try:
            return step(*args)
        finally:
            self._flight.release()

    def _dispatch(self, operation: str, step: Callable[..., PairingSnapshot], *args: Any) -> Future:
        self._acquire_flight(operation)
        try:
            return self._executor.submit(self._run_in_flight, step, *args)
        except BaseException:
            self._flight.release()
            raise

    def _start_network_step(
        self, cancel: Optional[CancellationToken]
    ) -> Tuple[int, CancellationToken]:
        self._waiting = True
        token = cancel if cancel is not None else CancellationToken()
        self._inflight_cancel = token
        return self._generation, token

    def _finish_network_step(self, generation: int, expected_state: PairingState, operation: str) -> bool:
        """Clear the waiting flag; return False when the result must be discarded."""
        if generation != self._generation:
            logger.info("pairing_result_discarded: operation=%s reason=session_reset", operation)
            return False
        self._waiting = False
        self._inflight_cancel = None
        if self._state is not expected_state:
            logger.info(
                "pairing_result_discarded: operation=%s state=%s", operation, self._state.name
            )
            return False
        return True

    # Operations

    def begin(self, human_name: str = "") -> PairingSnapshot:
        """Start a pairing session with a fresh pending bridge.

        Calling it while a session is already running is logged and ignored.
        """
        with self._lock:
            if self._state is not PairingState.NOT_INITIALIZING:
                logger.error("pairing_begin_ignored: state=%s", self._state.name)
                return PairingSnapshot(self._state, self._pending, self._waiting)

            bridge_id = generate_bridge_id(self._issued_ids | set(self.registry.bridge_ids()))
            self._issued_ids.add(bridge_id)
            self._invalidate_inflight()
            self._pending = BridgeRecord(id=bridge_id, human_name=human_name, label_name=human_name)
            snapshot = self._set_state(PairingState.STAGE_1_GET_IP)
        self._notify(snapshot)
        return snapshot

    def submit_ip(self, candidate: Any, cancel: Optional[CancellationToken] = None) -> PairingSnapshot:
        """Validate candidate and probe for a bridge there.

        Raises:
            InvalidTransitionError: If not in STAGE_1_GET_IP.
            PairingBusyError: If another network step is outstanding.
        """
        self._acquire_flight("submit_ip")
        return self._run_in_flight(self._submit_ip, candidate, cancel)

    def submit_ip_async(self, candidate: Any, cancel: Optional[CancellationToken] = None) -> Future:
        with self._lock:
            self._require_state("submit_ip", {PairingState.STAGE_1_GET_IP})
        return self._dispatch("submit_ip", self._submit_ip, candidate, cancel)

    def _submit_ip(self, candidate: Any, cancel: Optional[CancellationToken]) -> PairingSnapshot:
        with self._locked():
            self._require_state("submit_ip", {PairingState.STAGE_1_GET_IP})
            self._require_pending("submit_ip")

            rejected: Optional[PairingState] = None
            if not is_valid_ip(candidate):
                logger.info("pairing_ip_rejected: reason=bad_format")
                rejected = PairingState.STAGE_1_ERROR_BAD_IP_FORMAT
            else:
                existing = self.registry.find_by_ip(candidate)
                if existing is not None:
                    logger.info(
                        "pairing_ip_rejected: ip=%s registered_as=%s", candidate, existing.id
                    )
                    rejected = PairingState.STAGE_1_ERROR_BRIDGE_ALREADY_REGISTERED

            if rejected is not None:
                snapshot = self._set_state(rejected)
            else:
                generation, token = self._start_network_step(cancel)
                snapshot = PairingSnapshot(self._state, self._pending, True)
        self._notify(snapshot)
        if rejected is not None:
            return snapshot

        network_up = (
            self.connectivity_prober is None
            or self.connectivity_prober.is_local_network_transport_available()
        )
        if not network_up:
            logger.warning("pairing_probe_skipped: ip=%s reason=no_local_network", candidate)
        reachable = network_up and self.reachability_checker.is_reachable(candidate, token)

        with self._locked():
            if not self._finish_network_step(generation, PairingState.STAGE_1_GET_IP, "submit_ip"):
                snapshot = PairingSnapshot(self._state, self._pending, self._waiting)
                return snapshot
            pending = self._require_pending("submit_ip")
            if reachable:
                self._pending = replace(pending, ip=candidate)
                snapshot = self._set_state(PairingState.STAGE_2_PRESS_BRIDGE_BUTTON)
            else:
                self._pending = replace(pending, ip="")
                snapshot = self._set_state(PairingState.STAGE_1_ERROR_NO_BRIDGE_AT_IP)
        self._notify(snapshot)
        return snapshot

    def confirm_button_pressed(self, cancel: Optional[CancellationToken] = None) -> PairingSnapshot:
        """Request an application key from the pending bridge.

        Raises:
            InvalidTransitionError: If not in STAGE_2_PRESS_BRIDGE_BUTTON.
            PairingBusyError: If another network step is outstanding.
            PairingInvariantError: If the key request reports success without a key,
                or rejects an IP that passed stage 1; the session is reset.
        """
        self._acquire_flight("confirm_button_pressed")
        return self._run_in_flight(self._confirm_button_pressed, cancel)

    def confirm_button_pressed_async(self, cancel: Optional[CancellationToken] = None) -> Future:
        with self._lock:
            self._require_state(
                "confirm_button_pressed", {PairingState.STAGE_2_PRESS_BRIDGE_BUTTON}
            )
        return self._dispatch("confirm_button_pressed", self._confirm_button_pressed, cancel)

    def _confirm_button_pressed(self, cancel: Optional[CancellationToken]) -> PairingSnapshot:
        operation = "confirm_button_pressed"
        with self._locked():
            self._require_state(operation, {PairingState.STAGE_2_PRESS_BRIDGE_BUTTON})
            pending = self._require_pending(operation)
            if not pending.ip:
                raise self._abort("button confirmed for a pending bridge without an ip")

            ip = pending.ip
            generation, token = self._start_network_step(cancel)
            waiting_snapshot = PairingSnapshot(self._state, self._pending, True)
        self._notify(waiting_snapshot)

        result = self.token_protocol.request_token(ip, token)

        with self._locked():
            if not self._finish_network_step(
                generation, PairingState.STAGE_2_PRESS_BRIDGE_BUTTON, operation
            ):
                return PairingSnapshot(self._state, self._pending, self._waiting)
            pending = self._require_pending(operation)

            if result.error_kind is TokenErrorKind.NONE and result.token:
                self._pending = replace(pending, token=result.token)
                snapshot = self._set_state(PairingState.STAGE_3_ALL_GOOD_AND_DONE)
            elif result.error_kind in TOKEN_ERROR_STATES:
                snapshot = self._set_state(TOKEN_ERROR_STATES[result.error_kind])
            else:
                raise self._abort(
                    f"key request for {ip} returned {result.error_kind.name} without a key"
                )
        self._notify(snapshot)
        return snapshot

    def acknowledge_error(self) -> PairingSnapshot:
        """Leave an error state and retry the stage it belongs to.

        Raises:
            InvalidTransitionError: If the session is not in an error state.
        """
        with self._locked():
            self._require_state("acknowledge_error", ERROR_STATES)
            pending = self._require_pending("acknowledge_error")
            if self._state in STAGE_1_ERROR_STATES:
                self._pending = replace(pending, ip="")
                snapshot = self._set_state(PairingState.STAGE_1_GET_IP)
            elif self._state is PairingState.STAGE_3_ERROR_CANNOT_ADD_BRIDGE:
                self._pending = replace(pending, token="")
                snapshot = self._set_state(PairingState.STAGE_2_PRESS_BRIDGE_BUTTON)
            else:
                snapshot = self._set_state(PairingState.STAGE_2_PRESS_BRIDGE_BUTTON)
        self._notify(snapshot)
        return snapshot

    def go_back(self) -> PairingSnapshot:
        """Return to the previous stage, abandoning any outstanding network step.

        From idle this is a logged no-op.
        """
        with self._locked():
            state = self._state
            if state is PairingState.NOT_INITIALIZING:
                logger.warning("pairing_back_ignored: state=%s", state.name)
                return PairingSnapshot(self._state, self._pending, self._waiting)

            if state in STAGE_1_STATES or state is PairingState.STAGE_3_ALL_GOOD_AND_DONE:
                snapshot = self._reset()
            else:
                pending = self._require_pending("go_back")
                self._invalidate_inflight()
                self._waiting = False
                if state in _BACK_TO_IP_ENTRY:
                    self._pending = replace(pending, ip="", token="")
                    snapshot = self._set_state(PairingState.STAGE_1_GET_IP)
                elif state in _BACK_TO_BUTTON_PROMPT:
                    self._pending = replace(pending, token="")
                    snapshot = self._set_state(PairingState.STAGE_2_PRESS_BRIDGE_BUTTON)
                else:
                    raise self._abort(f"no back transition from {state.name}")
        self._notify(snapshot)
        return snapshot

    def complete(self) -> Optional[BridgeRecord]:
        """Promote the paired bridge into the registry and return to idle.

        Returns:
            The registered record, or None when the registry refused it
            (the session then sits in STAGE_3_ERROR_CANNOT_ADD_BRIDGE).

        Raises:
            InvalidTransitionError: If not in STAGE_3_ALL_GOOD_AND_DONE.
            PairingInvariantError: If the pending bridge lacks an ip or token.
        """
        with self._locked():
            self._require_state("complete", {PairingState.STAGE_3_ALL_GOOD_AND_DONE})
            pending = self._require_pending("complete")
            if not pending.ip or not pending.token:
                raise self._abort("completing a pending bridge without ip and token")

            record = replace(pending, active=True, token_valid=True)
            try:
                added = self.registry.add_bridge(record)
            except (RegistryError, CredentialStoreError, OSError) as exc:
                log_error(
                    "pairing_complete",
                    "registry_rejected",
                    str(exc),
                    resource_id=pending.id,
                    ip=pending.ip,
                )
                snapshot = self._set_state(PairingState.STAGE_3_ERROR_CANNOT_ADD_BRIDGE)
                added = None
            else:
                self._pending = None
                snapshot = self._set_state(PairingState.NOT_INITIALIZING)
        self._notify(snapshot)
        return added

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._invalidate_inflight()
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
