"""Periodic re-verification of every registered bridge.

For each bridge, in order: an unknown IP or an unreachable bridge marks it
inactive and stops there; otherwise it is active, and a stored application
key is validated against the bridge. Failures only short-circuit the bridge
they belong to; every registered bridge is visited on every run.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from threading import Event, Lock, Thread
from typing import Any, Callable, Dict, List, Optional, Tuple

import sentry_sdk

from .bridge_probes import BridgeReachabilityChecker, TokenValidator
from .connectivity import ConnectivityProber
from .registry import BridgeRecord, BridgeRegistry
from .structured_logging import log_event
from .transport import CancellationToken


logger = logging.getLogger(__name__)


class TestStatus(Enum):
    __test__ = False

    NOT_TESTED = "not_tested"
    TESTING = "testing"
    TEST_GOOD = "test_good"
    TEST_BAD = "test_bad"


class HealthCheckReason(Enum):
    ALL_HEALTHY = "all_healthy"
    NO_BRIDGES = "no_bridges"
    NO_NETWORK = "no_network"
    UNHEALTHY_BRIDGES = "unhealthy_bridges"


@dataclass(frozen=True)
class BridgeCheckResult:
    """Per-bridge outcome. ``skipped`` names the step that stopped the walk, if any."""

    bridge_id: str
    ip: str
    active: bool
    token_valid: Optional[bool]
    skipped: str = ""

    @property
    def healthy(self) -> bool:
        return self.active and self.token_valid is True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bridge_id": self.bridge_id,
            "ip": self.ip,
            "active": self.active,
            "token_valid": self.token_valid,
            "healthy": self.healthy,
            "skipped": self.skipped or None,
        }


@dataclass(frozen=True)
class HealthCheckReport:
    status: TestStatus
    reason: HealthCheckReason
    results: Tuple[BridgeCheckResult, ...] = ()
    completed: bool = True
    started_at: str = ""
    finished_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.name,
            "reason": self.reason.name,
            "completed": self.completed,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "results": [result.to_dict() for result in self.results],
        }


HealthCheckListener = Callable[[TestStatus, Optional[BridgeCheckResult]], None]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def aggregate_status(results: List[BridgeCheckResult]) -> Tuple[TestStatus, HealthCheckReason]:
    """Overall verdict: good only when there is at least one bridge and all are healthy."""
    if not results:
        return TestStatus.TEST_BAD, HealthCheckReason.NO_BRIDGES
    if all(result.healthy for result in results):
        return TestStatus.TEST_GOOD, HealthCheckReason.ALL_HEALTHY
    return TestStatus.TEST_BAD, HealthCheckReason.UNHEALTHY_BRIDGES


class HealthCheckSequencer:
    """Walks the registry and refreshes each bridge's health flags.

    Runs are serialized: a run requested while another is in progress waits
    for it to finish. Listeners receive ``(status, None)`` on status changes
    and ``(status, result)`` as soon as each bridge's result is known.
    """

    def __init__(
        self,
        registry: BridgeRegistry,
        reachability_checker: BridgeReachabilityChecker,
        token_validator: TokenValidator,
        connectivity_prober: Optional[ConnectivityProber] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.registry = registry
        self.reachability_checker = reachability_checker
        self.token_validator = token_validator
        self.connectivity_prober = connectivity_prober

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="bridge-health-check"
        )
        self._run_lock = Lock()
        self._state_lock = Lock()
        self._status = TestStatus.NOT_TESTED
        self._last_report: Optional[HealthCheckReport] = None
        self._listeners: List[HealthCheckListener] = []

    @property
    def status(self) -> TestStatus:
        with self._state_lock:
            return self._status

    @property
    def last_report(self) -> Optional[HealthCheckReport]:
        with self._state_lock:
            return self._last_report

    def subscribe(self, listener: HealthCheckListener) -> Callable[[], None]:
        with self._state_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._state_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, status: TestStatus, result: Optional[BridgeCheckResult] = None) -> None:
        with self._state_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(status, result)
            except Exception:
                logger.exception("health_check_listener_failed: status=%s", status.name)

    def _set_status(self, status: TestStatus) -> None:
        with self._state_lock:
            self._status = status
        self._publish(status)

    def _check_bridge(
        self, record: BridgeRecord, cancel: Optional[CancellationToken]
    ) -> BridgeCheckResult:
        if not record.ip:
            return BridgeCheckResult(record.id, record.ip, False, None, skipped="no_ip")

        if not self.reachability_checker.is_reachable(record.ip, cancel):
            return BridgeCheckResult(record.id, record.ip, False, None, skipped="unreachable")

        if not record.token:
            return BridgeCheckResult(record.id, record.ip, True, None, skipped="no_token")

        token_valid = self.token_validator.is_token_valid(record.ip, record.token, cancel)
        return BridgeCheckResult(record.id, record.ip, True, token_valid)

    def _record(self, result: BridgeCheckResult) -> None:
        self.registry.update_health(
            result.bridge_id, result.ip, result.active, result.token_valid
        )
        self._publish(TestStatus.TESTING, result)

    def run(self, cancel: Optional[CancellationToken] = None) -> HealthCheckReport:
        """Check every registered bridge once.

        Args:
            cancel: Optional token; once cancelled, remaining probes fail fast
                and their bridges are reported inactive.

        Returns:
            The report for this run, also kept as ``last_report``.
        """
        with self._run_lock:
            started_at = _utc_now()
            self._set_status(TestStatus.TESTING)
            bridges = self.registry.list_bridges()
            results: List[BridgeCheckResult] = []

            if not bridges:
                status, reason = TestStatus.TEST_BAD, HealthCheckReason.NO_BRIDGES
            elif (
                self.connectivity_prober is not None
                and not self.connectivity_prober.is_local_network_transport_available()
            ):
                logger.warning("health_check_no_network: bridges=%s", len(bridges))
                for record in bridges:
                    result = BridgeCheckResult(record.id, record.ip, False, None, skipped="no_network")
                    results.append(result)
                    self._record(result)
                status, reason = TestStatus.TEST_BAD, HealthCheckReason.NO_NETWORK
            else:
                for record in bridges:
                    result = self._check_bridge(record, cancel)
                    results.append(result)
                    self._record(result)
                status, reason = aggregate_status(results)

            report = HealthCheckReport(
                status=status,
                reason=reason,
                results=tuple(results),
                completed=True,
                started_at=started_at,
                finished_at=_utc_now(),
            )
            with self._state_lock:
                self._last_report = report
            self._set_status(status)

        log_event(
            "health_check_completed",
            severity="INFO" if status is TestStatus.TEST_GOOD else "WARNING",
            status=status.name,
            reason=reason.name,
            bridges=len(results),
            healthy=sum(1 for result in results if result.healthy),
        )
        return report

    def run_async(self, cancel: Optional[CancellationToken] = None) -> Future:
        return self._executor.submit(self.run, cancel)

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)


class HealthCheckMonitor:
    """Daemon thread that runs the sequencer at a fixed interval.

    The first run starts immediately. Each run gets a deadline of one
    interval so a hung bridge cannot stall the schedule, and ``stop()``
    cancels the run in progress.
    """

    def __init__(
        self,
        sequencer: HealthCheckSequencer,
        interval_seconds: float,
        shutdown_event: Optional[Event] = None,
    ):
        self.sequencer = sequencer
        self.interval_seconds = max(1.0, float(interval_seconds))
        self.shutdown_event = shutdown_event or Event()
        self._thread: Optional[Thread] = None
        self._thread_lock = Lock()
        self._current_cancel: Optional[CancellationToken] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the monitor thread. Idempotent and restart-safe after ``stop()``."""
        with self._thread_lock:
            if self._thread and self._thread.is_alive():
                return
            self.shutdown_event.clear()
            self._thread = Thread(target=self._run_loop, name="bridge-health-monitor", daemon=True)
            self._thread.start()
        logger.info("health_check_monitor_started: interval_seconds=%.1f", self.interval_seconds)

    def stop(self, timeout_seconds: float = 3.0) -> None:
        with self._thread_lock:
            self.shutdown_event.set()
            cancel = self._current_cancel
            if cancel is not None:
                cancel.cancel()
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=timeout_seconds)
            if self._thread and not self._thread.is_alive():
                self._thread = None

    def _run_once(self) -> Optional[HealthCheckReport]:
        cancel = CancellationToken(deadline_seconds=self.interval_seconds)
        self._current_cancel = cancel
        try:
            return self.sequencer.run(cancel)
        except Exception as exc:
            logger.exception("health_check_run_failed")
            with sentry_sdk.new_scope() as scope:
                scope.set_tag("component", "health_check")
                scope.capture_exception(exc)
            return None
        finally:
            self._current_cancel = None

    def _run_loop(self) -> None:
        wait_seconds = 0.0
        while not self.shutdown_event.wait(wait_seconds):
            self._run_once()
            wait_seconds = self.interval_seconds
