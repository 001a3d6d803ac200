import logging
from typing import Any, Dict, Optional

from .bridge_probes import BridgeReachabilityChecker, TokenValidator
from .connectivity import ConnectivityProber, SocketConnectivityProber
from .credential_store import CredentialStore, FileCredentialStore
from .health_check import HealthCheckMonitor, HealthCheckSequencer
from .pairing import BridgePairingSession
from .registry import BridgeRegistry
from .token_protocol import TokenAcquisitionProtocol
from .transport import TransportClient, UrllibTransportClient


logger = logging.getLogger(__name__)


class BridgeHub:
    """Owns the registry and the components that act on it.

    One pairing session and one health-check sequencer share the registry,
    the transport and the connectivity prober.
    """

    def __init__(
        self,
        registry: BridgeRegistry,
        pairing: BridgePairingSession,
        health_check: HealthCheckSequencer,
        monitor: Optional[HealthCheckMonitor] = None,
    ):
        self.registry = registry
        self.pairing = pairing
        self.health_check = health_check
        self.monitor = monitor

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        transport: Optional[TransportClient] = None,
        credential_store: Optional[CredentialStore] = None,
        connectivity_prober: Optional[ConnectivityProber] = None,
    ) -> "BridgeHub":
        """Build a hub from a ``load_config()`` dict.

        The transport, credential store and connectivity prober default to the
        production implementations; tests pass fakes.

        Raises:
            CredentialStoreError: If the credential store cannot be opened or read.
        """
        if transport is None:
            transport = UrllibTransportClient(
                timeout_seconds=config["request_timeout_seconds"],
                verify_tls=config["verify_tls"],
            )
        if credential_store is None:
            credential_store = FileCredentialStore(config["credential_store_path"])
        if connectivity_prober is None:
            connectivity_prober = SocketConnectivityProber()

        registry = BridgeRegistry(credential_store)
        registry.load()

        reachability_checker = BridgeReachabilityChecker(transport)
        pairing = BridgePairingSession(
            registry,
            reachability_checker,
            TokenAcquisitionProtocol(
                transport,
                app_name=config["app_name"],
                instance_name=config["instance_name"],
            ),
            connectivity_prober=connectivity_prober,
        )
        health_check = HealthCheckSequencer(
            registry,
            reachability_checker,
            TokenValidator(transport),
            connectivity_prober=connectivity_prober,
        )

        interval = config["health_check_interval_seconds"]
        monitor = HealthCheckMonitor(health_check, interval) if interval > 0 else None
        return cls(registry, pairing, health_check, monitor)

    def start(self) -> None:
        if self.monitor is not None:
            self.monitor.start()
        logger.info(
            "bridge_hub_started: bridges=%s periodic_checks=%s",
            len(self.registry),
            self.monitor is not None,
        )

    def shutdown(self) -> None:
        if self.monitor is not None:
            self.monitor.stop()
        self.pairing.shutdown(wait=False)
        self.health_check.shutdown(wait=False)
        logger.info("bridge_hub_stopped")
