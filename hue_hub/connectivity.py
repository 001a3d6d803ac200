import logging
import socket
from abc import ABC, abstractmethod


logger = logging.getLogger(__name__)

# Any RFC 1918 address works; UDP connect() only selects a route, nothing is sent.
_PRIVATE_ROUTE_PROBE_ADDRESS = ("10.255.255.255", 1)


class ConnectivityProber(ABC):
    """Answers whether a local-network transport (Wi-Fi or Ethernet) is up."""

    @abstractmethod
    def is_local_network_transport_available(self) -> bool:
        raise NotImplementedError


class SocketConnectivityProber(ConnectivityProber):
    """Checks for a non-loopback route towards a private network address."""

    def __init__(self, probe_address=_PRIVATE_ROUTE_PROBE_ADDRESS):
        self.probe_address = probe_address

    def is_local_network_transport_available(self) -> bool:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
                probe.connect(self.probe_address)
                local_address = probe.getsockname()[0]
        except OSError as exc:
            logger.info("local_network_unavailable: reason=%s", exc)
            return False

        if not local_address or local_address == "0.0.0.0" or local_address.startswith("127."):
            logger.info("local_network_unavailable: local_address=%s", local_address)
            return False
        return True


class StaticConnectivityProber(ConnectivityProber):
    """Prober with a fixed answer, for hosts where connectivity is known up front."""

    def __init__(self, available: bool = True):
        self.available = available

    def is_local_network_transport_available(self) -> bool:
        return self.available
