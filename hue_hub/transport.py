"""HTTP transport for talking to bridges on the local network.

Every request is bounded by a timeout, is never retried, and never raises for
network-level failures: callers receive a ``TransportResponse`` whose
``status_code`` is 0 when no HTTP response was obtained. Requests can be
cancelled or bounded by a deadline through a ``CancellationToken``.
"""

import logging
import socket
import ssl
import time
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Event
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

import sentry_sdk


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class TransportResponse:
    """Outcome of a single HTTP exchange.

    Attributes:
        status_code: HTTP status, or 0 when no response was received.
        body: Decoded response body ("" when absent).
        error: Human-readable failure reason for status 0 responses.
        category: Machine-readable failure category (timeout, tls, network, ...).
    """

    status_code: int
    body: str = ""
    error: str = ""
    category: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class CancellationToken:
    """Cooperative cancellation flag with an optional absolute deadline.

    Probes check the token before touching the network and shrink their
    timeout to whatever time remains before the deadline.
    """

    def __init__(self, deadline_seconds: Optional[float] = None):
        self._event = Event()
        self._deadline: Optional[float] = None
        if deadline_seconds is not None:
            self._deadline = time.monotonic() + max(0.0, float(deadline_seconds))

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self, default: float) -> float:
        """Return the timeout to use: default, clipped to the time left before the deadline."""
        if self._deadline is None:
            return default
        return max(0.0, min(default, self._deadline - time.monotonic()))


class TransportClient(ABC):
    """Interface for the HTTP collaborator used by bridge probes and the token protocol."""

    @abstractmethod
    def get(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> TransportResponse:
        raise NotImplementedError

    @abstractmethod
    def post(
        self,
        url: str,
        body: str,
        headers: Optional[Dict[str, str]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> TransportResponse:
        raise NotImplementedError


def _sanitize_error_text(raw_error: str, limit: int = 240) -> str:
    collapsed = " ".join(raw_error.split())
    if len(collapsed) <= limit:
        return collapsed
    return f"{collapsed[: limit - 3]}..."


def _classify_url_error(reason: Any) -> Tuple[str, str]:
    """Classify URL/network errors into human-readable categories.

    Args:
        reason: Exception or error reason to classify.

    Returns:
        Tuple of (human_readable_reason, category_code).
    """
    if isinstance(reason, (socket.timeout, TimeoutError)):
        return "request timed out", "timeout"
    if isinstance(reason, (ssl.SSLError, ssl.CertificateError)):
        return "tls handshake failed", "tls"
    if isinstance(reason, (ConnectionRefusedError, ConnectionResetError)):
        return "connection refused or reset", "connection_refused_or_reset"

    reason_text = str(reason).lower()
    if "timed out" in reason_text:
        return "request timed out", "timeout"
    if any(token in reason_text for token in ("certificate", "ssl", "tls", "wrong version number")):
        return "tls handshake failed", "tls"
    if any(
        token in reason_text for token in ("connection refused", "connection reset", "broken pipe")
    ):
        return "connection refused or reset", "connection_refused_or_reset"
    return "connection failed", "network"


def _redacted_url_for_logs(url: str) -> str:
    """Drop credentials, query and fragment from a URL before logging it."""
    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, host, parts.path, "", ""))


class UrllibTransportClient(TransportClient):
    """TransportClient backed by urllib.

    Hue bridges serve self-signed certificates, so TLS verification is off
    unless ``verify_tls`` is set.
    """

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS, verify_tls: bool = False):
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self.verify_tls = verify_tls
        if verify_tls:
            self._tls_context = ssl.create_default_context()
        else:
            self._tls_context = ssl.create_default_context()
            self._tls_context.check_hostname = False
            self._tls_context.verify_mode = ssl.CERT_NONE

    def get(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> TransportResponse:
        return self._request("GET", url, None, headers, cancel)

    def post(
        self,
        url: str,
        body: str,
        headers: Optional[Dict[str, str]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> TransportResponse:
        request_headers = {"Content-Type": "application/json", **(headers or {})}
        return self._request("POST", url, body.encode("utf-8"), request_headers, cancel)

    def _request(
        self,
        method: str,
        url: str,
        data: Optional[bytes],
        headers: Optional[Dict[str, str]],
        cancel: Optional[CancellationToken],
    ) -> TransportResponse:
        url_log = _redacted_url_for_logs(url)
        timeout = self.timeout_seconds
        if cancel is not None:
            if cancel.cancelled:
                logger.info("transport_request_cancelled: method=%s url=%s", method, url_log)
                return TransportResponse(0, error="request cancelled", category="cancelled")
            timeout = cancel.remaining(timeout)
            if timeout <= 0:
                return TransportResponse(0, error="deadline exceeded", category="cancelled")

        request = urllib.request.Request(
            url=url,
            data=data,
            headers=dict(headers or {}),
            method=method,
        )
        context = self._tls_context if url.startswith("https://") else None

        try:
            with urllib.request.urlopen(request, timeout=timeout, context=context) as response:  # nosec B310 - bridge URLs are built from validated IPs
                status_code = getattr(response, "status", 0)
                body = response.read().decode("utf-8", errors="replace")
                logger.debug(
                    "transport_response: method=%s url=%s status=%s", method, url_log, status_code
                )
                return TransportResponse(status_code, body)
        except urllib.error.HTTPError as exc:
            try:
                body = exc.read().decode("utf-8", errors="replace")
            except OSError:
                body = ""
            logger.info(
                "transport_http_error: method=%s url=%s status=%s", method, url_log, exc.code
            )
            return TransportResponse(exc.code, body)
        except (urllib.error.URLError, OSError, ssl.SSLError, ssl.CertificateError) as exc:
            reason_source = exc.reason if isinstance(exc, urllib.error.URLError) else exc
            reason, category = _classify_url_error(reason_source)
            logger.warning(
                "transport_network_error: method=%s url=%s reason=%s category=%s",
                method,
                url_log,
                reason,
                category,
            )
            with sentry_sdk.new_scope() as scope:
                scope.set_tag("component", "transport")
                scope.set_tag("category", category)
                scope.capture_exception(exc)
            return TransportResponse(
                0,
                error=_sanitize_error_text(f"{reason}: {reason_source}"),
                category=category,
            )
