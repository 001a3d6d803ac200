"""Read-only probes against a Hue bridge: reachability and application-key validity."""

import json
import logging
from typing import Optional

from .ip_validation import bridge_url, is_valid_ip
from .transport import CancellationToken, TransportClient


logger = logging.getLogger(__name__)

REACHABILITY_PATH = "/debug/clip.html"
BRIDGE_RESOURCE_PATH = "/clip/v2/resource/bridge"
TOKEN_HEADER = "hue-application-key"


class BridgeReachabilityChecker:
    """Decides whether a Hue bridge answers at an IP.

    The bridge serves its CLIP debug page over plain HTTP; any 2xx response
    counts as reachable. Redirects are followed by the transport.
    """

    def __init__(self, transport: TransportClient):
        self.transport = transport

    def is_reachable(self, ip: str, cancel: Optional[CancellationToken] = None) -> bool:
        if not is_valid_ip(ip):
            return False

        response = self.transport.get(bridge_url(ip, REACHABILITY_PATH, secure=False), cancel=cancel)
        if not response.ok:
            logger.debug(
                "bridge_unreachable: ip=%s status=%s category=%s",
                ip,
                response.status_code,
                response.category or "-",
            )
            return False
        return True


def _body_reports_error(body: str) -> bool:
    """Return True when a CLIP response body is unparseable or carries errors.

    v1 errors arrive as ``[{"error": {...}}]``; v2 errors as ``{"errors": [...]}``.
    """
    try:
        payload = json.loads(body)
    except ValueError:
        return True

    if isinstance(payload, list):
        return any(isinstance(item, dict) and "error" in item for item in payload)
    if isinstance(payload, dict):
        errors = payload.get("errors")
        return isinstance(errors, list) and len(errors) > 0
    return True


class TokenValidator:
    """Checks an application key against the bridge's v2 resource endpoint."""

    def __init__(self, transport: TransportClient):
        self.transport = transport

    def is_token_valid(
        self, ip: str, token: str, cancel: Optional[CancellationToken] = None
    ) -> bool:
        """Return True iff the bridge at ip accepts token.

        Unreachable bridges and rejected keys both yield False; callers that
        need to tell them apart probe reachability first.
        """
        if not is_valid_ip(ip) or not token:
            return False

        response = self.transport.get(
            bridge_url(ip, BRIDGE_RESOURCE_PATH),
            headers={TOKEN_HEADER: token},
            cancel=cancel,
        )
        if not response.ok:
            logger.info(
                "bridge_token_rejected: ip=%s status=%s category=%s",
                ip,
                response.status_code,
                response.category or "-",
            )
            return False

        if _body_reports_error(response.body):
            logger.info("bridge_token_rejected: ip=%s reason=error_body", ip)
            return False
        return True
