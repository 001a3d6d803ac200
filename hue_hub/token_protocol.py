"""Application-key registration against a Hue bridge.

A registration POST succeeds only within the window after the bridge's
physical link button was pressed. The bridge answers with a JSON array whose
first element holds either ``success`` (with ``username`` / ``clientkey``)
or ``error`` (type 101 while the button has not been pressed).
"""

import json
import logging
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .ip_validation import bridge_url, is_valid_ip
from .transport import CancellationToken, TransportClient


logger = logging.getLogger(__name__)

REGISTRATION_PATH = "/api"
LINK_BUTTON_NOT_PRESSED_ERROR = 101

MAX_APP_NAME_LENGTH = 20
MAX_INSTANCE_NAME_LENGTH = 19
DEFAULT_APP_NAME = "hue_hub"


class TokenErrorKind(Enum):
    NONE = "none"
    BAD_IP = "bad_ip"
    UNSUCCESSFUL_RESPONSE = "unsuccessful_response"
    TOKEN_NOT_FOUND = "token_not_found"
    CANNOT_PARSE_RESPONSE_BODY = "cannot_parse_response_body"
    BUTTON_NOT_HIT = "button_not_hit"


@dataclass(frozen=True)
class TokenResult:
    """Outcome of one registration attempt; token is set iff error_kind is NONE."""

    token: Optional[str]
    error_kind: TokenErrorKind

    @property
    def ok(self) -> bool:
        return self.error_kind is TokenErrorKind.NONE


def build_device_type(app_name: str = DEFAULT_APP_NAME, instance_name: Optional[str] = None) -> str:
    """Build the ``<app>#<instance>`` devicetype the bridge records for the key.

    Both parts are truncated to the lengths the bridge accepts.
    """
    app = (app_name or DEFAULT_APP_NAME).strip()[:MAX_APP_NAME_LENGTH]
    instance = (instance_name if instance_name is not None else socket.gethostname()).strip()
    instance = instance[:MAX_INSTANCE_NAME_LENGTH] or "local"
    return f"{app}#{instance}"


def build_registration_body(device_type: str) -> str:
    return json.dumps({"devicetype": device_type, "generateclientkey": True})


def parse_registration_response(body: str) -> TokenResult:
    """Map a registration response body onto a TokenResult.

    Args:
        body: Raw body of a 2xx registration response.

    Returns:
        TokenResult carrying the username on success, else the failure kind.
    """
    try:
        payload: Any = json.loads(body)
    except ValueError:
        return TokenResult(None, TokenErrorKind.CANNOT_PARSE_RESPONSE_BODY)

    if not isinstance(payload, list) or not payload or not isinstance(payload[0], dict):
        return TokenResult(None, TokenErrorKind.CANNOT_PARSE_RESPONSE_BODY)

    first = payload[0]
    if "success" in first:
        success = first["success"]
        username = success.get("username") if isinstance(success, dict) else None
        if isinstance(username, str) and username:
            return TokenResult(username, TokenErrorKind.NONE)
        return TokenResult(None, TokenErrorKind.TOKEN_NOT_FOUND)

    error = first.get("error")
    if isinstance(error, dict):
        error_type = error.get("type")
        if (
            isinstance(error_type, (int, float))
            and not isinstance(error_type, bool)
            and error_type == LINK_BUTTON_NOT_PRESSED_ERROR
        ):
            return TokenResult(None, TokenErrorKind.BUTTON_NOT_HIT)
        logger.info(
            "bridge_registration_error: type=%s description=%s",
            error_type,
            error.get("description", ""),
        )

    return TokenResult(None, TokenErrorKind.CANNOT_PARSE_RESPONSE_BODY)


class TokenAcquisitionProtocol:
    """Requests a new application key from a bridge. One POST per call, never retried."""

    def __init__(
        self,
        transport: TransportClient,
        app_name: str = DEFAULT_APP_NAME,
        instance_name: Optional[str] = None,
    ):
        self.transport = transport
        self.device_type = build_device_type(app_name, instance_name)

    def request_token(self, ip: str, cancel: Optional[CancellationToken] = None) -> TokenResult:
        if not is_valid_ip(ip):
            return TokenResult(None, TokenErrorKind.BAD_IP)

        response = self.transport.post(
            bridge_url(ip, REGISTRATION_PATH),
            build_registration_body(self.device_type),
            cancel=cancel,
        )
        if not response.ok:
            logger.info(
                "bridge_registration_unsuccessful: ip=%s status=%s category=%s",
                ip,
                response.status_code,
                response.category or "-",
            )
            return TokenResult(None, TokenErrorKind.UNSUCCESSFUL_RESPONSE)

        result = parse_registration_response(response.body)
        logger.info("bridge_registration_result: ip=%s outcome=%s", ip, result.error_kind.value)
        return result
