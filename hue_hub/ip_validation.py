import re
from typing import Any


_IPV4_GROUP_PATTERN = re.compile(r"^[0-9]{1,3}$")

BRIDGE_URL_SECURE_PREFIX = "https://"
BRIDGE_URL_OPEN_PREFIX = "http://"


def is_valid_ip(candidate: Any) -> bool:
    """Return True when candidate is a dotted-quad IPv4 literal.

    Exactly four dot-separated groups of ASCII digits, each in [0, 255].
    Whitespace, signs, hostnames, ports and schemes are all rejected.
    """
    if not isinstance(candidate, str) or not candidate:
        return False

    groups = candidate.split(".")
    if len(groups) != 4:
        return False

    for group in groups:
        if not _IPV4_GROUP_PATTERN.fullmatch(group):
            return False
        if int(group) > 255:
            return False

    return True


def bridge_url(ip: str, path: str, secure: bool = True) -> str:
    """Build a URL addressing a bridge at a local IP.

    Args:
        ip: Dotted-quad bridge address.
        path: Request path; must start with '/'.
        secure: Use https:// when True, http:// otherwise.

    Returns:
        Full URL string.

    Raises:
        ValueError: If ip is not a valid dotted-quad or path is not absolute.
    """
    if not is_valid_ip(ip):
        error_message = f"bridge ip is invalid: {ip!r}"
        raise ValueError(error_message)

    if not path.startswith("/"):
        error_message = "bridge path must start with '/'"
        raise ValueError(error_message)

    prefix = BRIDGE_URL_SECURE_PREFIX if secure else BRIDGE_URL_OPEN_PREFIX
    return f"{prefix}{ip}{path}"
