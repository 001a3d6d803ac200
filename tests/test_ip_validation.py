import pytest

from hue_hub.ip_validation import bridge_url, is_valid_ip


@pytest.mark.parametrize(
    "candidate",
    ["192.168.1.1", "0.0.0.0", "255.255.255.255", "10.0.0.42", "010.1.1.1"],
)
def test_is_valid_ip_accepts_dotted_quads(candidate):
    assert is_valid_ip(candidate) is True


@pytest.mark.parametrize(
    "candidate",
    [
        "",
        "19216811",
        "192.168.1",
        "192.168.1.1.1",
        "192.168.1.256",
        "192.168.1.-1",
        "192.168..1",
        " 192.168.1.1",
        "192.168.1.1 ",
        "192.168.1.1\n",
        "192.168.1.1:80",
        "http://192.168.1.1",
        "bridge.local",
        "192.168.1.1a",
        "1234.1.1.1",
        "+1.1.1.1",
        "١٩٢.168.1.1",
    ],
)
def test_is_valid_ip_rejects_malformed_input(candidate):
    assert is_valid_ip(candidate) is False


@pytest.mark.parametrize("candidate", [None, 19216811, b"192.168.1.1", ["192.168.1.1"]])
def test_is_valid_ip_rejects_non_strings(candidate):
    assert is_valid_ip(candidate) is False


def test_bridge_url_builds_secure_and_plain_urls():
    assert bridge_url("192.168.1.1", "/api") == "https://192.168.1.1/api"
    assert (
        bridge_url("192.168.1.1", "/debug/clip.html", secure=False)
        == "http://192.168.1.1/debug/clip.html"
    )


def test_bridge_url_rejects_invalid_ip_and_relative_path():
    with pytest.raises(ValueError, match="bridge ip is invalid"):
        bridge_url("192.168.1", "/api")
    with pytest.raises(ValueError, match="must start with '/'"):
        bridge_url("192.168.1.1", "api")
