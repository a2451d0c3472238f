import pytest
from starlette.requests import Request

from sessionkeeper.api.device import client_ip, guess_device_name, session_context


def _request(headers=None, client=("203.0.113.9", 5000)):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/v1/auth/refresh-tokens",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


class TestClientIp:
    def test_falls_back_to_peer_address(self):
        assert client_ip(_request()) == "203.0.113.9"

    def test_no_peer(self):
        assert client_ip(_request(client=None)) is None

    def test_cloudflare_header_wins(self):
        request = _request(
            {
                "CF-Connecting-IP": "198.51.100.1",
                "X-Real-IP": "198.51.100.2",
                "X-Forwarded-For": "198.51.100.3",
            }
        )
        assert client_ip(request) == "198.51.100.1"

    def test_first_forwarded_hop(self):
        request = _request({"X-Forwarded-For": "198.51.100.3, 10.0.0.1, 10.0.0.2"})
        assert client_ip(request) == "198.51.100.3"

    def test_invalid_values_skipped(self):
        request = _request({"X-Real-IP": "not-an-ip", "X-Client-IP": "2001:db8::1"})
        assert client_ip(request) == "2001:db8::1"


@pytest.mark.parametrize(
    "user_agent,expected",
    [
        (
            "Mozilla/5.0 (X11; Linux x86_64; rv:120.0) Gecko/20100101 Firefox/120.0",
            "Firefox on Linux",
        ),
        (
            "Mozilla/5.0 (Linux; Android 14) AppleWebKit/537.36 Chrome/120.0 Mobile Safari/537.36",
            "Chrome on Android",
        ),
        (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0 Safari/537.36 Edg/120.0",
            "Edge on Windows",
        ),
        (
            "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Version/17.0 Mobile Safari/604.1",
            "Safari on iOS",
        ),
        ("Googlebot/2.1 (+http://www.google.com/bot.html)", "Bot/Crawler"),
        ("curl/8.4.0", "Unknown Device"),
        (None, "Unknown Device"),
    ],
)
def test_guess_device_name(user_agent, expected):
    assert guess_device_name(user_agent) == expected


def test_session_context_reads_headers():
    request = _request(
        {
            "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) Firefox/121.0",
            "X-Device-ID": "device-abc",
        }
    )
    context = session_context(request, remember_me=True, metadata={"auth_provider": "password"})
    assert context.device_id == "device-abc"
    assert context.device_name == "Firefox on macOS"
    assert context.ip_address == "203.0.113.9"
    assert context.remember_me is True
    assert context.metadata == {"auth_provider": "password"}


def test_session_context_truncates_long_user_agent():
    context = session_context(_request({"User-Agent": "x" * 2000}))
    assert len(context.user_agent) == 512
    assert context.device_id is None
