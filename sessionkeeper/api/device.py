from __future__ import annotations

import ipaddress
import re
from typing import Optional

from fastapi import Request

from sessionkeeper.service.issuer import SessionContext

_MAX_HEADER_LEN = 512

_BROWSERS = (
    ("edg/", "Edge"),
    ("opr/", "Opera"),
    ("firefox/", "Firefox"),
    ("chrome/", "Chrome"),
    ("safari/", "Safari"),
)


def _parse_ip(value: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address((value or "").strip()))
    except ValueError:
        return None


def client_ip(request: Request) -> Optional[str]:
    """Best guess at the caller's address behind common proxies."""

    cf = request.headers.get("cf-connecting-ip")
    if cf and _parse_ip(cf):
        return _parse_ip(cf)
    real = request.headers.get("x-real-ip")
    if real and _parse_ip(real):
        return _parse_ip(real)
    # First hop of X-Forwarded-For is the original client
    xff = request.headers.get("x-forwarded-for")
    if xff:
        first = _parse_ip(xff.split(",", 1)[0])
        if first:
            return first
    x_client = request.headers.get("x-client-ip")
    if x_client and _parse_ip(x_client):
        return _parse_ip(x_client)
    return request.client.host if request.client else None


def _operating_system(ua: str) -> Optional[str]:
    if "iphone" in ua or "ipad" in ua:
        return "iOS"
    if "android" in ua:
        return "Android"
    if "windows" in ua:
        return "Windows"
    if "mac os x" in ua or "macintosh" in ua:
        return "macOS"
    if "linux" in ua:
        return "Linux"
    return None


def guess_device_name(user_agent: Optional[str]) -> str:
    """Coarse label such as ``Firefox on Linux`` for session listings."""

    if not user_agent:
        return "Unknown Device"
    ua = user_agent.lower()
    if re.search(r"bot|crawler|spider", ua):
        return "Bot/Crawler"
    browser = next((name for marker, name in _BROWSERS if marker in ua), None)
    os_name = _operating_system(ua)
    if browser and os_name:
        return f"{browser} on {os_name}"
    return browser or os_name or "Unknown Device"


def session_context(
    request: Request, *, remember_me: bool = False, metadata: Optional[dict] = None
) -> SessionContext:
    """Build the device descriptors for a session from request headers."""

    user_agent = (request.headers.get("user-agent") or "")[:_MAX_HEADER_LEN] or None
    device_id = (request.headers.get("x-device-id") or "")[:_MAX_HEADER_LEN] or None
    return SessionContext(
        device_id=device_id,
        device_name=guess_device_name(user_agent) if user_agent else None,
        user_agent=user_agent,
        ip_address=client_ip(request),
        remember_me=remember_me,
        metadata=dict(metadata or {}),
    )
