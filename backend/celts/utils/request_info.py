"""
Client identification helpers used by the session guard and the rate limiter.
"""
import hashlib
import ipaddress
import re
from typing import Any, Dict

from fastapi import Request

SECURE_BROWSER_PATTERNS = [
    re.compile(r"SEB", re.IGNORECASE),
    re.compile(r"SecureBrowser", re.IGNORECASE),
    re.compile(r"ExamBrowser", re.IGNORECASE),
]

_BROWSER_VERSION_RE = re.compile(r"(?:Chrome|Firefox|Safari|Edge|Opera)/(\d+\.\d+)")


def get_client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else "127.0.0.1"


def generate_device_fingerprint(request: Request) -> str:
    user_agent = request.headers.get("user-agent", "")
    accept_language = request.headers.get("accept-language", "")
    accept_encoding = request.headers.get("accept-encoding", "")
    raw = f"{user_agent}-{accept_language}-{accept_encoding}-{get_client_ip(request)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def is_secure_browser(user_agent: str) -> bool:
    return any(pattern.search(user_agent or "") for pattern in SECURE_BROWSER_PATTERNS)


def extract_browser_name(user_agent: str) -> str:
    # order matters: Chromium-based UAs also carry "Safari"
    for name in ("Chrome", "Firefox", "Safari", "Edge", "Opera"):
        if name in user_agent:
            return name
    if "SEB" in user_agent:
        return "Safe Exam Browser"
    return "Unknown"


def extract_browser_version(user_agent: str) -> str:
    match = _BROWSER_VERSION_RE.search(user_agent or "")
    return match.group(1) if match else "Unknown"


def is_private_ip(ip: str) -> bool:
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return address.is_private or address.is_loopback


def get_browser_info(request: Request) -> Dict[str, Any]:
    user_agent = request.headers.get("user-agent", "")
    return {
        "userAgent": user_agent,
        "isSecureBrowser": is_secure_browser(user_agent),
        "browserName": extract_browser_name(user_agent),
        "browserVersion": extract_browser_version(user_agent),
    }


def get_network_info(request: Request) -> Dict[str, Any]:
    """IP plus proxy heuristics. No geo lookup, so VPNs are never flagged here."""
    client_ip = get_client_ip(request)
    forwarded_hops = [
        hop for hop in request.headers.get("X-Forwarded-For", "").split(",") if hop.strip()
    ]
    is_proxy = not is_private_ip(client_ip) and (
        bool(request.headers.get("Via")) or len(forwarded_hops) > 1
    )
    return {
        "ip": client_ip,
        "isVPN": False,
        "isProxy": is_proxy,
        "isPrivate": is_private_ip(client_ip),
    }
