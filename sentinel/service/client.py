from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Mapping, Optional

from user_agents import parse as parse_user_agent

UNKNOWN_IP = "0.0.0.0"


@dataclass(frozen=True)
class ClientContext:
    """Network and device signals of one request, extracted by the HTTP layer."""

    ip: str
    user_agent: str
    fingerprint: str

    @property
    def device_name(self) -> str:
        return device_name_from_user_agent(self.user_agent)


def compute_fingerprint(user_agent: Optional[str], accept_language: Optional[str]) -> str:
    """Header-derived device fingerprint. Not a secret, only a binding."""
    raw = f"{user_agent or ''}{accept_language or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Resolve the caller IP: X-Forwarded-For (first hop), X-Real-IP, socket peer."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if peer:
        return peer
    return UNKNOWN_IP


def client_context(headers: Mapping[str, str], peer: Optional[str] = None) -> ClientContext:
    user_agent = headers.get("user-agent") or ""
    return ClientContext(
        ip=client_ip(headers, peer),
        user_agent=user_agent,
        fingerprint=compute_fingerprint(user_agent, headers.get("accept-language")),
    )


_OTHER = "Other"


def _known(value: Optional[str]) -> Optional[str]:
    if not value or value == _OTHER:
        return None
    return value


def device_name_from_user_agent(user_agent: Optional[str]) -> str:
    """Human-readable device label for session listings and alert emails."""
    if not user_agent:
        return "Unknown Device"
    parsed = parse_user_agent(user_agent)

    vendor = _known(parsed.device.brand)
    model = _known(parsed.device.model)
    if vendor and model:
        return f"{vendor} {model}"
    if parsed.is_mobile:
        return "Mobile Device"
    if parsed.is_tablet:
        return "Tablet Device"

    os_name = _known(parsed.os.family)
    if os_name == "Mac OS X":
        return "Apple Mac"
    if os_name == "iOS":
        return "Apple iPhone / iPad"
    if os_name and os_name.startswith("Windows"):
        return "Windows PC"
    if os_name in ("Chrome OS", "ChromeOS"):
        return "Chromebook"
    if os_name in ("Linux", "Ubuntu", "Fedora", "Debian"):
        return "Linux Machine"
    if os_name and parsed.os.version_string:
        return f"{os_name} {parsed.os.version_string}"
    return "Unknown Device"
