"""Plain-text bodies for security alerts and one-time codes.

Each renderer returns ``(subject, body)`` ready for ``Notifier.send``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Tuple

from sentinel.storage.models import GeoLocation, Session

Message = Tuple[str, str]

_FOOTER = (
    "\n\nIf this was you, no action is needed. If not, sign out of all devices and "
    "change your password immediately.\n\n- The Sentinel Security Team"
)


def _place(location: GeoLocation) -> str:
    return f"{location.city}, {location.country}"


def _greeting(name: Optional[str]) -> str:
    return f"Hello {name}," if name else "Hello,"


def _fmt_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else "unknown time"


def suspicious_login(
    name: Optional[str],
    *,
    previous: GeoLocation,
    current: GeoLocation,
    distance_km: float,
    speed_kmh: float,
    ip: str,
    device: str,
) -> Message:
    body = (
        f"{_greeting(name)}\n\n"
        "We noticed a sign-in attempt on your account that looks unusual.\n\n"
        f"Previous location: {_place(previous)}\n"
        f"New location: {_place(current)}\n"
        f"Distance: {distance_km:.0f} km\n"
        f"Implied travel speed: {speed_kmh:.0f} km/h\n"
        f"IP address: {ip}\n"
        f"Device: {device}\n\n"
        "The attempt was held for additional verification."
        f"{_FOOTER}"
    )
    return "Security Alert: Suspicious Login Detected", body


def suspicious_activity(
    name: Optional[str],
    *,
    previous: GeoLocation,
    current: GeoLocation,
    distance_km: float,
    speed_kmh: float,
    ip: str,
    device: str,
) -> Message:
    body = (
        f"{_greeting(name)}\n\n"
        "One of your signed-in devices suddenly appeared in a distant location.\n\n"
        f"Last seen: {_place(previous)}\n"
        f"Now: {_place(current)}\n"
        f"Distance: {distance_km:.0f} km at roughly {speed_kmh:.0f} km/h\n"
        f"IP address: {ip}\n"
        f"Device: {device}"
        f"{_FOOTER}"
    )
    return "Security Alert: Suspicious Activity Detected", body


def session_hijack_blocked(
    name: Optional[str], *, ip: str, device: str, location: GeoLocation
) -> Message:
    body = (
        f"{_greeting(name)}\n\n"
        "A request reused one of your sessions from a different device, so we "
        "signed that session out.\n\n"
        f"Original device: {device}\n"
        f"Request IP: {ip}\n"
        f"Last known location: {_place(location)}"
        f"{_FOOTER}"
    )
    return "Security Alert: Suspicious Session Blocked", body


def otp_interception_blocked(name: Optional[str], *, ip: str) -> Message:
    body = (
        f"{_greeting(name)}\n\n"
        "Someone tried to use your verification code from a device other than the one "
        "that requested it. The attempt was blocked.\n\n"
        f"IP address: {ip}"
        f"{_FOOTER}"
    )
    return "Security Alert: OTP Verification Blocked", body


def otp_code(name: Optional[str], *, code: str, ttl_seconds: int) -> Message:
    minutes = max(1, ttl_seconds // 60)
    body = (
        f"{_greeting(name)}\n\n"
        f"Your Sentinel verification code is: {code}\n\n"
        f"It expires in {minutes} minutes and can only be used once, from the same "
        "device and network that requested it.\n\n"
        "If you did not try to sign in, you can ignore this email."
    )
    return "Verify Your Sentinel Login", body


def session_limit_reached(
    name: Optional[str],
    *,
    sessions: Iterable[Session],
    revoke_links: dict[str, str],
) -> Message:
    lines = []
    for session in sessions:
        link = revoke_links.get(session.id, "")
        lines.append(
            f"- {session.device_name} ({_place(session.location)}), "
            f"last active {_fmt_time(session.last_active_at)}\n  Sign out: {link}"
        )
    listing = "\n".join(lines) if lines else "- no active sessions found"
    body = (
        f"{_greeting(name)}\n\n"
        "A new sign-in was refused because your account already has the maximum number "
        "of active sessions. Sign out of a device below, then try again.\n\n"
        f"{listing}\n\n"
        "- The Sentinel Security Team"
    )
    return "Action Required: Session Limit Reached", body
