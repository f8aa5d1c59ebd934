from __future__ import annotations

import re
from typing import Mapping, Optional

from gatehouse.storage.models import Activity, now_ts

# Order matters: Edge and Opera also advertise Chrome, Chrome advertises Safari.
_BROWSERS = (
    ("Edge", re.compile(r"\bEdg(e|A|iOS)?/")),
    ("Opera", re.compile(r"\b(OPR|Opera)/")),
    ("Firefox", re.compile(r"\b(Firefox|FxiOS)/")),
    ("Chrome", re.compile(r"\b(Chrome|CriOS|Chromium)/")),
    ("Safari", re.compile(r"\bSafari/")),
    ("curl", re.compile(r"^curl/")),
)

_PLATFORMS = (
    ("Android", re.compile(r"Android")),
    ("iOS", re.compile(r"iPhone|iPad|iPod")),
    ("Windows", re.compile(r"Windows")),
    ("macOS", re.compile(r"Mac OS X|Macintosh")),
    ("ChromeOS", re.compile(r"CrOS")),
    ("Linux", re.compile(r"Linux|X11")),
)


def device_signature(user_agent: Optional[str]) -> str:
    """Coarse device label such as ``"Firefox on Linux"``."""
    if not user_agent:
        return "Unknown"
    browser = next(
        (name for name, pattern in _BROWSERS if pattern.search(user_agent)), "Other"
    )
    platform = next(
        (name for name, pattern in _PLATFORMS if pattern.search(user_agent)), None
    )
    return f"{browser} on {platform}" if platform else browser


def activity_from_request(
    headers: Mapping[str, str],
    remote_addr: Optional[str],
    *,
    trust_forwarded: bool = False,
    now: Optional[int] = None,
) -> Activity:
    """Build an ``Activity`` from request headers and the peer address.

    ``X-Forwarded-For`` is only honoured when ``trust_forwarded`` is set, i.e.
    when the caller sits behind a proxy it controls.
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    ip = remote_addr or ""
    if trust_forwarded:
        forwarded = lowered.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            ip = first_hop
    return Activity(
        time=now if now is not None else now_ts(),
        ip=ip,
        device=device_signature(lowered.get("user-agent")),
    )
