# app/core/tracking.py
from __future__ import annotations

import hashlib
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone

# TIMESTAMP(base36)_MARKETER(last4)_PRODUCT(last4)_RANDOM(16 hex)
TRACKING_CODE_RE = re.compile(r"^[A-Z0-9]+_[A-Z0-9]{4}_[A-Z0-9]{4}_[A-Z0-9]{16}$")

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

FINGERPRINT_LENGTH = 16


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_BASE36[r])
    return "".join(reversed(out))


def _last4(value: object) -> str:
    s = re.sub(r"[^A-Za-z0-9]", "", str(value or ""))
    return s[-4:] if len(s) >= 4 else s.rjust(4, "0")


def generate_tracking_code(marketer_id: object, product_id: object) -> str:
    timestamp = _to_base36(int(time.time() * 1000))
    random_part = secrets.token_hex(8)
    return f"{timestamp}_{_last4(marketer_id)}_{_last4(product_id)}_{random_part}".upper()


def validate_tracking_code(code: str | None) -> bool:
    if not code:
        return False
    return TRACKING_CODE_RE.match(code) is not None


def normalize_tracking_code(code: str | None) -> str | None:
    if not code:
        return None
    c = code.strip()
    return c or None


def compute_fingerprint(ip_address: str, user_agent: str, session_id: str | None = None) -> str:
    """
    Stable device hash used as the secondary attribution signal.

    Clicks store it at insert time; the resolver recomputes it from the
    conversion request, so both sides must go through this function.
    """
    data = f"{ip_address}|{user_agent}|{session_id or ''}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


@dataclass(frozen=True)
class DeviceInfo:
    device: str
    browser: str
    os: str


def parse_user_agent(user_agent: str | None) -> DeviceInfo:
    ua = (user_agent or "").lower()

    device = "desktop"
    if "mobile" in ua or "android" in ua or "iphone" in ua:
        device = "mobile"
    elif "tablet" in ua or "ipad" in ua:
        device = "tablet"

    # Order matters: Chrome UAs also contain "safari", Edge UAs contain "chrome".
    browser = "unknown"
    if "edg" in ua:
        browser = "edge"
    elif "opr" in ua or "opera" in ua:
        browser = "opera"
    elif "chrome" in ua:
        browser = "chrome"
    elif "firefox" in ua:
        browser = "firefox"
    elif "safari" in ua:
        browser = "safari"

    # iOS UAs contain "mac os x", Android UAs contain "linux".
    os_name = "unknown"
    if "windows" in ua:
        os_name = "windows"
    elif "iphone" in ua or "ipad" in ua:
        os_name = "ios"
    elif "android" in ua:
        os_name = "android"
    elif "mac" in ua:
        os_name = "macos"
    elif "linux" in ua:
        os_name = "linux"

    return DeviceInfo(device=device, browser=browser, os=os_name)
