"""
devices/fingerprint.py -- Stable device keys and display names from request attributes.

derive_fingerprint() turns the stable parts of a request (user agent, plus an
optional client-supplied device hint such as an app install id) into the key
the device store deduplicates on. It is an HMAC keyed with the application
secret, so the stored value cannot be matched against fingerprints computed
by another deployment and does not expose the raw hint.

describe_user_agent() produces the human-readable device name shown in
"connected devices" lists, e.g. "Chrome on macOS".

These are pure functions (no I/O), so the tracker's contract stays pure:
callers that already have their own fingerprint pass it in directly.
"""

from __future__ import annotations

import hashlib
import hmac

# Order matters: Edge and Opera user agents also contain "chrome", and Chrome
# user agents also contain "safari".
_BROWSERS: list[tuple[str, str]] = [
    ("edg", "Edge"),
    ("opr/", "Opera"),
    ("opera", "Opera"),
    ("brave", "Brave"),
    ("firefox", "Firefox"),
    ("chrome", "Chrome"),
    ("crios", "Chrome"),
    ("safari", "Safari"),
]

# iPhone/iPad/Android checks come before macOS/Linux: iPadOS reports
# "Mac OS X" and Android reports "Linux".
_SYSTEMS: list[tuple[str, str]] = [
    ("iphone", "iOS (iPhone)"),
    ("ipad", "iOS (iPad)"),
    ("android", "Android"),
    ("windows", "Windows"),
    ("macintosh", "macOS"),
    ("mac os", "macOS"),
    ("linux", "Linux"),
]


def derive_fingerprint(user_agent: str, device_hint: str | None = None, secret: str = "") -> str:
    """Return a hex HMAC-SHA256 over the normalized user agent and device hint."""
    material = f"{(user_agent or '').strip()}\x1f{(device_hint or '').strip()}"
    return hmac.new(secret.encode("utf-8"), material.encode("utf-8"), hashlib.sha256).hexdigest()


def describe_user_agent(user_agent: str) -> str:
    """Return "<Browser> on <OS>" for display, with "Unknown ..." fallbacks."""
    ua = (user_agent or "").lower()
    browser = next((label for token, label in _BROWSERS if token in ua), "Unknown Browser")
    system = next((label for token, label in _SYSTEMS if token in ua), "Unknown OS")
    return f"{browser} on {system}"
