"""
Input validation and publish rate limiting.
"""

import time
from collections import defaultdict
from urllib.parse import urlparse

from shroud.errors import ValidationFailure


def validate_relay_url(url: str) -> str:
    """
    Check that a relay URL is a well-formed ``ws://`` or ``wss://`` URL.

    Returns:
        The stripped URL.

    Raises:
        ValidationFailure: wrong scheme or no host.
    """
    url = (url or "").strip()
    if not (url.startswith("wss://") or url.startswith("ws://")):
        raise ValidationFailure("Relay URL must start with wss:// or ws://", field="relay", value=url)
    try:
        parsed = urlparse(url)
        parsed.port  # raises on a non-numeric port
    except ValueError as e:
        raise ValidationFailure(f"Invalid relay URL: {e}", field="relay", value=url) from e
    if not parsed.hostname:
        raise ValidationFailure("Relay URL has no host", field="relay", value=url)
    return url


class RateLimiter:
    """
    Sliding-window limit on requests per identifier.

    Args:
        max_requests: Requests allowed inside one window.
        window_seconds: Window length.
    """

    def __init__(self, max_requests: int = 20, window_seconds: float = 60.0):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)

    def _cleanup(self, identifier: str, now: float) -> list[float]:
        cutoff = now - self.window_seconds
        recent = [t for t in self._requests[identifier] if t > cutoff]
        self._requests[identifier] = recent
        return recent

    def is_allowed(self, identifier: str) -> bool:
        """Record a request and report whether it fits in the window."""
        now = time.monotonic()
        recent = self._cleanup(identifier, now)
        if len(recent) >= self.max_requests:
            return False
        recent.append(now)
        return True

    def remaining(self, identifier: str) -> int:
        """Requests still available in the current window."""
        return max(0, self.max_requests - len(self._cleanup(identifier, time.monotonic())))

    def reset(self, identifier: str | None = None):
        """Forget one identifier, or everything."""
        if identifier is None:
            self._requests.clear()
        else:
            self._requests.pop(identifier, None)
