# app/x402/ratelimit.py
"""
Rate limiting for the payment facilitator.

Per-IP quotas on the two operations clients can drive:
- create: new payment requests (API calls and middleware challenges)
- verify: settlement verification attempts

Uses a sliding window algorithm with in-memory storage.

Configuration:
- RATE_LIMIT_CREATE_PER_MINUTE (default: 60)
- RATE_LIMIT_VERIFY_PER_MINUTE (default: 120)
"""
import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from app.core.config import settings
from app.facilitator.errors import RateLimitError

logger = logging.getLogger(__name__)

OPERATION_CREATE = "create"
OPERATION_VERIFY = "verify"


@dataclass
class RateLimitWindow:
    """Stores request timestamps for one (operation, IP) pair within the sliding window."""
    requests: List[float] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)


class RateLimiter:
    """
    In-memory sliding window rate limiter.

    Windows are tracked per (operation, client IP). Thread-safe for
    concurrent access.
    """

    def __init__(
        self,
        limits: Optional[Dict[str, int]] = None,
        window_seconds: int = 60
    ):
        """
        Initialize the rate limiter.

        Args:
            limits: Max requests per window by operation. Missing operations use config.
            window_seconds: Size of the sliding window in seconds.
        """
        self._limits = limits or {}
        self._window_seconds = window_seconds
        self._windows: Dict[Tuple[str, str], RateLimitWindow] = defaultdict(RateLimitWindow)
        self._cleanup_lock = threading.Lock()
        self._last_cleanup = time.time()

    def limit_for(self, operation: str) -> int:
        """Get the rate limit for an operation (lazy load from settings if not set)."""
        if operation in self._limits:
            return self._limits[operation]
        if operation == OPERATION_VERIFY:
            return settings.RATE_LIMIT_VERIFY_PER_MINUTE
        return settings.RATE_LIMIT_CREATE_PER_MINUTE

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    def is_rate_limited(self, client_ip: str, operation: str) -> Tuple[bool, int, int]:
        """
        Check and record a request.

        Returns:
            Tuple of (is_limited, requests_made, limit)
        """
        limit = self.limit_for(operation)
        if not client_ip or client_ip == "unknown":
            # Don't rate limit unknown IPs
            return (False, 0, limit)

        now = time.time()
        window_start = now - self._window_seconds

        self._maybe_cleanup(now)

        window = self._windows[(operation, client_ip)]

        with window.lock:
            window.requests = [ts for ts in window.requests if ts > window_start]
            requests_in_window = len(window.requests)

            if requests_in_window >= limit:
                logger.warning(
                    f"Rate limit exceeded for {client_ip} ({operation}): "
                    f"{requests_in_window}/{limit} requests in {self._window_seconds}s"
                )
                return (True, requests_in_window, limit)

            window.requests.append(now)
            return (False, requests_in_window + 1, limit)

    def reset_all(self) -> None:
        """Reset all rate limit tracking."""
        self._windows.clear()
        logger.info("Reset all rate limits")

    def _maybe_cleanup(self, now: float) -> None:
        """Drop empty windows every 5 minutes to bound memory."""
        cleanup_interval = 300

        if now - self._last_cleanup < cleanup_interval:
            return

        with self._cleanup_lock:
            if now - self._last_cleanup < cleanup_interval:
                return

            self._last_cleanup = now
            window_start = now - self._window_seconds
            stale = []

            for key, window in list(self._windows.items()):
                with window.lock:
                    window.requests = [ts for ts in window.requests if ts > window_start]
                    if not window.requests:
                        stale.append(key)

            for key in stale:
                del self._windows[key]

            if stale:
                logger.debug(f"Cleaned up {len(stale)} stale rate limit entries")


# Global rate limiter instance
_rate_limiter: Optional[RateLimiter] = None
_rate_limiter_lock = threading.Lock()


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter

    if _rate_limiter is None:
        with _rate_limiter_lock:
            if _rate_limiter is None:
                _rate_limiter = RateLimiter()

    return _rate_limiter


def check_rate_limit(client_ip: str, operation: str) -> Tuple[bool, Optional[str], Dict[str, int]]:
    """
    Check if a client IP may perform ``operation``.

    Returns:
        Tuple of (is_allowed, reason, stats)
    """
    limiter = get_rate_limiter()
    is_limited, requests_made, limit = limiter.is_rate_limited(client_ip, operation)

    stats = {
        "requests_made": requests_made,
        "limit": limit,
        "remaining": max(0, limit - requests_made),
        "window_seconds": limiter.window_seconds,
    }

    if is_limited:
        return (
            False,
            f"Rate limit exceeded ({operation}): {requests_made}/{limit} requests per minute",
            stats
        )

    return (True, None, stats)


def enforce_rate_limit(client_ip: str, operation: str) -> Dict[str, int]:
    """
    Like check_rate_limit, but raises RateLimitError when the quota is spent.
    """
    is_allowed, reason, stats = check_rate_limit(client_ip, operation)
    if not is_allowed:
        raise RateLimitError(reason, stats=stats)
    return stats


def get_rate_limit_headers(stats: Dict[str, int]) -> Dict[str, str]:
    """Generate rate limit headers for HTTP responses."""
    return {
        "X-RateLimit-Limit": str(stats.get("limit", 0)),
        "X-RateLimit-Remaining": str(stats.get("remaining", 0)),
        "X-RateLimit-Reset": str(stats.get("window_seconds", 60)),
    }


def reset_rate_limiter() -> None:
    """Reset the global rate limiter (useful for testing)."""
    global _rate_limiter
    with _rate_limiter_lock:
        if _rate_limiter is not None:
            _rate_limiter.reset_all()
        _rate_limiter = None
