"""
In-memory rate limiting for checkout, stock and newsletter endpoints.

Sliding-window counter per (caller, route). The caller is the bearer token
subject when one is sent, otherwise the client IP.
Not shared between worker processes.
"""
import time
import logging
from collections import defaultdict

from fastapi import Request

from domain.errors import RateLimitError
from middleware.auth import _parse_bearer_token

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Simple in-memory sliding-window rate limiter.

    Tracks request timestamps per key.
    """

    def __init__(self):
        # {key: [timestamp1, timestamp2, ...]}
        self._requests: dict[str, list[float]] = defaultdict(list)

    def _cleanup(self, key: str, window_seconds: int):
        """Remove expired timestamps from the window."""
        cutoff = time.time() - window_seconds
        self._requests[key] = [
            ts for ts in self._requests[key] if ts > cutoff
        ]

    def check(self, key: str, max_requests: int, window_seconds: int) -> bool:
        """
        Check if a request is allowed under the rate limit.

        Returns:
            True if allowed (and counted), False if rate-limited
        """
        self._cleanup(key, window_seconds)

        if len(self._requests[key]) >= max_requests:
            return False

        self._requests[key].append(time.time())
        return True

    def remaining(self, key: str, max_requests: int, window_seconds: int) -> int:
        """Get the number of remaining requests in the current window."""
        self._cleanup(key, window_seconds)
        return max(0, max_requests - len(self._requests[key]))

    def reset(self):
        self._requests.clear()


# Global rate limiter instance
_limiter = RateLimiter()


def _caller_key(request: Request) -> str:
    # Token text is opaque here; decoding happens in the auth dependency
    token = _parse_bearer_token(request.headers.get("Authorization"))
    if token:
        return f"tok:{token[-24:]}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


def rate_limit(max_requests: int = 10, window_seconds: int = 60):
    """
    FastAPI dependency factory for rate limiting.

    Usage:
        @router.post("/checkout/create-order", dependencies=[Depends(rate_limit(10, 60))])
    """
    async def _check_rate_limit(request: Request):
        route_path = request.url.path
        key = f"{_caller_key(request)}:{route_path}"

        if not _limiter.check(key, max_requests, window_seconds):
            logger.warning(
                f"Rate limit exceeded: {key} ({max_requests}/{window_seconds}s)"
            )
            raise RateLimitError(
                f"Rate limit exceeded. Maximum {max_requests} requests "
                f"per {window_seconds} seconds. Try again later.",
                details={
                    "retryAfter": window_seconds,
                    "limit": max_requests,
                    "remaining": _limiter.remaining(key, max_requests, window_seconds),
                },
            )

    return _check_rate_limit
