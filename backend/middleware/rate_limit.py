"""
In-memory rate limiting for the public ExamVault endpoints.

Applied to the token-addressed download endpoint and to provider webhooks,
which are reachable without a buyer session.

Uses a simple sliding-window counter per IP address.
Webhooks only spend budget on requests that fail signature verification, so
bursts of genuine callbacks from a provider's few source IPs are never throttled.

For multi-worker deployments, replace with a shared (Redis-backed) limiter.
"""
import time
import logging
from collections import defaultdict

from fastapi import Request

from domain.errors import RateLimitError

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Simple in-memory sliding-window rate limiter.

    Tracks request timestamps per (IP, route) key.
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
            True if allowed, False if rate-limited
        """
        self._cleanup(key, window_seconds)

        if len(self._requests[key]) >= max_requests:
            return False

        self._requests[key].append(time.time())
        return True

    def exceeded(self, key: str, max_requests: int, window_seconds: int) -> bool:
        """True once `key` has `max_requests` hits in the window. Does not record a hit."""
        self._cleanup(key, window_seconds)
        return len(self._requests[key]) >= max_requests

    def record(self, key: str):
        self._requests[key].append(time.time())

    def remaining(self, key: str, max_requests: int, window_seconds: int) -> int:
        """Get the number of remaining requests in the current window."""
        self._cleanup(key, window_seconds)
        return max(0, max_requests - len(self._requests[key]))

    def reset(self):
        self._requests.clear()


# Global rate limiter instance
_limiter = RateLimiter()


def get_limiter() -> RateLimiter:
    return _limiter


def rate_limit(max_requests: int = 10, window_seconds: int = 60, scope: str | None = None):
    """
    FastAPI dependency factory for rate limiting.

    Usage:
        @router.get("/download/{token}")
        async def download(token: str, _=Depends(rate_limit(30, 60, scope="download"))):
            ...

    `scope` groups every path of a route under one key (e.g. all tokens of
    /download/{token}); without it the concrete request path is used.
    """
    async def _check_rate_limit(request: Request):
        client_ip = request.client.host if request.client else "unknown"
        key = f"{client_ip}:{scope or request.url.path}"

        if not _limiter.check(key, max_requests, window_seconds):
            logger.warning(
                f"Rate limit exceeded: {client_ip} on {scope or request.url.path} "
                f"({max_requests}/{window_seconds}s)"
            )
            raise RateLimitError(
                f"Rate limit exceeded. Maximum {max_requests} requests "
                f"per {window_seconds} seconds. Try again later.",
                details={"retry_after_seconds": window_seconds, "limit": max_requests},
            )

    return _check_rate_limit


class FailureBudget:
    """Per-request handle that charges the caller's IP for a failed attempt."""

    def __init__(self, key: str):
        self.key = key

    def record_failure(self):
        _limiter.record(self.key)


def failure_rate_limit(max_failures: int = 20, window_seconds: int = 60, scope: str = "failures"):
    """
    FastAPI dependency factory that limits failed attempts only.

    Rejects with 429 once the caller's IP has `max_failures` failures in the
    window; the route calls `record_failure()` on the returned budget when a
    request fails. Successful requests are never counted.
    """
    async def _check_failure_budget(request: Request) -> FailureBudget:
        client_ip = request.client.host if request.client else "unknown"
        key = f"{client_ip}:{scope}"

        if _limiter.exceeded(key, max_failures, window_seconds):
            logger.warning(
                f"Failure limit exceeded: {client_ip} on {scope} "
                f"({max_failures}/{window_seconds}s)"
            )
            raise RateLimitError(
                f"Too many failed requests. Maximum {max_failures} failures "
                f"per {window_seconds} seconds. Try again later.",
                details={"retry_after_seconds": window_seconds, "limit": max_failures},
            )
        return FailureBudget(key)

    return _check_failure_budget
