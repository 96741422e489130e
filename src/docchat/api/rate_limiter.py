"""Per-caller rate limiting using a sliding window of request timestamps."""

import asyncio
import time
from typing import Dict, List, Optional

from fastapi import Request
from structlog import get_logger

from ..config import get_settings
from ..domain.errors import Unauthenticated
from .auth import decode_token

logger = get_logger()


class RateLimitExceeded(Exception):
    """Exception raised when rate limit is exceeded."""

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimiter:
    """Sliding-window limiter keyed by caller and path."""

    def __init__(self, rate_limit: int = 50, time_window: int = 60):
        """Initialize rate limiter with configurable parameters."""
        self.rate_limit = rate_limit
        self.time_window = time_window  # in seconds
        self.requests: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task = None
        logger.info(
            "rate_limiter_initialized",
            rate_limit=rate_limit,
            time_window=time_window
        )

    async def start(self):
        """Start the rate limiter cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

    async def stop(self):
        """Stop the rate limiter cleanup task."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    def _prune(self, key: str, now: float) -> List[float]:
        cutoff_time = now - self.time_window
        timestamps = [ts for ts in self.requests.get(key, []) if ts > cutoff_time]
        if timestamps:
            self.requests[key] = timestamps
        else:
            self.requests.pop(key, None)
        return timestamps

    async def _periodic_cleanup(self):
        """Periodically drop expired request timestamps."""
        while True:
            try:
                await asyncio.sleep(self.time_window)
                async with self._lock:
                    now = time.time()
                    for key in list(self.requests.keys()):
                        self._prune(key, now)
            except asyncio.CancelledError:
                break

    async def check_rate_limit(self, key: str) -> None:
        """Record a request for ``key`` or raise ``RateLimitExceeded``."""
        current_time = time.time()

        async with self._lock:
            timestamps = self._prune(key, current_time)
            if len(timestamps) >= self.rate_limit:
                retry_after = max(1, int(timestamps[0] + self.time_window - current_time))
                logger.warning(
                    "rate_limit_exceeded",
                    key=key,
                    current_requests=len(timestamps),
                    rate_limit=self.rate_limit
                )
                raise RateLimitExceeded(
                    f"Rate limit of {self.rate_limit} requests per {self.time_window} seconds exceeded",
                    retry_after=retry_after,
                )
            self.requests.setdefault(key, []).append(current_time)

    async def get_remaining_requests(self, key: str) -> int:
        """Get remaining requests for the key."""
        async with self._lock:
            return max(0, self.rate_limit - len(self._prune(key, time.time())))


def caller_key(request: Request) -> str:
    """Verified bearer subject when the token checks out, client address otherwise.

    Unverified claims are never trusted, so a forged token only spends the
    budget of the address it came from.
    """
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        try:
            identity = decode_token(auth_header[7:], get_settings())
        except Unauthenticated:
            identity = None
        if identity is not None:
            return f"user:{identity.subject}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


async def rate_limit_middleware(
    request: Request,
    rate_limiter: Optional[RateLimiter] = None
) -> None:
    """Rate limiting middleware."""
    if rate_limiter is None:
        return

    key = f"{caller_key(request)}:{request.url.path}"
    await rate_limiter.check_rate_limit(key)
