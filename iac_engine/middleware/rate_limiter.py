"""
Rate limiting middleware for FastAPI.
Implements in-memory sliding-window rate limiting.
"""
from typing import Dict, List, Optional, Pattern, Tuple
from collections import defaultdict
from datetime import datetime, timedelta
import logging
import re

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)


# Rate limit configuration: (endpoint key, path pattern, requests per window per client)
# Paths with IDs share one bucket per endpoint, not one per ID.
RATE_LIMITS: List[Tuple[str, Pattern, int]] = [
    ("audit", re.compile(r"^/api/audit$"), 30),
    ("audit_diff", re.compile(r"^/api/audit/diff$"), 30),
    ("template_generate", re.compile(r"^/api/templates/generate$"), 5),
    ("cloud_sync", re.compile(r"^/api/cloud/connections/[^/]+/sync$"), 10),
    ("cloud_scan", re.compile(r"^/api/cloud/connections/[^/]+/scan$"), 5),
    ("deployment_plan", re.compile(r"^/api/deployments/plan$"), 10),
    ("deployment_apply", re.compile(r"^/api/deployments/[^/]+/apply$"), 10),
    ("deployment_destroy", re.compile(r"^/api/deployments/[^/]+/destroy$"), 10),
]

# Time window for rate limiting (seconds)
RATE_LIMIT_WINDOW = 60


def match_rate_limit(path: str) -> Optional[Tuple[str, int]]:
    """Endpoint key and limit for a path, or None when the path is not limited."""
    for endpoint, pattern, limit in RATE_LIMITS:
        if pattern.match(path):
            return endpoint, limit
    return None


class RateLimiter:
    """
    In-memory rate limiter using sliding window approach.

    Stores timestamps of recent requests per client and endpoint.
    Cleans up expired timestamps on each request to keep memory bounded.
    """

    def __init__(self):
        # Storage: client_id -> endpoint -> list of request timestamps
        self._storage: Dict[str, Dict[str, List[datetime]]] = defaultdict(lambda: defaultdict(list))

    def get_client_id(self, request: Request) -> str:
        """
        Get client identifier for rate limiting.

        Priority:
        1. X-User-Id header (authenticated caller)
        2. X-Forwarded-For header (for proxied requests)
        3. Client IP address
        """
        user_id = request.headers.get("X-User-Id")
        if user_id and user_id.strip():
            return f"user:{user_id.strip()}"

        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            # Take first IP in chain
            return f"ip:{forwarded_for.split(',')[0].strip()}"

        client_ip = request.client.host if request.client else "unknown"
        return f"ip:{client_ip}"

    def _cleanup_expired(self, client_id: str, endpoint: str) -> None:
        if client_id not in self._storage or endpoint not in self._storage[client_id]:
            return

        cutoff_time = datetime.now() - timedelta(seconds=RATE_LIMIT_WINDOW)
        self._storage[client_id][endpoint] = [
            ts for ts in self._storage[client_id][endpoint] if ts > cutoff_time
        ]

        # Clean up empty entries
        if not self._storage[client_id][endpoint]:
            del self._storage[client_id][endpoint]
        if not self._storage[client_id]:
            del self._storage[client_id]

    def is_allowed(self, client_id: str, endpoint: str, limit: int) -> bool:
        """
        Check if request is allowed under rate limit, recording it when it is.

        Args:
            client_id: Client identifier
            endpoint: Endpoint key
            limit: Maximum requests per window

        Returns:
            True if allowed, False if rate limited
        """
        self._cleanup_expired(client_id, endpoint)

        timestamps = self._storage[client_id][endpoint]
        if len(timestamps) >= limit:
            return False

        timestamps.append(datetime.now())
        return True

    def get_remaining(self, client_id: str, endpoint: str, limit: int) -> int:
        self._cleanup_expired(client_id, endpoint)
        return max(0, limit - len(self._storage[client_id][endpoint]))

    def reset(self) -> None:
        self._storage.clear()


# Global rate limiter instance
_rate_limiter = RateLimiter()


def get_rate_limiter() -> RateLimiter:
    return _rate_limiter


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware for rate limiting.

    Applies rate limits only to configured endpoints.
    Other routes pass through untouched.
    """

    async def dispatch(self, request: Request, call_next: ASGIApp):
        path = request.url.path
        matched = match_rate_limit(path)

        if matched is not None:
            endpoint, limit = matched

            try:
                client_id = _rate_limiter.get_client_id(request)

                if not _rate_limiter.is_allowed(client_id, endpoint, limit):
                    logger.info(
                        f"Rate limit exceeded for endpoint {endpoint} "
                        f"(limit: {limit}/min)"
                    )
                    return JSONResponse(
                        status_code=429,
                        content={
                            "status": "error",
                            "error": "RATE_LIMITED",
                            "message": "Too many requests. Please try again later.",
                            "retry_after": RATE_LIMIT_WINDOW,
                        },
                        headers={"Retry-After": str(RATE_LIMIT_WINDOW)},
                    )

            except Exception as error:
                # Fail closed: if rate limiter errors, reject request safely
                logger.error(f"Rate limiter error: {error}", exc_info=True)
                return JSONResponse(
                    status_code=503,
                    content={
                        "status": "error",
                        "error": "RATE_LIMIT_ERROR",
                        "message": "Rate limiting service unavailable. Please try again later.",
                    }
                )

        return await call_next(request)
