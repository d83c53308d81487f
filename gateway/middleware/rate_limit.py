"""
Rate limiting middleware.

Applies fixed-window quotas per client IP before any authentication runs.
Two policies by default, first match wins:
  - auth:    key administration (/api/keys), 10 requests per 15 minutes
  - general: every other /api/ path, 100 requests per minute

Each policy is its own RateLimiter, so counters are never shared. /health
and anything outside /api/ is not limited.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from gateway.config import settings
from gateway.dependencies import key_attempts, resolve_client_ip
from gateway.errors import RateLimited, error_body
from gateway.services.rate_limit import FailedAttemptTracker, RateLimiter

logger = logging.getLogger(__name__)

# Sweep expired counters once every N limited requests.
PURGE_EVERY = 1000


@dataclass(frozen=True)
class RateLimitPolicy:
    path_prefix: str
    limiter: RateLimiter

    def matches(self, path: str) -> bool:
        prefix = self.path_prefix.rstrip("/")
        return path == prefix or path.startswith(prefix + "/")


def build_default_policies() -> list[RateLimitPolicy]:
    """Build the auth and general policies from settings."""
    return [
        RateLimitPolicy(
            "/api/keys",
            RateLimiter(
                "auth",
                window_ms=settings.RATE_LIMIT_AUTH_WINDOW_MS,
                max_requests=settings.RATE_LIMIT_AUTH_MAX,
                message="Too many authentication requests. Please try again in {retry_after} seconds.",
            ),
        ),
        RateLimitPolicy(
            "/api",
            RateLimiter(
                "general",
                window_ms=settings.RATE_LIMIT_GENERAL_WINDOW_MS,
                max_requests=settings.RATE_LIMIT_GENERAL_MAX,
                message="Too many requests. Please try again in {retry_after} seconds.",
            ),
        ),
    ]


def rate_limited_response(retry_after: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=RateLimited.status_code,
        content=error_body(RateLimited.code, message),
        headers={"Retry-After": str(retry_after)},
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window rate limiting keyed by client IP."""

    def __init__(
        self,
        app,
        policies: list[RateLimitPolicy] | None = None,
        trackers: list[FailedAttemptTracker] | None = None,
    ):
        super().__init__(app)
        self.policies = policies if policies is not None else build_default_policies()
        # Lockout state lives outside the policies but is swept on the same schedule.
        self.trackers = trackers if trackers is not None else [key_attempts]
        self._seen = 0

    async def _purge_expired(self) -> None:
        for policy in self.policies:
            await policy.limiter.purge_expired()
        for tracker in self.trackers:
            await tracker.purge_expired()

    def _policy_for(self, path: str) -> RateLimitPolicy | None:
        for policy in self.policies:
            if policy.matches(path):
                return policy
        return None

    async def dispatch(self, request: Request, call_next) -> Response:
        policy = self._policy_for(request.url.path)
        if policy is None:
            return await call_next(request)

        self._seen += 1
        if self._seen % PURGE_EVERY == 0:
            await self._purge_expired()

        client_ip = resolve_client_ip(request)
        decision = await policy.limiter.admit(client_ip)
        if not decision.allowed:
            logger.info(
                "Rate limit '%s' exceeded for %s (%d requests)",
                policy.limiter.name,
                client_ip,
                decision.count,
            )
            message = policy.limiter.message.format(retry_after=decision.retry_after_seconds)
            return rate_limited_response(decision.retry_after_seconds, message)

        return await call_next(request)
