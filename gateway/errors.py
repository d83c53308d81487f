"""Typed HTTP errors raised by the access policy and the upstream proxy.

Each error is an ``HTTPException`` so FastAPI renders it without a custom
handler. The body is ``{"detail": {"code": ..., "message": ...}}``; messages
name the failure category only, never which check failed.
"""

from __future__ import annotations

from fastapi import HTTPException


class GatewayError(HTTPException):
    """Base class for errors surfaced to API clients."""

    status_code: int = 500
    code: str = "internal_error"
    message: str = "Internal server error"

    def __init__(self, message: str | None = None, headers: dict[str, str] | None = None):
        super().__init__(
            status_code=type(self).status_code,
            detail={"code": self.code, "message": message or self.message},
            headers=headers,
        )


class MissingCredential(GatewayError):
    """Raised when no credential header was presented."""

    status_code = 401
    code = "missing_credential"
    message = "Authentication required"

    def __init__(self, message: str | None = None, scheme: str = "Bearer"):
        super().__init__(message, headers={"WWW-Authenticate": scheme})


class InvalidCredential(GatewayError):
    """Raised when a credential is malformed, expired, unknown, or revoked."""

    status_code = 401
    code = "invalid_credential"
    message = "Invalid or expired credential"

    def __init__(self, message: str | None = None, scheme: str = "Bearer"):
        super().__init__(message, headers={"WWW-Authenticate": scheme})


class Forbidden(GatewayError):
    """Raised when an authenticated caller lacks the required privilege."""

    status_code = 403
    code = "forbidden"
    message = "Admin access required"


class RateLimited(GatewayError):
    """Raised when a client has exhausted its quota."""

    status_code = 429
    code = "rate_limited"
    message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, message: str | None = None):
        self.retry_after = retry_after
        super().__init__(message, headers={"Retry-After": str(retry_after)})


class UpstreamUnavailable(GatewayError):
    """Raised when the upstream backend could not be reached."""

    status_code = 502
    code = "upstream_unavailable"
    message = "Upstream service unavailable"


def error_body(code: str, message: str) -> dict:
    """Build an error payload for responses produced outside FastAPI routing."""
    return {"detail": {"code": code, "message": message}}
