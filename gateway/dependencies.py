"""Access policy: FastAPI dependencies that authenticate and gate requests.

Whatever a dependency resolves is recorded on ``request.state.identity``
so the usage interceptor and downstream handlers see the same identity.

Identity order per call site:
  * required bearer (``get_session``) and ``require_admin``: token only
  * required key (``get_api_key``): X-API-Key only
  * optional (``get_optional_identity``): bearer first, then X-API-Key;
    both are attached when both are valid
"""

from __future__ import annotations

import dataclasses
import ipaddress
import logging
from dataclasses import dataclass

from fastapi import Depends, Header, Request

from gateway.config import settings
from gateway.db.pool import get_connection
from gateway.errors import Forbidden, InvalidCredential, MissingCredential, RateLimited
from gateway.services import api_key as api_key_service
from gateway.services.rate_limit import FailedAttemptTracker
from gateway.services.token import SessionTokenPayload, verify_session_token

logger = logging.getLogger(__name__)

API_KEY_SCHEME = "ApiKey"

key_attempts = FailedAttemptTracker(
    max_attempts=settings.API_KEY_MAX_FAILED_ATTEMPTS,
    lockout_ms=settings.API_KEY_LOCKOUT_SECONDS * 1000,
)


@dataclass
class Identity:
    """Request-scoped identity handed to downstream handlers."""

    user_id: str | None = None
    is_admin: bool = False
    api_key_id: str | None = None


def _attach_identity(request: Request, **fields) -> Identity:
    current = getattr(request.state, "identity", None) or Identity()
    identity = dataclasses.replace(current, **fields)
    request.state.identity = identity
    return identity


async def get_db():
    """Yield a database connection from the pool."""
    async with get_connection() as conn:
        yield conn


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer ") :].strip() or None


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


async def get_session(
    request: Request,
    authorization: str | None = Header(None),
) -> SessionTokenPayload:
    """Require a valid bearer session token.

    Raises:
        MissingCredential: No Bearer token was presented.
        InvalidCredential: The token is malformed, mis-signed, or expired.
    """
    token = _bearer_token(authorization)
    if token is None:
        raise MissingCredential()

    payload = verify_session_token(token)
    if payload is None:
        raise InvalidCredential()

    _attach_identity(request, user_id=payload.subject, is_admin=payload.is_admin)
    return payload


async def require_admin(
    session: SessionTokenPayload = Depends(get_session),
) -> SessionTokenPayload:
    """Require a valid session token with the admin flag set.

    Raises:
        Forbidden: The caller is authenticated but not an admin.
    """
    if not session.is_admin:
        raise Forbidden()
    return session


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


async def _check_api_key(raw_key: str, client_ip: str) -> dict | None:
    """Validate *raw_key*, counting failures against *client_ip*.

    Raises:
        RateLimited: The client is locked out after repeated failures.
    """
    retry_after = await key_attempts.retry_after(client_ip)
    if retry_after:
        raise RateLimited(
            retry_after,
            "Too many authentication attempts. Please try again later.",
        )

    candidates = []
    if api_key_service.looks_like_key(raw_key):
        # Release the connection before the hash loop.
        async with get_connection() as conn:
            candidates = await api_key_service.find_candidates(conn, raw_key)
    record = await api_key_service.match_candidate(raw_key, candidates)
    if record is None:
        failures = await key_attempts.record_failure(client_ip)
        logger.info("Rejected API key from %s (%d recent failures)", client_ip, failures)
        return None

    await key_attempts.record_success(client_ip)
    return record


async def get_api_key(
    request: Request,
    x_api_key: str | None = Header(None),
) -> dict:
    """Require a valid, active API key in the X-API-Key header.

    Raises:
        MissingCredential: No key was presented.
        InvalidCredential: The key is unknown, malformed, or revoked.
        RateLimited: The client is locked out after repeated failures.
    """
    if not x_api_key:
        raise MissingCredential("API key required", scheme=API_KEY_SCHEME)

    record = await _check_api_key(x_api_key, resolve_client_ip(request))
    if record is None:
        raise InvalidCredential("Invalid API key", scheme=API_KEY_SCHEME)

    _attach_identity(request, api_key_id=record["id"])
    return record


# ---------------------------------------------------------------------------
# Optional identity
# ---------------------------------------------------------------------------


async def get_optional_identity(
    request: Request,
    authorization: str | None = Header(None),
    x_api_key: str | None = Header(None),
) -> Identity:
    """Attach whichever credentials are present and valid; never reject.

    A locked-out client's API key is skipped rather than rejected.
    """
    identity = _attach_identity(request)

    token = _bearer_token(authorization)
    if token is not None:
        payload = verify_session_token(token)
        if payload is not None:
            identity = _attach_identity(
                request, user_id=payload.subject, is_admin=payload.is_admin
            )

    if x_api_key:
        try:
            record = await _check_api_key(x_api_key, resolve_client_ip(request))
        except RateLimited:
            record = None
        if record is not None:
            identity = _attach_identity(request, api_key_id=record["id"])

    return identity


# ---------------------------------------------------------------------------
# Client address
# ---------------------------------------------------------------------------


def _is_trusted_proxy(addr: str, trusted: list[str]) -> bool:
    """Check if *addr* matches any entry in the trusted proxy list.

    Each entry can be an individual IP or a CIDR network (e.g. "10.0.0.0/8").
    """
    try:
        ip = ipaddress.ip_address(addr)
    except ValueError:
        return False

    for entry in trusted:
        try:
            if "/" in entry:
                if ip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif ip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("Invalid trusted proxy entry: %s", entry)
    return False


def resolve_client_ip(request: Request) -> str:
    """Return the rate-limit and lockout key for a request.

    * Peer is a trusted proxy and sent X-Forwarded-For → left-most address.
    * Otherwise → the transport peer address.
    * No peer information → ``"unknown"`` (a shared bucket).
    """
    direct_ip = request.client.host if request.client else "unknown"
    trusted = settings.trusted_proxies_list

    if not trusted or not _is_trusted_proxy(direct_ip, trusted):
        return direct_ip

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    return direct_ip
