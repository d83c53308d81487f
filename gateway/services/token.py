"""Session token verification.

Session tokens are stateless HS256 JWTs minted by the external issuer.
Validity depends only on the signature and ``exp``; no server-side state
is consulted, so verification is safe to call from any number of requests
at once.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from gateway.config import settings

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class SessionTokenPayload:
    subject: str
    is_admin: bool
    expires_at: datetime


def create_session_token(
    subject: str,
    is_admin: bool = False,
    expires_in: timedelta | None = None,
    token_type: str = ACCESS_TOKEN_TYPE,
) -> str:
    """Create a signed session token with the issuer's claim layout.

    Payload: {"sub": subject, "isAdmin": bool, "type": ..., "exp": ..., "iat": ...}
    """
    now = datetime.now(timezone.utc)
    if expires_in is None:
        expires_in = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "sub": subject,
        "isAdmin": is_admin,
        "type": token_type,
        "exp": now + expires_in,
        "iat": now,
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_session_token(token: str) -> SessionTokenPayload | None:
    """Validate a session token.

    Returns the payload, or None if the token is malformed, carries a bad
    signature, has expired, lacks ``sub``/``exp``, or is not an access token.
    """
    try:
        claims = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require": ["exp", "sub"]},
        )
    except jwt.InvalidTokenError:
        return None

    if claims.get("type", ACCESS_TOKEN_TYPE) != ACCESS_TOKEN_TYPE:
        return None

    subject = claims["sub"]
    if not isinstance(subject, str) or not subject:
        return None

    return SessionTokenPayload(
        subject=subject,
        is_admin=claims.get("isAdmin") is True,
        expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
    )
