"""API key issuance and verification using Argon2id.

Secrets look like ``tc_<32 alphanumeric chars>``. Only the Argon2id hash
and the non-secret 8-character prefix are persisted; the prefix exists so
validation can shortlist candidates before running the slow hash.

Hashing and verification are CPU-bound and run on a dedicated thread pool
so they never block the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from gateway.config import settings

logger = logging.getLogger(__name__)

KEY_TAG = "tc_"
KEY_RANDOM_LENGTH = 32
KEY_PREFIX_LENGTH = 8
KEY_ALPHABET = string.ascii_letters + string.digits

ph = PasswordHasher(
    time_cost=settings.API_KEY_HASH_TIME_COST,
    memory_cost=settings.API_KEY_HASH_MEMORY_COST,
    parallelism=settings.API_KEY_HASH_PARALLELISM,
)

_hash_executor = ThreadPoolExecutor(max_workers=settings.KEY_HASH_WORKERS)


@dataclass(frozen=True)
class IssuedKey:
    secret: str
    verifier: str
    prefix: str


def generate_secret() -> str:
    """Return a new ``tc_``-tagged secret drawn from the OS random source."""
    body = "".join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_RANDOM_LENGTH))
    return f"{KEY_TAG}{body}"


def check_random_source() -> None:
    """Draw from the OS random source once so a broken one fails at startup.

    Raises:
        RuntimeError: The random source is unavailable.
    """
    try:
        secrets.token_bytes(16)
    except OSError as exc:
        raise RuntimeError("OS random source is unavailable; cannot issue API keys.") from exc


def key_prefix(secret: str) -> str:
    """Return the non-secret lookup prefix of a key."""
    return secret[:KEY_PREFIX_LENGTH]


def issue() -> IssuedKey:
    """Generate a secret together with its Argon2id verifier and prefix.

    Nothing is persisted here. Hashing runs inline, so async callers should
    use :func:`issue_async`.
    """
    secret = generate_secret()
    return IssuedKey(secret=secret, verifier=ph.hash(secret), prefix=key_prefix(secret))


async def issue_async() -> IssuedKey:
    """Run :func:`issue` on the hash thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_hash_executor, issue)


def _verify(secret: str, verifier: str) -> bool:
    try:
        return ph.verify(verifier, secret)
    except InvalidHashError:
        logger.warning("Stored API key verifier is not a valid Argon2 hash")
        return False
    except VerificationError:
        return False


async def verify_secret(secret: str, verifier: str) -> bool:
    """Check a presented secret against a stored verifier.

    Returns True on a match, False otherwise (including corrupt verifiers).
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_hash_executor, _verify, secret, verifier)
