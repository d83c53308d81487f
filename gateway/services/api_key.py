"""API key management and validation.

Keys are issued as ``tc_<random>`` secrets. Only the Argon2id verifier and
the 8-character prefix are stored; the full key is returned once on creation
and never again.

Validation narrows candidates by prefix and then runs the slow verification
against each one. Prefix collisions are normal: the prefix is only a
shortlist, and a secret is accepted only when a verifier matches it.
"""

from __future__ import annotations

import asyncio
import logging
import uuid

from gateway.db import api_keys as db_api_keys
from gateway.db.pool import get_connection
from gateway.services import credentials

logger = logging.getLogger(__name__)

MIN_KEY_LENGTH = 20

# Strong references to in-flight touches so they are not garbage collected.
_background_tasks: set[asyncio.Task] = set()


def looks_like_key(raw_key: str) -> bool:
    """Cheap shape check performed before any database or hash work."""
    return raw_key.startswith(credentials.KEY_TAG) and len(raw_key) >= MIN_KEY_LENGTH


async def create_key(conn, name: str) -> dict:
    """Create a new API key.

    Returns:
        The stored record (no hash) with the full secret under ``key``.
        The secret is shown only once.
    """
    issued = await credentials.issue_async()
    row = await db_api_keys.create_api_key(
        conn,
        id=str(uuid.uuid4()),
        name=name,
        key_prefix=issued.prefix,
        key_hash=issued.verifier,
    )

    result = dict(row) if row else {}
    result["key"] = issued.secret
    return result


async def _touch_last_used(key_id: str) -> None:
    """Record key usage on a separate connection. Errors are logged, never raised."""
    try:
        async with get_connection() as conn:
            await db_api_keys.touch_api_key(conn, key_id)
    except Exception:
        logger.exception("Failed to update last_used_at for API key %s", key_id)


def schedule_touch(key_id: str) -> None:
    """Fire-and-forget ``last_used_at`` update."""
    task = asyncio.create_task(_touch_last_used(key_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def find_candidates(conn, raw_key: str) -> list:
    """Active key rows sharing the presented key's prefix (empty if malformed)."""
    if not looks_like_key(raw_key):
        return []
    return await db_api_keys.get_active_api_keys_by_prefix(conn, credentials.key_prefix(raw_key))


async def match_candidate(raw_key: str, candidates: list) -> dict | None:
    """Run the slow verification against each candidate; no database access.

    A successful match schedules a ``last_used_at`` update without waiting
    for it.
    """
    for row in candidates:
        if await credentials.verify_secret(raw_key, row["key_hash"]):
            schedule_touch(row["id"])
            return row
    return None


async def validate_key(conn, raw_key: str) -> dict | None:
    """Validate a presented API key.

    Returns the matching active key record, or None if the key is malformed,
    unknown, or revoked.
    """
    return await match_candidate(raw_key, await find_candidates(conn, raw_key))


async def revoke_key(conn, key_id: str) -> bool:
    """Revoke an API key immediately. Returns False if it does not exist."""
    revoked = await db_api_keys.revoke_api_key(conn, key_id)
    if revoked:
        logger.info("API key %s revoked", key_id)
    return revoked
