"""Database layer for API key operations.

All functions are async, take a connection (conn) as the first parameter,
and use parameterized queries with %s placeholders.
"""

from __future__ import annotations

from datetime import datetime, timezone

import aiomysql

_PUBLIC_COLUMNS = "id, name, key_prefix, is_active, last_used_at, created_at"


async def create_api_key(
    conn,
    id: str,
    name: str,
    key_prefix: str,
    key_hash: str,
) -> dict:
    """Insert a new, active API key record."""
    async with conn.cursor(aiomysql.DictCursor) as cur:
        await cur.execute(
            """
            INSERT INTO api_keys (id, name, key_prefix, key_hash, is_active)
            VALUES (%s, %s, %s, %s, TRUE)
            """,
            (id, name, key_prefix, key_hash),
        )
        await conn.commit()

    return await get_api_key_by_id(conn, id)  # type: ignore[return-value]


async def get_active_api_keys_by_prefix(conn, key_prefix: str) -> list:
    """Return every active key sharing *key_prefix*.

    Prefixes are not unique; more than one row is a normal outcome.
    """
    async with conn.cursor(aiomysql.DictCursor) as cur:
        await cur.execute(
            """
            SELECT * FROM api_keys
            WHERE key_prefix = %s
              AND is_active = TRUE
            """,
            (key_prefix,),
        )
        return list(await cur.fetchall())


async def get_api_key_by_id(conn, key_id: str) -> dict | None:
    """Look up an API key by its primary key ID (hash excluded)."""
    async with conn.cursor(aiomysql.DictCursor) as cur:
        await cur.execute(
            f"SELECT {_PUBLIC_COLUMNS} FROM api_keys WHERE id = %s",
            (key_id,),
        )
        return await cur.fetchone()


async def list_api_keys(conn) -> list:
    """List all API keys with metadata (no hashes exposed)."""
    async with conn.cursor(aiomysql.DictCursor) as cur:
        await cur.execute(f"SELECT {_PUBLIC_COLUMNS} FROM api_keys ORDER BY created_at DESC")
        return list(await cur.fetchall())


async def revoke_api_key(conn, key_id: str) -> bool:
    """Soft-delete an API key. Returns False if no such key exists.

    Revoking an already revoked key is a no-op that still returns True.
    """
    async with conn.cursor(aiomysql.DictCursor) as cur:
        await cur.execute("UPDATE api_keys SET is_active = FALSE WHERE id = %s", (key_id,))
        await conn.commit()
        # MySQL counts changed rows, so an inactive key reports 0 here.
        if cur.rowcount > 0:
            return True
        await cur.execute("SELECT id FROM api_keys WHERE id = %s", (key_id,))
        return await cur.fetchone() is not None


async def touch_api_key(conn, key_id: str) -> None:
    """Set last_used_at to now. Concurrent writers: last write wins."""
    async with conn.cursor(aiomysql.DictCursor) as cur:
        await cur.execute(
            "UPDATE api_keys SET last_used_at = %s WHERE id = %s",
            (datetime.now(timezone.utc).replace(tzinfo=None), key_id),
        )
        await conn.commit()
