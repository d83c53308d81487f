"""Database layer for usage metering.

Usage rows are append-only: this module inserts and aggregates, it never
updates or deletes.
"""

from __future__ import annotations

import aiomysql


async def insert_usage_record(conn, record) -> None:
    """Append a single UsageRecord to api_usage."""
    async with conn.cursor(aiomysql.DictCursor) as cur:
        await cur.execute(
            """
            INSERT INTO api_usage
                (id, api_key_id, user_id, endpoint, method,
                 tokens_used, latency_ms, status_code, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.api_key_id,
                record.user_id,
                record.endpoint,
                record.method,
                record.tokens_used,
                record.latency_ms,
                record.status_code,
                record.created_at.replace(tzinfo=None),
            ),
        )
        await conn.commit()


async def get_usage_summary(conn, api_key_id: str) -> dict:
    """Aggregate request count, token total, and mean latency for one key."""
    async with conn.cursor(aiomysql.DictCursor) as cur:
        await cur.execute(
            """
            SELECT COUNT(*) AS total_requests,
                   COALESCE(SUM(tokens_used), 0) AS total_tokens,
                   COALESCE(AVG(latency_ms), 0) AS avg_latency_ms
            FROM api_usage
            WHERE api_key_id = %s
            """,
            (api_key_id,),
        )
        row = await cur.fetchone()

    return {
        "total_requests": int(row["total_requests"]),
        "total_tokens": int(row["total_tokens"]),
        "avg_latency_ms": float(row["avg_latency_ms"]),
    }
