"""Integration test helper fixtures.

The full ASGI app runs with its database layer swapped for an in-memory key
table and the upstream replaced by respx routes. Everything between the
HTTP edge and those two seams is real.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import respx

from gateway.config import settings
from gateway.services import upstream
from gateway.services.token import create_session_token

UPSTREAM = "http://upstream.test"

_PUBLIC_FIELDS = ("id", "name", "key_prefix", "is_active", "last_used_at", "created_at")


class FakeKeyTable:
    """In-memory stand-in for the gateway.db.api_keys functions."""

    def __init__(self):
        self.rows: dict[str, dict] = {}

    def _public(self, row):
        return {k: row[k] for k in _PUBLIC_FIELDS}

    async def create_api_key(self, conn, id, name, key_prefix, key_hash):
        self.rows[id] = {
            "id": id,
            "name": name,
            "key_prefix": key_prefix,
            "key_hash": key_hash,
            "is_active": True,
            "last_used_at": None,
            "created_at": datetime.now(timezone.utc),
        }
        return self._public(self.rows[id])

    async def get_active_api_keys_by_prefix(self, conn, key_prefix):
        return [
            dict(r) for r in self.rows.values() if r["key_prefix"] == key_prefix and r["is_active"]
        ]

    async def get_api_key_by_id(self, conn, key_id):
        row = self.rows.get(key_id)
        return self._public(row) if row else None

    async def list_api_keys(self, conn):
        return [self._public(r) for r in self.rows.values()]

    async def revoke_api_key(self, conn, key_id):
        row = self.rows.get(key_id)
        if row is None:
            return False
        row["is_active"] = False
        return True

    async def touch_api_key(self, conn, key_id):
        if key_id in self.rows:
            self.rows[key_id]["last_used_at"] = datetime.now(timezone.utc)


class FakeUsageTable:
    def __init__(self):
        self.summaries: dict[str, dict] = {}

    async def get_usage_summary(self, conn, api_key_id):
        return self.summaries.get(
            api_key_id, {"total_requests": 0, "total_tokens": 0, "avg_latency_ms": 0.0}
        )


class CollectingRecorder:
    running = True
    pending = 0
    dropped = 0

    def __init__(self):
        self.records = []

    def submit(self, record):
        self.records.append(record)
        return True


@asynccontextmanager
async def _fake_connection():
    yield MagicMock()


@pytest.fixture
def key_table():
    table = FakeKeyTable()
    with (
        patch("gateway.services.api_key.db_api_keys", table),
        patch("gateway.api.keys.db_api_keys", table),
        patch("gateway.services.api_key.get_connection", _fake_connection),
        patch("gateway.dependencies.get_connection", _fake_connection),
    ):
        yield table


@pytest.fixture
def usage_table(key_table):
    table = FakeUsageTable()
    with patch("gateway.api.usage.db_usage", table):
        yield table


@pytest.fixture
def usage_records(monkeypatch):
    """Capture what the metering interceptor submits."""
    recorder = CollectingRecorder()
    monkeypatch.setattr("gateway.services.usage._recorder", recorder)
    return recorder.records


@pytest.fixture
async def upstream_mock():
    """Initialize the upstream client and route its traffic to respx."""
    await upstream.init_client(settings)
    try:
        with respx.mock(base_url=UPSTREAM, assert_all_called=False) as router:
            yield router
    finally:
        await upstream.close_client()


def bearer(subject="user-123", is_admin=False, **kwargs):
    return {"Authorization": f"Bearer {create_session_token(subject, is_admin=is_admin, **kwargs)}"}


@pytest.fixture
def admin_headers():
    return bearer("admin-1", is_admin=True)


@pytest.fixture
def auth_headers():
    return bearer("user-1")


@pytest.fixture
async def api_key(test_client, key_table, admin_headers):
    """Create a key through the admin API; returns the creation response body."""
    resp = await test_client.post("/api/keys", headers=admin_headers, json={"name": "test-key"})
    assert resp.status_code == 201, resp.text
    return resp.json()
