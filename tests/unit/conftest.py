"""Unit test fixtures with mocked DB connections."""

from contextlib import asynccontextmanager
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_db_api_keys():
    """Mock for gateway.db.api_keys module functions."""
    mock = MagicMock()
    mock.create_api_key = AsyncMock()
    mock.get_active_api_keys_by_prefix = AsyncMock(return_value=[])
    mock.get_api_key_by_id = AsyncMock()
    mock.list_api_keys = AsyncMock(return_value=[])
    mock.revoke_api_key = AsyncMock(return_value=True)
    mock.touch_api_key = AsyncMock()
    return mock


@asynccontextmanager
async def fake_connection():
    """Stand-in for gateway.db.pool.get_connection."""
    yield MagicMock()


def make_key_row(id="key-1", name="test-key", key_prefix="tc_abcde", key_hash="", **overrides):
    """Helper to create an api_keys row dict for tests."""
    row = {
        "id": id,
        "name": name,
        "key_prefix": key_prefix,
        "key_hash": key_hash,
        "is_active": True,
        "last_used_at": None,
        "created_at": datetime(2026, 1, 1, 12, 0, 0),
    }
    row.update(overrides)
    return row
