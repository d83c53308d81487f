"""Usage metering (best-effort).

Completed requests are turned into UsageRecords and handed to a bounded
queue drained by a fixed pool of worker tasks. Submitting never blocks the
request path. When the queue is full the record being submitted is dropped
and a warning is logged; write failures are logged and swallowed. Metering
is lossy under failure by contract and never affects a client response.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from gateway.db import usage as db_usage
from gateway.db.pool import get_connection

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UsageRecord:
    endpoint: str
    method: str
    status_code: int
    latency_ms: int
    tokens_used: int = 0
    api_key_id: str | None = None
    user_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)


def _as_count(value: Any) -> int | None:
    # bool is an int subclass; a JSON true is not a token count
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def extract_tokens(body: Any) -> int:
    """Best-effort token count from a decoded JSON response body.

    Checks, in order: ``usage.total_tokens``, ``usage.prompt_tokens +
    usage.completion_tokens``, top-level ``tokens``. Returns 0 if none apply.
    """
    if not isinstance(body, dict):
        return 0

    usage = body.get("usage")
    if isinstance(usage, dict):
        total = _as_count(usage.get("total_tokens"))
        if total is not None:
            return total
        prompt = _as_count(usage.get("prompt_tokens"))
        completion = _as_count(usage.get("completion_tokens"))
        if prompt is not None and completion is not None:
            return prompt + completion

    tokens = _as_count(body.get("tokens"))
    return tokens if tokens is not None else 0


async def write_usage_record(record: UsageRecord) -> None:
    """Insert one record using its own pooled connection."""
    async with get_connection() as conn:
        await db_usage.insert_usage_record(conn, record)


class UsageRecorder:
    """Bounded queue of pending usage writes with a fixed worker pool."""

    def __init__(
        self,
        write: Callable[[UsageRecord], Awaitable[None]] = write_usage_record,
        max_queue_size: int = 1000,
        workers: int = 2,
    ):
        self._write = write
        self._queue: asyncio.Queue[UsageRecord] = asyncio.Queue(maxsize=max_queue_size)
        self._worker_count = workers
        self._workers: list[asyncio.Task] = []
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._run(), name=f"usage-writer-{i}")
            for i in range(self._worker_count)
        ]

    def submit(self, record: UsageRecord) -> bool:
        """Queue a record for writing. Returns False if it was dropped."""
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Usage queue full; dropping record for %s %s (dropped=%d)",
                record.method,
                record.endpoint,
                self.dropped,
            )
            return False
        return True

    async def _run(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                await self._write(record)
            except Exception:
                logger.exception(
                    "Failed to write usage record %s (%s %s)",
                    record.id,
                    record.method,
                    record.endpoint,
                )
            finally:
                self._queue.task_done()

    async def stop(self, timeout: float = 5.0) -> None:
        """Give queued records *timeout* seconds to flush, then cancel the workers."""
        if not self._workers:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Usage queue not drained on shutdown; %d record(s) lost", self.pending)
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []


_recorder: UsageRecorder | None = None


async def start_usage_recorder(settings) -> UsageRecorder:
    """Create and start the process-wide recorder from USAGE_QUEUE_MAX and USAGE_WORKERS."""
    global _recorder
    if _recorder is None:
        _recorder = UsageRecorder(
            max_queue_size=settings.USAGE_QUEUE_MAX,
            workers=settings.USAGE_WORKERS,
        )
        await _recorder.start()
    return _recorder


async def stop_usage_recorder() -> None:
    global _recorder
    if _recorder is not None:
        await _recorder.stop()
        _recorder = None


def get_usage_recorder() -> UsageRecorder | None:
    return _recorder
