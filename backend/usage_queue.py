"""Fire-and-forget persistence of feature-usage events.

Gate checks run in FastAPI's worker threads, so events are handed to the
event loop with ``call_soon_threadsafe`` and written by a single drain task
in batches of up to ``USAGE_BATCH_SIZE`` rows.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

import asyncpg

from .usage_config import (
    APP_VERSION,
    DB_CONFIG,
    DB_CONNECT_TIMEOUT,
    USAGE_BATCH_SIZE,
    USAGE_QUEUE_MAXSIZE,
    USAGE_TRACKING_ENABLED,
)

LOGGER = logging.getLogger("usage.queue")

UsageEventDict = Dict[str, Any]

_COLUMNS = ("ts", "user_id", "feature", "action", "platform", "had_access", "props")

INSERT_SQL = "INSERT INTO usage_events ({columns}) VALUES ({placeholders})".format(
    columns=", ".join(_COLUMNS),
    placeholders=", ".join(f"${index}" for index in range(1, len(_COLUMNS))) + f", ${len(_COLUMNS)}::jsonb",
)


def _as_utc(value: Optional[datetime], default: datetime) -> datetime:
    if value is None:
        return default
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _props_json(event: UsageEventDict) -> str:
    props = dict(event.get("props") or {})
    if APP_VERSION:
        props.setdefault("app_version", APP_VERSION)
    return json.dumps(props, default=str)


def _to_row(event: UsageEventDict, received_at: datetime) -> List[Any]:
    return [
        _as_utc(event.get("ts"), received_at),
        event.get("user_id"),
        event.get("feature"),
        event.get("action") or "used",
        event.get("platform"),
        event.get("had_access"),
        _props_json(event),
    ]


async def create_usage_pool() -> Optional[asyncpg.Pool]:
    """Open the telemetry pool, or return ``None`` when tracking is switched off."""

    if not USAGE_TRACKING_ENABLED:
        return None
    return await asyncpg.create_pool(
        min_size=1,
        max_size=5,
        command_timeout=10,
        timeout=DB_CONNECT_TIMEOUT,
        **DB_CONFIG,
    )


async def insert_events(pool: asyncpg.Pool, events: Iterable[UsageEventDict]) -> int:
    received_at = datetime.now(timezone.utc)
    rows = [_to_row(event, received_at) for event in events]
    if rows:
        async with pool.acquire() as connection:
            await connection.executemany(INSERT_SQL, rows)
    return len(rows)


class UsageQueue:
    """Bounded buffer between request handlers and the usage table.

    ``put_nowait`` never raises; when the buffer is full the event is dropped
    and counted in ``dropped``.
    """

    def __init__(
        self,
        *,
        pool: Optional[asyncpg.Pool],
        loop: asyncio.AbstractEventLoop,
        enabled: bool,
        maxsize: int = USAGE_QUEUE_MAXSIZE,
        batch_size: int = USAGE_BATCH_SIZE,
    ) -> None:
        self._pool = pool
        self._loop = loop
        self._queue: "asyncio.Queue[UsageEventDict]" = asyncio.Queue(maxsize=maxsize)
        self._batch_size = max(1, batch_size)
        self._closed = False
        self.enabled = bool(enabled) and pool is not None
        self.dropped = 0

    @property
    def accepting(self) -> bool:
        return self.enabled and not self._closed

    def put_nowait(self, event: UsageEventDict) -> None:
        if not self.accepting:
            return
        try:
            self._loop.call_soon_threadsafe(self._enqueue, dict(event))
        except RuntimeError:
            LOGGER.warning("Usage queue loop is closed; dropping event")

    def _enqueue(self, event: UsageEventDict) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            LOGGER.warning("Usage queue is full; dropping event (%s dropped so far)", self.dropped)

    def _take(self, limit: Optional[int], first: Optional[UsageEventDict] = None) -> List[UsageEventDict]:
        taken = [first] if first is not None else []
        while limit is None or len(taken) < limit:
            try:
                taken.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return taken

    async def _write(self, batch: Sequence[UsageEventDict]) -> None:
        try:
            await insert_events(self._pool, batch)
        finally:
            for _ in batch:
                self._queue.task_done()

    async def run(self) -> None:
        """Drain the buffer until cancelled, flushing whatever is left on the way out."""

        if not self.enabled:
            return
        try:
            while not self._closed:
                batch = self._take(self._batch_size, await self._queue.get())
                try:
                    await self._write(batch)
                except Exception:
                    LOGGER.exception("Failed to persist usage batch of %s events", len(batch))
        except asyncio.CancelledError:
            await self.flush()
            raise

    def close(self) -> None:
        self._closed = True

    async def flush(self) -> None:
        if not self.enabled:
            return
        remaining = self._take(None)
        if remaining:
            await self._write(remaining)


_active_queue: Optional[UsageQueue] = None


def set_usage_queue(queue: Optional[UsageQueue]) -> None:
    global _active_queue
    _active_queue = queue


def record_usage(event: UsageEventDict) -> None:
    """Enqueue one usage event if tracking is running; otherwise a no-op."""

    if _active_queue is not None:
        _active_queue.put_nowait(event)
