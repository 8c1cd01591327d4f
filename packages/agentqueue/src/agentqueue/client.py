"""Redis Streams log client shared by producers, consumers and the reliability manager."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as aioredis

from agentqueue.config import QueueConfig
from agentqueue.types import TransientInfraError

logger = logging.getLogger(__name__)

StreamEntry = tuple[str, dict[str, str]]


@dataclass(frozen=True)
class PendingEntry:
    """A claimed-but-unacknowledged entry in a consumer group."""

    entry_id: str
    consumer: str
    idle_ms: int
    deliveries: int = 1


@dataclass(frozen=True)
class PendingSummary:
    """Pending count for a group plus (up to a batch of) its entries."""

    count: int
    entries: list[PendingEntry] = field(default_factory=list)


@contextlib.contextmanager
def _infra_errors(op: str) -> Iterator[None]:
    """Re-raise connection and timeout failures as :class:`TransientInfraError`."""
    try:
        yield
    except (aioredis.ConnectionError, aioredis.TimeoutError) as exc:
        raise TransientInfraError(f"Redis {op} failed: {exc}") from exc


def _is_missing_group(exc: aioredis.ResponseError) -> bool:
    return "NOGROUP" in str(exc) or "no such key" in str(exc).lower()


class LogBatch:
    """Commands queued on a ``MULTI``/``EXEC`` pipeline, applied all together."""

    def __init__(self, pipe: Any) -> None:
        self._pipe = pipe
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def append(self, stream: str, fields: Mapping[str, str]) -> None:
        self._pipe.xadd(stream, dict(fields))
        self._size += 1

    def acknowledge(self, stream: str, group: str, entry_id: str) -> None:
        self._pipe.xack(stream, group, entry_id)
        self._size += 1

    def delete(self, stream: str, entry_id: str) -> None:
        self._pipe.xdel(stream, entry_id)
        self._size += 1


class QueueClient:
    """Thin async handle over the three Redis streams, the group and the leases.

    The client owns one Redis connection pool; producers, consumers and the
    reliability manager share it. Stream and group names come from
    :class:`QueueConfig`.

    Args:
        redis_url: Redis connection URL. Defaults to ``config.redis_url``.
        config: Stream, group and key names.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        config: QueueConfig | None = None,
    ) -> None:
        self._config = config or QueueConfig()
        self._redis_url = redis_url or self._config.redis_url
        self._redis: aioredis.Redis | None = None

    @property
    def config(self) -> QueueConfig:
        return self._config

    @property
    def redis_url(self) -> str:
        return self._redis_url

    async def connect(self) -> None:
        """Connect to Redis and ensure the task stream's consumer group exists."""
        logger.debug("QueueClient connecting (tasks=%s)", self._config.tasks_stream)
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        await self.ensure_streams()

    async def disconnect(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.debug("QueueClient disconnected")

    async def __aenter__(self) -> QueueClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            msg = "QueueClient is not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._redis

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def ensure_group(self, stream: str, group: str) -> None:
        """Create *group* on *stream* (and the stream itself); BUSYGROUP is fine."""
        r = self._client()
        with _infra_errors("XGROUP CREATE"):
            try:
                await r.xgroup_create(stream, group, id="0", mkstream=True)
            except aioredis.ResponseError as exc:
                if "BUSYGROUP" not in str(exc):
                    raise

    async def ensure_streams(self) -> None:
        await self.ensure_group(self._config.tasks_stream, self._config.group)

    # ------------------------------------------------------------------
    # Stream primitives
    # ------------------------------------------------------------------

    async def append(self, stream: str, fields: Mapping[str, str]) -> str:
        """Append *fields* to *stream* and return the new entry id."""
        r = self._client()
        with _infra_errors("XADD"):
            return await r.xadd(stream, dict(fields))

    async def claim(
        self,
        stream: str,
        group: str,
        consumer: str,
        *,
        count: int = 1,
        block_ms: int | None = None,
    ) -> list[StreamEntry]:
        """Read up to *count* never-delivered entries for *consumer*.

        With *block_ms* the call waits that long for new entries; without it
        the read returns immediately.
        """
        r = self._client()
        with _infra_errors("XREADGROUP"):
            response = await r.xreadgroup(
                group,
                consumer,
                {stream: ">"},
                count=count,
                block=block_ms,
            )
        if not response:
            return []
        _stream_name, messages = response[0]
        return [(entry_id, fields) for entry_id, fields in messages if fields is not None]

    async def acknowledge(self, stream: str, group: str, entry_id: str) -> None:
        r = self._client()
        with _infra_errors("XACK"):
            await r.xack(stream, group, entry_id)

    async def delete(self, stream: str, *entry_ids: str) -> int:
        if not entry_ids:
            return 0
        r = self._client()
        with _infra_errors("XDEL"):
            return await r.xdel(stream, *entry_ids)

    async def range_scan(
        self,
        stream: str,
        start: str = "-",
        end: str = "+",
        *,
        count: int | None = None,
    ) -> list[StreamEntry]:
        """Entries of *stream* between *start* and *end*, oldest first."""
        r = self._client()
        with _infra_errors("XRANGE"):
            return await r.xrange(stream, min=start, max=end, count=count)

    async def reverse_scan(
        self,
        stream: str,
        start: str = "+",
        end: str = "-",
        *,
        count: int | None = None,
    ) -> list[StreamEntry]:
        """Entries of *stream* from *start* down to *end*, newest first."""
        r = self._client()
        with _infra_errors("XREVRANGE"):
            return await r.xrevrange(stream, max=start, min=end, count=count)

    async def length(self, stream: str) -> int:
        r = self._client()
        with _infra_errors("XLEN"):
            return await r.xlen(stream)

    async def trim(self, stream: str, to_length: int) -> int:
        """Trim *stream* to exactly *to_length* entries (0 empties it)."""
        r = self._client()
        with _infra_errors("XTRIM"):
            return await r.xtrim(stream, maxlen=to_length, approximate=False)

    # ------------------------------------------------------------------
    # Pending-entry list
    # ------------------------------------------------------------------

    async def pending_summary(
        self, stream: str, group: str, *, count: int = 100
    ) -> PendingSummary:
        """Pending count for *group* and up to *count* entries with idle times.

        A group (or stream) that does not exist yet has nothing pending.
        """
        r = self._client()
        with _infra_errors("XPENDING"):
            try:
                summary = await r.xpending(stream, group)
                total = int(summary.get("pending", 0) or 0)
                if total == 0 or count <= 0:
                    return PendingSummary(count=total)
                rows = await r.xpending_range(stream, group, min="-", max="+", count=count)
            except aioredis.ResponseError as exc:
                if _is_missing_group(exc):
                    return PendingSummary(count=0)
                raise

        entries = [
            PendingEntry(
                entry_id=row["message_id"],
                consumer=row["consumer"],
                idle_ms=int(row["time_since_delivered"]),
                deliveries=int(row["times_delivered"]),
            )
            for row in rows
        ]
        return PendingSummary(count=total, entries=entries)

    async def force_reassign(
        self,
        stream: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        entry_id: str,
    ) -> list[StreamEntry]:
        """XCLAIM *entry_id* for *consumer* if it has been idle at least *min_idle_ms*.

        Entries deleted from the stream in the meantime are not returned.
        """
        r = self._client()
        with _infra_errors("XCLAIM"):
            claimed = await r.xclaim(stream, group, consumer, min_idle_ms, [entry_id])
        return [(eid, fields) for eid, fields in claimed if fields]

    # ------------------------------------------------------------------
    # Leases and tailing
    # ------------------------------------------------------------------

    async def set_with_expiry(self, key: str, value: str, ttl_ms: int) -> None:
        r = self._client()
        with _infra_errors("SET"):
            await r.set(key, value, px=ttl_ms)

    async def get(self, key: str) -> str | None:
        r = self._client()
        with _infra_errors("GET"):
            return await r.get(key)

    async def tail(
        self,
        last_ids: Mapping[str, str],
        *,
        count: int = 50,
        block_ms: int = 1000,
    ) -> list[tuple[str, str, dict[str, str]]]:
        """Read entries newer than *last_ids* across several streams.

        Returns ``(stream, entry_id, fields)`` triples in stream order.
        """
        r = self._client()
        with _infra_errors("XREAD"):
            response = await r.xread(dict(last_ids), count=count, block=block_ms)
        out: list[tuple[str, str, dict[str, str]]] = []
        for stream, messages in response or []:
            for entry_id, fields in messages:
                out.append((stream, entry_id, fields))
        return out

    # ------------------------------------------------------------------
    # Atomic batches
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def batch(self) -> AsyncIterator[LogBatch]:
        """Queue commands and apply them in one ``MULTI``/``EXEC`` on exit.

        Nothing is sent if the body raises.
        """
        r = self._client()
        with _infra_errors("MULTI/EXEC"):
            async with r.pipeline(transaction=True) as pipe:
                log_batch = LogBatch(pipe)
                yield log_batch
                if len(log_batch):
                    await pipe.execute()
