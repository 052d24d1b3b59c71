"""Redis event store adapter."""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import AsyncIterator, Iterable, Mapping, Sequence
import structlog
import orjson
from redis.asyncio import Redis
from redis.exceptions import RedisError
from .base import (
    EventStore,
    StoreUnavailableError,
    WriteConflictError,
    DuplicateEventError,
    ConcurrentUpdateError,
    defect_totals_by_line,
)
from ..event_models import MachineEvent, LineDefectTotals
from ..config import get_settings

log = structlog.get_logger()
settings = get_settings()

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def time_score(value: datetime) -> int:
    """Microseconds since the epoch; exact as a Redis sorted-set score."""
    return (value - _EPOCH) // timedelta(microseconds=1)


@dataclass
class _PendingWrites:
    inserts: list[MachineEvent] = field(default_factory=list)
    updates: list[MachineEvent] = field(default_factory=list)
    expected: dict[str, datetime] = field(default_factory=dict)


class RedisEventStore(EventStore):
    """Redis implementation of the event store.

    Layout under the key prefix:
    - ``<prefix>:event:<event_id>``: JSON record
    - ``<prefix>:ids``: set of every stored event_id
    - ``<prefix>:machine:<machine_id>``: sorted set of event_ids scored by event_time
    - ``<prefix>:factory:<factory_id>``: same, per factory

    Writes use WATCH/MULTI so uniqueness and compare-and-set checks are
    applied atomically with the write. Inside ``batch()`` inserts and
    updates are buffered and committed by a single transaction on exit.
    """

    def __init__(self, redis_url: str | None = None, prefix: str | None = None):
        """
        Initialize Redis event store.

        Args:
            redis_url: Redis connection URL (defaults to settings.REDIS_URL)
            prefix: Key namespace (defaults to settings.REDIS_KEY_PREFIX)
        """
        self.redis_url = redis_url or str(settings.REDIS_URL)
        self.prefix = prefix or settings.REDIS_KEY_PREFIX
        self._client: Redis | None = None
        # Writes buffered by batch(), per owning task
        self._batches: dict[asyncio.Task, _PendingWrites] = {}

    def _get_client(self) -> Redis:
        """Get or create Redis client."""
        if self._client is None:
            self._client = Redis.from_url(
                self.redis_url,
                decode_responses=False,  # orjson handles encoding
                socket_connect_timeout=5,
                socket_timeout=5,
            )
        return self._client

    def _event_key(self, event_id: str) -> str:
        return f"{self.prefix}:event:{event_id}"

    def _machine_key(self, machine_id: str) -> str:
        return f"{self.prefix}:machine:{machine_id}"

    def _factory_key(self, factory_id: str) -> str:
        return f"{self.prefix}:factory:{factory_id}"

    @property
    def _ids_key(self) -> str:
        return f"{self.prefix}:ids"

    @staticmethod
    def _decode(raw: bytes | None) -> MachineEvent | None:
        if raw is None:
            return None
        return MachineEvent.model_validate(orjson.loads(raw))

    @staticmethod
    def _encode(evt: MachineEvent) -> bytes:
        return orjson.dumps(evt.model_dump())

    def _index(self, pipe, evt: MachineEvent):
        score = time_score(evt.event_time)
        pipe.zadd(self._machine_key(evt.machine_id), {evt.event_id: score})
        if evt.factory_id is not None:
            pipe.zadd(self._factory_key(evt.factory_id), {evt.event_id: score})

    def _unindex(self, pipe, evt: MachineEvent):
        pipe.zrem(self._machine_key(evt.machine_id), evt.event_id)
        if evt.factory_id is not None:
            pipe.zrem(self._factory_key(evt.factory_id), evt.event_id)

    def _pending(self) -> _PendingWrites | None:
        return self._batches.get(asyncio.current_task())

    @asynccontextmanager
    async def batch(self) -> AsyncIterator[None]:
        if self._pending() is not None:
            yield
            return
        task = asyncio.current_task()
        pending = self._batches[task] = _PendingWrites()
        try:
            yield
        finally:
            del self._batches[task]
        await self._commit(pending.inserts, pending.updates, pending.expected)

    async def find_by_id(self, event_id: str) -> MachineEvent | None:
        try:
            return self._decode(await self._get_client().get(self._event_key(event_id)))
        except RedisError as e:
            log.error("redis.read_failed", error=str(e), event_id=event_id)
            raise StoreUnavailableError(str(e)) from e

    async def find_by_ids(self, event_ids: Iterable[str]) -> dict[str, MachineEvent]:
        ids = sorted(set(event_ids))
        if not ids:
            return {}
        try:
            raw = await self._get_client().mget([self._event_key(i) for i in ids])
        except RedisError as e:
            log.error("redis.read_failed", error=str(e), count=len(ids))
            raise StoreUnavailableError(str(e)) from e
        found = {}
        for event_id, value in zip(ids, raw):
            evt = self._decode(value)
            if evt is not None:
                found[event_id] = evt
        return found

    async def insert_all(self, events: Sequence[MachineEvent]) -> None:
        if not events:
            return
        pending = self._pending()
        if pending is not None:
            pending.inserts.extend(events)
            return
        await self._commit(events, [], {})

    async def update_all(
        self,
        events: Sequence[MachineEvent],
        expected: Mapping[str, datetime] | None = None,
    ) -> None:
        if not events:
            return
        pending = self._pending()
        if pending is not None:
            pending.updates.extend(events)
            if expected is not None:
                pending.expected.update(expected)
            return
        await self._commit([], events, expected or {})

    async def _commit(
        self,
        inserts: Sequence[MachineEvent],
        updates: Sequence[MachineEvent],
        expected: Mapping[str, datetime],
    ):
        """Write inserts and updates in one WATCH/MULTI transaction."""
        if not inserts and not updates:
            return
        insert_keys = [self._event_key(e.event_id) for e in inserts]
        update_keys = [self._event_key(e.event_id) for e in updates]

        async def _write(pipe):
            raw = await pipe.mget(insert_keys + update_keys)
            existing, current_raw = raw[:len(insert_keys)], raw[len(insert_keys):]
            current = [self._decode(value) for value in current_raw]

            taken = [e.event_id for e, value in zip(inserts, existing) if value is not None]
            stale = [
                evt.event_id
                for evt, old in zip(updates, current)
                if old is None
                or (evt.event_id in expected and old.received_time != expected[evt.event_id])
            ]
            if taken and stale:
                raise WriteConflictError(taken + stale)
            if taken:
                raise DuplicateEventError(taken)
            if stale:
                raise ConcurrentUpdateError(stale)

            pipe.multi()
            for evt, key in zip(inserts, insert_keys):
                pipe.set(key, self._encode(evt))
                pipe.sadd(self._ids_key, evt.event_id)
                self._index(pipe, evt)
            for evt, old, key in zip(updates, current, update_keys):
                self._unindex(pipe, old)
                pipe.set(key, self._encode(evt))
                self._index(pipe, evt)

        try:
            await self._get_client().transaction(_write, *insert_keys, *update_keys)
        except RedisError as e:
            log.error(
                "redis.write_failed", error=str(e), inserts=len(inserts), updates=len(updates)
            )
            raise StoreUnavailableError(str(e)) from e
        log.debug("store.committed", inserted=len(inserts), updated=len(updates), adapter="redis")

    async def _range(self, key: str, start: datetime, end: datetime) -> list[MachineEvent]:
        try:
            client = self._get_client()
            # "(" makes the upper bound exclusive
            ids = await client.zrangebyscore(key, time_score(start), f"({time_score(end)}")
            if not ids:
                return []
            raw = await client.mget([self._event_key(i.decode()) for i in ids])
        except RedisError as e:
            log.error("redis.range_failed", error=str(e), key=key)
            raise StoreUnavailableError(str(e)) from e
        return [evt for evt in map(self._decode, raw) if evt is not None]

    async def count_in_range(self, machine_id: str, start: datetime, end: datetime) -> int:
        if start >= end:
            return 0
        try:
            return await self._get_client().zcount(
                self._machine_key(machine_id), time_score(start), f"({time_score(end)}"
            )
        except RedisError as e:
            log.error("redis.range_failed", error=str(e), machine_id=machine_id)
            raise StoreUnavailableError(str(e)) from e

    async def sum_defects_in_range(self, machine_id: str, start: datetime, end: datetime) -> int:
        if start >= end:
            return 0
        events = await self._range(self._machine_key(machine_id), start, end)
        return sum(
            e.defect_count
            for e in events
            if e.machine_id == machine_id and e.has_known_defects
        )

    async def group_defects_by_line(
        self, factory_id: str, start: datetime, end: datetime
    ) -> list[LineDefectTotals]:
        if start >= end:
            return []
        events = await self._range(self._factory_key(factory_id), start, end)
        return defect_totals_by_line(e for e in events if e.factory_id == factory_id)

    async def count(self) -> int:
        try:
            return await self._get_client().scard(self._ids_key)
        except RedisError as e:
            raise StoreUnavailableError(str(e)) from e

    async def health_check(self) -> bool:
        """
        Check Redis connection health.

        Returns:
            True if Redis is accessible, False otherwise
        """
        try:
            return bool(await self._get_client().ping())
        except Exception as e:
            log.warning("redis.health_check_failed", error=str(e))
            return False

    async def clear(self):
        """Delete every key under this store's prefix."""
        client = self._get_client()
        async for key in client.scan_iter(match=f"{self.prefix}:*"):
            await client.delete(key)

    async def close(self):
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
