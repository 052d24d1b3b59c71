"""In-memory event store adapter."""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Mapping, Sequence
import structlog
from .base import (
    EventStore,
    DuplicateEventError,
    ConcurrentUpdateError,
    defect_totals_by_line,
)
from ..event_models import MachineEvent, LineDefectTotals

log = structlog.get_logger()


class InMemoryEventStore(EventStore):
    """In-memory implementation of the event store.

    Each bulk write runs under one asyncio lock, so it is applied completely
    or not at all. A batch holds the same lock for its whole block and
    restores a snapshot if the block raises. Records are copied on the way
    in and out.
    """

    def __init__(self):
        self._events: dict[str, MachineEvent] = {}
        self._lock = asyncio.Lock()
        self._batch_owner: asyncio.Task | None = None

    @asynccontextmanager
    async def batch(self) -> AsyncIterator[None]:
        if self._in_own_batch():
            yield
            return
        async with self._lock:
            snapshot = dict(self._events)
            self._batch_owner = asyncio.current_task()
            try:
                yield
            except BaseException:
                self._events = snapshot
                log.debug("store.batch_rolled_back", adapter="memory")
                raise
            finally:
                self._batch_owner = None

    def _in_own_batch(self) -> bool:
        return self._batch_owner is not None and self._batch_owner is asyncio.current_task()

    @asynccontextmanager
    async def _writing(self) -> AsyncIterator[None]:
        if self._in_own_batch():
            yield
        else:
            async with self._lock:
                yield

    async def find_by_id(self, event_id: str) -> MachineEvent | None:
        evt = self._events.get(event_id)
        return evt.model_copy() if evt is not None else None

    async def find_by_ids(self, event_ids: Iterable[str]) -> dict[str, MachineEvent]:
        return {
            event_id: self._events[event_id].model_copy()
            for event_id in set(event_ids)
            if event_id in self._events
        }

    async def insert_all(self, events: Sequence[MachineEvent]) -> None:
        if not events:
            return
        async with self._writing():
            taken = [e.event_id for e in events if e.event_id in self._events]
            if taken:
                raise DuplicateEventError(taken)
            for evt in events:
                self._events[evt.event_id] = evt.model_copy()
        log.debug("store.inserted", count=len(events), adapter="memory")

    async def update_all(
        self,
        events: Sequence[MachineEvent],
        expected: Mapping[str, datetime] | None = None,
    ) -> None:
        if not events:
            return
        async with self._writing():
            stale = []
            for evt in events:
                current = self._events.get(evt.event_id)
                if current is None:
                    stale.append(evt.event_id)
                elif expected and current.received_time != expected.get(evt.event_id, current.received_time):
                    stale.append(evt.event_id)
            if stale:
                raise ConcurrentUpdateError(stale)
            for evt in events:
                self._events[evt.event_id] = evt.model_copy()
        log.debug("store.updated", count=len(events), adapter="memory")

    def _in_range(self, start: datetime, end: datetime, **match) -> list[MachineEvent]:
        return [
            e for e in list(self._events.values())
            if start <= e.event_time < end
            and all(getattr(e, k) == v for k, v in match.items())
        ]

    async def count_in_range(self, machine_id: str, start: datetime, end: datetime) -> int:
        return len(self._in_range(start, end, machine_id=machine_id))

    async def sum_defects_in_range(self, machine_id: str, start: datetime, end: datetime) -> int:
        return sum(
            e.defect_count
            for e in self._in_range(start, end, machine_id=machine_id)
            if e.has_known_defects
        )

    async def group_defects_by_line(
        self, factory_id: str, start: datetime, end: datetime
    ) -> list[LineDefectTotals]:
        return defect_totals_by_line(self._in_range(start, end, factory_id=factory_id))

    async def count(self) -> int:
        return len(self._events)

    async def health_check(self) -> bool:
        """In-memory store is always healthy."""
        return True

    def clear(self):
        """Drop every stored event."""
        self._events.clear()
