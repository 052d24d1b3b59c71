"""Base interface for event store backends."""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncContextManager, Iterable, Mapping, Sequence
from ..event_models import MachineEvent, LineDefectTotals


class StoreError(Exception):
    """Base class for event store failures."""


class StoreUnavailableError(StoreError):
    """The backend could not be reached or a write failed."""


class WriteConflictError(StoreError):
    """A write lost a race with another writer. Nothing was written."""

    kind = "write"
    describe = "event_id written concurrently"

    def __init__(self, event_ids: Iterable[str]):
        self.event_ids = sorted(set(event_ids))
        super().__init__(f"{self.describe}: {', '.join(self.event_ids)}")


class DuplicateEventError(WriteConflictError):
    """An insert hit the uniqueness constraint on event_id. Nothing was written."""

    kind = "insert"
    describe = "event_id already stored"


class ConcurrentUpdateError(WriteConflictError):
    """An update's expected received_time no longer matches. Nothing was written."""

    kind = "update"
    describe = "event_id modified concurrently"


class EventStore(ABC):
    """Abstract interface for event store implementations.

    All range queries use the half-open window ``start <= event_time < end``.
    """

    @abstractmethod
    def batch(self) -> AsyncContextManager[None]:
        """
        Transaction boundary for the writes of one ingestion attempt.

        ``insert_all`` and ``update_all`` calls made inside
        ``async with store.batch():`` commit together when the block exits
        cleanly. If the block raises, or the commit itself detects a
        conflict, none of them is visible afterwards.

        Raises:
            WriteConflictError: On exit, if the buffered writes lost a race
            StoreUnavailableError: If the backend fails
        """

    @abstractmethod
    async def find_by_id(self, event_id: str) -> MachineEvent | None:
        """
        Fetch a single stored event.

        Args:
            event_id: Idempotency key of the event

        Returns:
            The stored event, or None if absent
        """

    @abstractmethod
    async def find_by_ids(self, event_ids: Iterable[str]) -> dict[str, MachineEvent]:
        """
        Fetch every stored event whose id is in ``event_ids`` in one round trip.

        Returns:
            Mapping of event_id to stored event; missing ids are omitted
        """

    @abstractmethod
    async def insert_all(self, events: Sequence[MachineEvent]) -> None:
        """
        Insert new events atomically.

        Raises:
            DuplicateEventError: If any event_id is already stored. No event
                from the call is written in that case.
            StoreUnavailableError: If the backend fails
        """

    @abstractmethod
    async def update_all(
        self,
        events: Sequence[MachineEvent],
        expected: Mapping[str, datetime] | None = None,
    ) -> None:
        """
        Overwrite existing events atomically.

        Args:
            events: Replacement records, matched by event_id
            expected: Optional event_id -> received_time the caller read. Each
                listed record is written only if it still carries that
                received_time.

        Raises:
            ConcurrentUpdateError: If a record is missing or was modified since
                it was read. Nothing is written in that case.
            StoreUnavailableError: If the backend fails
        """

    @abstractmethod
    async def count_in_range(self, machine_id: str, start: datetime, end: datetime) -> int:
        """Count events of a machine in the window, unknown defect counts included."""

    @abstractmethod
    async def sum_defects_in_range(self, machine_id: str, start: datetime, end: datetime) -> int:
        """Sum defect_count of a machine in the window, skipping unknown (negative) counts."""

    @abstractmethod
    async def group_defects_by_line(
        self, factory_id: str, start: datetime, end: datetime
    ) -> list[LineDefectTotals]:
        """
        Per-line totals for a factory in the window.

        Events without a line_id are skipped. Rows are ordered by
        total_defects descending, then line_id ascending.
        """

    @abstractmethod
    async def count(self) -> int:
        """Total number of stored events."""

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the backend is healthy and accessible.

        Returns:
            True if backend is healthy, False otherwise
        """


def defect_totals_by_line(events: Iterable[MachineEvent]) -> list[LineDefectTotals]:
    """Group already-filtered events by line_id, ordered for ranking."""
    totals: dict[str, list[int]] = {}
    for evt in events:
        if evt.line_id is None:
            continue
        row = totals.setdefault(evt.line_id, [0, 0])
        if evt.has_known_defects:
            row[0] += evt.defect_count
        row[1] += 1

    rows = [
        LineDefectTotals(line_id=line_id, total_defects=defects, event_count=count)
        for line_id, (defects, count) in totals.items()
    ]
    rows.sort(key=lambda r: (-r.total_defects, r.line_id))
    return rows
