"""Batch ingestion with idempotency and last-write-wins conflict resolution."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping

import structlog
from pydantic import ValidationError

from ..adapters.base import (
    EventStore,
    StoreError,
    WriteConflictError,
)
from ..clock import Clock, SystemClock, ensure_utc
from ..config import get_settings
from ..event_models import (
    CandidateEvent,
    IngestResult,
    MachineEvent,
    Rejection,
    RejectionReason,
)

log = structlog.get_logger()

REQUIRED_FIELDS = ("event_id", "event_time", "machine_id", "duration_ms", "defect_count")

ACCEPTED = "accepted"
DEDUPED = "deduped"
STALE = "stale"
UPDATED = "updated"

# Spacing of synthetic receipt times for repeats of one event_id within a batch
_REPEAT_STEP = timedelta(microseconds=1)


@dataclass
class _Resolution:
    """Decision for every candidate sharing one event_id."""
    outcomes: list[str]
    write: MachineEvent | None = None
    is_insert: bool = False
    expected: datetime | None = None


@dataclass
class _BatchTally:
    """Per-batch accumulator; frozen into an IngestResult at the end."""
    accepted: int = 0
    deduped: int = 0
    updated: int = 0
    stale: int = 0
    rejections: list[Rejection] = field(default_factory=list)

    def count(self, outcome: str):
        if outcome == ACCEPTED:
            self.accepted += 1
        elif outcome == UPDATED:
            self.updated += 1
        else:
            self.deduped += 1
            if outcome == STALE:
                self.stale += 1

    def freeze(self) -> IngestResult:
        return IngestResult(
            accepted=self.accepted,
            deduped=self.deduped,
            updated=self.updated,
            rejected=len(self.rejections),
            stale=self.stale,
            rejections=tuple(self.rejections),
        )


class IngestionEngine:
    """
    Classifies each candidate of a batch as new, duplicate, update or
    rejected, and persists the winners with one bulk insert and one bulk
    update committed together inside one store batch.

    Concurrency safety comes from the store: inserts are rejected atomically
    on an existing event_id and updates are compare-and-set on the
    received_time read earlier. A lost race rolls the whole attempt back;
    the affected event_ids are re-read and the batch is resolved again.
    """

    def __init__(
        self,
        store: EventStore,
        clock: Clock | None = None,
        max_duration_ms: int | None = None,
        future_tolerance: timedelta | None = None,
        max_conflict_retries: int | None = None,
        metrics=None,
    ):
        settings = get_settings()
        self._store = store
        self._clock = clock or SystemClock()
        self.max_duration_ms = (
            settings.MAX_DURATION_MS if max_duration_ms is None else max_duration_ms
        )
        if future_tolerance is None:
            future_tolerance = timedelta(minutes=settings.FUTURE_TOLERANCE_MINUTES)
        self.future_tolerance = future_tolerance
        self.max_conflict_retries = (
            settings.MAX_CONFLICT_RETRIES if max_conflict_retries is None else max_conflict_retries
        )
        self.metrics = metrics

    async def ingest(self, batch: Iterable[CandidateEvent | Mapping[str, Any]]) -> IngestResult:
        """
        Ingest one batch of candidate events.

        Args:
            batch: Candidates in arrival order. Mappings are coerced to
                CandidateEvent; coercion failures are rejected as MALFORMED.

        Returns:
            Counts summing to the batch length, plus one Rejection per
            rejected candidate

        Raises:
            StoreError: If the store fails or write races do not settle. No
                partial result is returned.
        """
        started = time.perf_counter()
        items = list(batch)
        now = ensure_utc(self._clock.now())
        tally = _BatchTally()

        log.info("ingest.batch_received", size=len(items))

        by_id: dict[str, list[CandidateEvent]] = {}
        for item in items:
            candidate, rejection = self.validate(item, now)
            if rejection is not None:
                tally.rejections.append(rejection)
                log.debug(
                    "ingest.rejected",
                    event_id=rejection.event_id,
                    reason=rejection.reason,
                    detail=rejection.detail,
                )
                continue
            by_id.setdefault(candidate.event_id, []).append(candidate)

        try:
            resolutions = await self._resolve_and_write(by_id, now)
        except StoreError as e:
            log.error("ingest.batch_failed", size=len(items), error=str(e), error_type=type(e).__name__)
            raise

        for resolution in resolutions.values():
            for outcome in resolution.outcomes:
                tally.count(outcome)

        result = tally.freeze()
        log.info(
            "ingest.batch_completed",
            accepted=result.accepted,
            deduped=result.deduped,
            updated=result.updated,
            rejected=result.rejected,
            stale=result.stale,
        )
        if self.metrics is not None:
            self.metrics.record_ingest(result, len(items), time.perf_counter() - started)
        return result

    def validate(self, item: Any, now: datetime) -> tuple[CandidateEvent | None, Rejection | None]:
        """Check one candidate; returns either the candidate or its rejection."""
        if not isinstance(item, CandidateEvent):
            try:
                item = CandidateEvent.model_validate(item)
            except ValidationError as e:
                return None, Rejection(
                    event_id=_guess_event_id(item),
                    reason=RejectionReason.MALFORMED,
                    detail=f"unreadable event: {e.error_count()} validation error(s)",
                )

        missing = [name for name in REQUIRED_FIELDS if _is_blank(getattr(item, name))]
        if missing:
            return None, Rejection(
                event_id=item.event_id or None,
                reason=RejectionReason.MALFORMED,
                detail=f"missing required field(s): {', '.join(missing)}",
            )

        if item.duration_ms < 0:
            return None, Rejection(
                event_id=item.event_id,
                reason=RejectionReason.INVALID_DURATION,
                detail="durationMs cannot be negative",
            )
        if item.duration_ms > self.max_duration_ms:
            return None, Rejection(
                event_id=item.event_id,
                reason=RejectionReason.INVALID_DURATION,
                detail=f"durationMs cannot exceed {self.max_duration_ms}",
            )
        if item.event_time - now > self.future_tolerance:
            return None, Rejection(
                event_id=item.event_id,
                reason=RejectionReason.INVALID_TIME,
                detail=(
                    "eventTime is more than "
                    f"{int(self.future_tolerance.total_seconds() // 60)} minutes in the future"
                ),
            )
        return item, None

    async def _resolve_and_write(
        self, by_id: dict[str, list[CandidateEvent]], now: datetime
    ) -> dict[str, _Resolution]:
        if not by_id:
            return {}

        stored = await self._store.find_by_ids(by_id.keys())

        for attempt in range(self.max_conflict_retries + 1):
            resolutions = {
                event_id: resolve(candidates, stored.get(event_id), now)
                for event_id, candidates in by_id.items()
            }
            inserts = [r.write for r in resolutions.values() if r.write is not None and r.is_insert]
            updates = {
                eid: r for eid, r in resolutions.items() if r.write is not None and not r.is_insert
            }
            if not inserts and not updates:
                return resolutions

            try:
                async with self._store.batch():
                    await self._store.insert_all(inserts)
                    await self._store.update_all(
                        [r.write for r in updates.values()],
                        expected={eid: r.expected for eid, r in updates.items()},
                    )
            except WriteConflictError as e:
                # Nothing from this attempt was committed
                self._conflict(e.kind, e.event_ids, attempt)
                fresh = await self._store.find_by_ids(e.event_ids)
                for eid in e.event_ids:
                    if eid in fresh:
                        stored[eid] = fresh[eid]
                    else:
                        stored.pop(eid, None)
                continue
            return resolutions

        raise StoreError(
            f"write conflicts unresolved after {self.max_conflict_retries + 1} attempts "
            f"for a batch of {len(by_id)} event id(s)"
        )

    def _conflict(self, kind: str, event_ids: list[str], attempt: int):
        log.warning("ingest.write_conflict", kind=kind, count=len(event_ids), attempt=attempt)
        if self.metrics is not None:
            self.metrics.record_conflict(kind, len(event_ids))


def resolve(
    candidates: list[CandidateEvent], stored: MachineEvent | None, now: datetime
) -> _Resolution:
    """
    Apply last-write-wins to every candidate of one event_id, in batch order.

    The i-th repeat of an id within the batch is treated as received at
    ``now + i`` microseconds, so later repeats win over earlier ones.
    """
    current = stored
    outcomes = []
    for i, candidate in enumerate(candidates):
        received = now + i * _REPEAT_STEP
        incoming = to_record(candidate, received)
        if current is None:
            outcomes.append(ACCEPTED)
            current = incoming
        elif current.payload_key() == incoming.payload_key():
            outcomes.append(DEDUPED)
        elif received > current.received_time:
            outcomes.append(UPDATED)
            current = incoming
        else:
            outcomes.append(STALE)

    if current is stored:
        return _Resolution(outcomes=outcomes)
    if stored is None:
        return _Resolution(outcomes=outcomes, write=current, is_insert=True)
    return _Resolution(outcomes=outcomes, write=current, expected=stored.received_time)


def to_record(candidate: CandidateEvent, received: datetime) -> MachineEvent:
    return MachineEvent(
        event_id=candidate.event_id,
        event_time=candidate.event_time,
        received_time=received,
        machine_id=candidate.machine_id,
        duration_ms=candidate.duration_ms,
        defect_count=candidate.defect_count,
        line_id=candidate.line_id,
        factory_id=candidate.factory_id,
    )


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _guess_event_id(item: Any) -> str | None:
    if isinstance(item, Mapping):
        value = item.get("eventId", item.get("event_id"))
        if isinstance(value, str):
            return value
    return None
