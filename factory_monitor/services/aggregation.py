"""Windowed health statistics and defect rankings."""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

import structlog

from ..adapters.base import EventStore
from ..clock import ensure_utc
from ..config import get_settings
from ..event_models import HealthStatus, LineStats, Stats

log = structlog.get_logger()

_HUNDREDTHS = Decimal("0.01")
_SECONDS_PER_HOUR = Decimal(3600)


class InvalidQueryError(ValueError):
    """Query parameters the caller should have been stopped from sending."""


def round_half_up(value: Decimal) -> float:
    """Round to two decimals, ties away from zero on the hundredths digit."""
    return float(value.quantize(_HUNDREDTHS, rounding=ROUND_HALF_UP))


def defect_rate_per_hour(defects: int, start: datetime, end: datetime) -> float:
    """Defects per hour over ``[start, end)``; 0 for an empty or inverted window."""
    seconds = Decimal(str((end - start).total_seconds()))
    if seconds <= 0:
        return 0.0
    return round_half_up(Decimal(defects) * _SECONDS_PER_HOUR / seconds)


def defects_percent(total_defects: int, event_count: int) -> float:
    if event_count <= 0:
        return 0.0
    return round_half_up(Decimal(total_defects) * 100 / Decimal(event_count))


class AggregationEngine:
    """Read-only queries over the event store."""

    def __init__(self, store: EventStore, healthy_threshold: float | None = None, metrics=None):
        self._store = store
        self.healthy_threshold = (
            get_settings().HEALTHY_RATE_THRESHOLD if healthy_threshold is None else healthy_threshold
        )
        self.metrics = metrics

    async def get_stats(self, machine_id: str, start: datetime, end: datetime) -> Stats:
        """
        Event and defect totals for one machine over ``start <= event_time < end``.

        Events with an unknown defect count (-1) are counted as events but
        left out of the defect sum.
        """
        start, end = ensure_utc(start), ensure_utc(end)
        events_count = await self._store.count_in_range(machine_id, start, end)
        defects_count = await self._store.sum_defects_in_range(machine_id, start, end)

        rate = defect_rate_per_hour(defects_count, start, end)
        status = HealthStatus.HEALTHY if rate < self.healthy_threshold else HealthStatus.WARNING

        log.info(
            "stats.computed",
            machine_id=machine_id,
            events_count=events_count,
            defects_count=defects_count,
            avg_defect_rate=rate,
            status=status.value,
        )
        if self.metrics is not None:
            self.metrics.record_query("stats")

        return Stats(
            machine_id=machine_id,
            start=start,
            end=end,
            events_count=events_count,
            defects_count=defects_count,
            avg_defect_rate=rate,
            status=status,
        )

    async def get_top_defect_lines(
        self, factory_id: str, start: datetime, end: datetime, limit: int = 10
    ) -> list[LineStats]:
        """
        Lines of a factory ranked by total defects, highest first.

        Raises:
            InvalidQueryError: If limit is less than 1
        """
        if limit < 1:
            raise InvalidQueryError(f"limit must be at least 1, got {limit}")

        start, end = ensure_utc(start), ensure_utc(end)
        rows = await self._store.group_defects_by_line(factory_id, start, end)

        lines = [
            LineStats(
                line_id=row.line_id,
                total_defects=row.total_defects,
                event_count=row.event_count,
                defects_percent=defects_percent(row.total_defects, row.event_count),
            )
            for row in rows[:limit]
        ]

        log.info("top_defect_lines.computed", factory_id=factory_id, lines=len(lines), limit=limit)
        if self.metrics is not None:
            self.metrics.record_query("top_defect_lines")
        return lines
