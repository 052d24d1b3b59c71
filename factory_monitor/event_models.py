from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from datetime import datetime
from enum import Enum
from .clock import ensure_utc


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CandidateEvent(_CamelModel):
    """Incoming event payload, not yet validated.

    Fields are optional so a structurally incomplete candidate reaches the
    ingestion engine and is rejected there instead of failing the batch.
    """
    event_id: str | None = None
    event_time: datetime | None = None
    machine_id: str | None = None
    duration_ms: int | None = None
    defect_count: int | None = None
    line_id: str | None = None
    factory_id: str | None = None

    @field_validator("event_time")
    @classmethod
    def _normalize_time(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None


class MachineEvent(_CamelModel):
    """Persisted production-cycle event."""
    event_id: str = Field(..., description="Idempotency key")
    event_time: datetime = Field(..., description="When the cycle happened, per the machine")
    received_time: datetime = Field(..., description="Server receipt time, conflict tie-breaker")
    machine_id: str
    duration_ms: int
    defect_count: int = Field(..., description="-1 (or any negative) means not measured")
    line_id: str | None = None
    factory_id: str | None = None

    @field_validator("event_time", "received_time")
    @classmethod
    def _normalize_time(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def payload_key(self) -> tuple:
        """Fields compared when deciding whether a redelivery is identical."""
        return (
            self.event_time,
            self.machine_id,
            self.duration_ms,
            self.defect_count,
            self.line_id,
            self.factory_id,
        )

    @property
    def has_known_defects(self) -> bool:
        return self.defect_count >= 0


class RejectionReason(str, Enum):
    INVALID_DURATION = "INVALID_DURATION"
    INVALID_TIME = "INVALID_TIME"
    MALFORMED = "MALFORMED"


class Rejection(_CamelModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    event_id: str | None
    reason: RejectionReason
    detail: str = ""


class IngestResult(_CamelModel):
    """Outcome of one batch. accepted + deduped + updated + rejected == batch size."""
    model_config = ConfigDict(frozen=True)

    accepted: int = 0
    deduped: int = 0
    updated: int = 0
    rejected: int = 0
    # Differing redeliveries that lost to a newer stored record (included in deduped)
    stale: int = 0
    rejections: tuple[Rejection, ...] = ()

    @property
    def total(self) -> int:
        return self.accepted + self.deduped + self.updated + self.rejected


class HealthStatus(str, Enum):
    HEALTHY = "Healthy"
    WARNING = "Warning"


class Stats(_CamelModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    machine_id: str
    start: datetime
    end: datetime
    events_count: int
    defects_count: int
    avg_defect_rate: float
    status: HealthStatus


class LineDefectTotals(_CamelModel):
    """One row of the store's per-line grouping."""
    model_config = ConfigDict(frozen=True)

    line_id: str
    total_defects: int
    event_count: int


class LineStats(_CamelModel):
    model_config = ConfigDict(frozen=True)

    line_id: str
    total_defects: int
    event_count: int
    defects_percent: float
