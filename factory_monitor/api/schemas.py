from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import List
from ..event_models import CandidateEvent, IngestResult, LineStats

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class EventRequest(_CamelModel):
    event_id: str = Field(..., min_length=1)
    event_time: datetime
    machine_id: str = Field(..., min_length=1)
    duration_ms: int
    defect_count: int
    line_id: str | None = None
    factory_id: str | None = None

    def to_candidate(self) -> CandidateEvent:
        return CandidateEvent(**self.model_dump())

class RejectionDetail(_CamelModel):
    event_id: str | None
    reason: str
    detail: str

class BatchIngestResponse(_CamelModel):
    accepted: int
    deduped: int
    updated: int
    rejected: int
    rejections: List[RejectionDetail]

    @classmethod
    def from_result(cls, result: IngestResult) -> "BatchIngestResponse":
        return cls(
            accepted=result.accepted,
            deduped=result.deduped,
            updated=result.updated,
            rejected=result.rejected,
            rejections=[
                RejectionDetail(event_id=r.event_id, reason=r.reason, detail=r.detail)
                for r in result.rejections
            ],
        )

class TopDefectLinesResponse(_CamelModel):
    factory_id: str
    from_: datetime = Field(..., alias="from")
    to: datetime
    lines: List[LineStats]
