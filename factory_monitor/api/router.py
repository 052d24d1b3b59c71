from datetime import datetime
from fastapi import APIRouter, Body, HTTPException, Query
from .schemas import EventRequest, BatchIngestResponse, TopDefectLinesResponse
from ..event_models import Stats
from ..services.event_store import ingestion_engine, aggregation_engine
from ..config import get_settings

router = APIRouter(prefix="/api", tags=["events"])
settings = get_settings()


@router.post("/events/batch", response_model=BatchIngestResponse)
async def ingest_batch(events: list[EventRequest] = Body(...)):
    """
    Ingest a batch of machine events.

    Each event is classified as accepted, deduped, updated or rejected;
    the counts always add up to the batch length.
    """
    if not events:
        raise HTTPException(422, detail="Events list cannot be empty")
    if len(events) > settings.MAX_BATCH_SIZE:
        raise HTTPException(
            413, detail=f"Batch exceeds maximum of {settings.MAX_BATCH_SIZE} events"
        )

    result = await ingestion_engine.ingest(e.to_candidate() for e in events)
    return BatchIngestResponse.from_result(result)


@router.get("/stats", response_model=Stats)
async def get_stats(
    machine_id: str = Query(..., alias="machineId", min_length=1),
    start: datetime = Query(...),
    end: datetime = Query(...),
):
    """Event and defect totals for one machine over the window [start, end)."""
    return await aggregation_engine.get_stats(machine_id, start, end)


@router.get("/stats/top-defect-lines", response_model=TopDefectLinesResponse)
async def get_top_defect_lines(
    factory_id: str = Query(..., alias="factoryId", min_length=1),
    from_: datetime = Query(..., alias="from"),
    to: datetime = Query(...),
    limit: int = Query(10, ge=1),
):
    """Production lines of a factory ranked by total defects over [from, to)."""
    lines = await aggregation_engine.get_top_defect_lines(factory_id, from_, to, limit)
    return TopDefectLinesResponse(factory_id=factory_id, from_=from_, to=to, lines=lines)
