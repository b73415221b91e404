"""
IOCSentry REST API Routes

Endpoints for submitting indicators, browsing stored lookup records
and inspecting the key pool.
"""

import asyncio
from datetime import datetime
from typing import Annotated, Any, Literal

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from iocsentry.config import settings
from iocsentry.lookup.classifier import get_classifier
from iocsentry.lookup.errors import ClassificationError
from iocsentry.lookup.models import IndicatorType, Verdict
from iocsentry.lookup.orchestrator import LookupOrchestrator, get_orchestrator
from iocsentry.lookup.store import RecordQuery
from iocsentry.lookup.virustotal import gui_link

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["iocs"])

Orchestrator = Annotated[LookupOrchestrator, Depends(get_orchestrator)]


# =============================================================================
# Request/Response Models
# =============================================================================


class SubmitRequest(BaseModel):
    """Batch of raw indicators to resolve."""

    iocs: list[str] = Field(..., min_length=1, description="Raw indicator strings")
    label: str | None = Field(default=None, max_length=200, description="Opaque label stored on new records")
    case_id: str | None = Field(default=None, max_length=200, description="Case reference stored on new records")
    force_refresh: bool = Field(default=False, description="Re-resolve even if a live record exists")


class SubmissionItemResponse(BaseModel):
    id: int | None = None
    identity: str
    type: str
    verdict: str
    source: str
    vt_link: str | None = None


class SubmitResponse(BaseModel):
    """Summary of a submission."""

    total: int = Field(..., description="Number of raw strings submitted")
    created: int = Field(..., description="Records written by this submission")
    from_cache: int = Field(..., description="Indicators served from stored records")
    errors: list[str] = Field(default_factory=list, description="Per-item failures")
    items: list[SubmissionItemResponse] = Field(default_factory=list)


# =============================================================================
# Indicator Endpoints
# =============================================================================


@router.post("/iocs", response_model=SubmitResponse)
async def submit_iocs(request: SubmitRequest, orchestrator: Orchestrator) -> SubmitResponse:
    """
    Classify and resolve a batch of indicators.

    Malformed entries and failed lookups are reported in `errors`;
    they never fail the request.
    """
    if len(request.iocs) > settings.max_batch_size:
        raise HTTPException(
            status_code=400,
            detail=f"Too many indicators: {len(request.iocs)} (max {settings.max_batch_size})",
        )

    result = await orchestrator.submit(
        request.iocs,
        label=request.label,
        case_id=request.case_id,
        force_refresh=request.force_refresh,
    )

    return SubmitResponse(
        total=result.total,
        created=result.created,
        from_cache=result.from_cache,
        errors=result.errors,
        items=[SubmissionItemResponse(**item.to_dict()) for item in result.items],
    )


@router.get("/iocs", response_model=None)
async def list_iocs(
    orchestrator: Orchestrator,
    q: str | None = Query(default=None, max_length=500, description="Substring of the indicator"),
    type: IndicatorType | None = None,
    verdict: Verdict | None = None,
    label: str | None = None,
    case_id: str | None = None,
    date_from: datetime | None = Query(default=None, alias="from"),
    date_to: datetime | None = Query(default=None, alias="to"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=1000),
    export: Literal["csv", "json"] | None = None,
) -> Any:
    """
    Browse stored lookup records.

    With `export`, every matching record is returned as a CSV or JSON
    attachment instead of a page.
    """
    query = RecordQuery(
        q=q,
        type=type,
        verdict=verdict,
        label=label,
        case_id=case_id,
        fetched_from=date_from,
        fetched_to=date_to,
        page=page,
        page_size=page_size,
    )

    if export:
        content = await asyncio.to_thread(orchestrator.store.export, query, export)
        media_type = "text/csv" if export == "csv" else "application/json"
        logger.info("records_exported", format=export)
        return PlainTextResponse(
            content,
            media_type=media_type,
            headers={"Content-Disposition": f'attachment; filename="iocs.{export}"'},
        )

    page_result = await asyncio.to_thread(orchestrator.store.query, query)
    return page_result.to_dict()


@router.get("/iocs/{indicator_type}/{value:path}")
async def get_ioc(indicator_type: IndicatorType, value: str, orchestrator: Orchestrator) -> dict:
    """
    Get the stored record for one indicator.

    The value is normalized the same way submissions are.
    """
    try:
        indicator = get_classifier().classify(value)
    except ClassificationError as e:
        raise HTTPException(status_code=400, detail=e.describe())

    if indicator.type != indicator_type:
        raise HTTPException(
            status_code=400,
            detail=f"{value!r} is a {indicator.type.value}, not a {indicator_type.value}",
        )

    record = await asyncio.to_thread(
        orchestrator.store.find_by_identity, indicator.canonical, indicator.type
    )
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found")

    data = record.to_dict()
    data["stale"] = orchestrator.is_stale(record)
    data["vt_link"] = gui_link(record.indicator)
    return data


# =============================================================================
# Observability
# =============================================================================


@router.get("/keys")
async def list_keys(orchestrator: Orchestrator) -> dict:
    """Masked key pool status."""
    return {
        "configured": orchestrator.is_configured,
        "keys": orchestrator.key_pool.snapshot(),
    }


@router.get("/stats")
async def get_stats(orchestrator: Orchestrator) -> dict:
    """Lookup counters since startup and stored record totals."""
    return {
        "lookups": orchestrator.stats.to_dict(),
        "records": await asyncio.to_thread(orchestrator.store.summary),
    }
