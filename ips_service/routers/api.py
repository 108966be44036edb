import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ips_service.config import RECENT_SUMMARIES_LIMIT
from ips_service.models.ips import SummaryDocument, SummaryHeader
from ips_service.services.loader import (
    delete_summaries_by_practitioner,
    get_summary,
    list_recent_summaries,
)
from ips_service.services.sources.base import RecordSource

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ips", tags=["ips"])


def get_source(request: Request) -> RecordSource:
    """The record source created at startup (see main.lifespan)."""
    return request.app.state.source


@router.get("", response_model=list[SummaryHeader])
async def list_summaries(
    limit: int = Query(RECENT_SUMMARIES_LIMIT, ge=1, le=100),
    source: RecordSource = Depends(get_source),
):
    """List the most recent summaries (best effort; empty on store failure)."""
    return await list_recent_summaries(source, limit)


# Kept as GET for compatibility with existing clients
@router.get("/delbypra/{practitioner}", response_model=int)
async def delete_by_practitioner_legacy(practitioner: str, source: RecordSource = Depends(get_source)):
    """Delete all summaries for a practitioner; returns the number removed."""
    return await delete_summaries_by_practitioner(source, practitioner)


@router.delete("/practitioner/{practitioner}", response_model=int)
async def delete_by_practitioner(practitioner: str, source: RecordSource = Depends(get_source)):
    return await delete_summaries_by_practitioner(source, practitioner)


@router.get("/{package_id}", response_model=SummaryDocument)
async def get_ips(package_id: str, source: RecordSource = Depends(get_source)):
    """Get one International Patient Summary by package id."""
    summary = await get_summary(source, package_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Summary not found")
    return summary
