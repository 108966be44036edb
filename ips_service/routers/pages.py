from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from ips_service.config import RECENT_SUMMARIES_LIMIT, TEMPLATES_DIR
from ips_service.routers.api import get_source
from ips_service.services.loader import get_summary, list_recent_summaries
from ips_service.services.sources.base import RecordSource

router = APIRouter(tags=["pages"])

templates = Jinja2Templates(directory=str(TEMPLATES_DIR))


@router.get("/", response_class=HTMLResponse)
async def index(request: Request, source: RecordSource = Depends(get_source)):
    recent = await list_recent_summaries(source, RECENT_SUMMARIES_LIMIT)
    return templates.TemplateResponse(request, "index.html", {"recent": recent})


@router.get("/ipsview", response_class=HTMLResponse)
async def ips_view(
    request: Request,
    uuid: str = Query(..., min_length=1),
    source: RecordSource = Depends(get_source),
):
    """Render one summary as an HTML page."""
    summary = await get_summary(source, uuid)
    if summary is None:
        raise HTTPException(status_code=404, detail="Summary not found")
    return templates.TemplateResponse(request, "ips.html", {"uuid": uuid, "ips": summary})
