"""Site import routes."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from contentpilot.api.deps import get_classifier, require_crawl_client, spawn
from contentpilot.config import get_settings
from contentpilot.core.usecases import import_status as st
from contentpilot.infra.events.sink import format_sse
from contentpilot.infra.repos.import_events import list_events
from contentpilot.infra.repos.imports import create_import, get_import, list_imports
from contentpilot.pipeline.batch_scrape import is_valid_url
from contentpilot.pipeline.site_import import CrawlOrchestrator, ImportNotFoundError, cancel_import, review_import

router = APIRouter(prefix="/api/imports", tags=["imports"])


class CreateImportRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=200)
    source_url: str = Field(min_length=1, max_length=2048)
    industry: str | None = Field(default=None, max_length=100)
    additional_industries: list[str] = Field(default_factory=list)
    run: bool = False


class ReviewImportRequest(BaseModel):
    approve_urls: list[str] | None = None
    reject_urls: list[str] = Field(default_factory=list)


async def _require_import(import_id: str, owner_id: str | None) -> dict:
    job = await get_import(import_id, owner_id=owner_id)
    if not job:
        raise HTTPException(status_code=404, detail="Import not found")
    return job


def _orchestrator(request: Request, import_id: str, crawl_client) -> CrawlOrchestrator:
    return CrawlOrchestrator(import_id, crawl_client=crawl_client, classifier=get_classifier(request))


@router.post("")
async def api_create_import(req: CreateImportRequest, request: Request, crawl_client=Depends(require_crawl_client)):
    if not is_valid_url(req.source_url):
        raise HTTPException(status_code=400, detail="source_url must be an http(s) URL")
    job = await create_import(
        owner_id=req.owner_id,
        source_url=req.source_url,
        industry=req.industry,
        additional_industries=req.additional_industries,
    )
    if req.run:
        spawn(request, _orchestrator(request, job["id"], crawl_client).run())
    return job


@router.get("")
async def api_list_imports(owner_id: str | None = None, status: str | None = None, limit: int = 50, offset: int = 0):
    rows = await list_imports(owner_id=owner_id, status=status, limit=limit, offset=offset)
    return {"imports": rows}


@router.get("/{import_id}")
async def api_get_import(import_id: str, owner_id: str | None = None):
    return await _require_import(import_id, owner_id)


@router.post("/{import_id}/execute")
async def api_execute_import(
    import_id: str, request: Request, owner_id: str | None = None, crawl_client=Depends(require_crawl_client)
):
    job = await _require_import(import_id, owner_id)
    if not st.is_runnable(job.get("status")):
        raise HTTPException(status_code=400, detail="Import is not in a runnable state")

    result = await _orchestrator(request, import_id, crawl_client).run()
    if result.noop:
        raise HTTPException(status_code=409, detail=result.error or "Import is already being executed")
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.error or "Import failed")
    return {
        "ok": True,
        "status": result.status,
        "total_pages": result.total_pages,
        "categorized_count": result.categorized_count,
        "created_count": result.created_count,
    }


@router.post("/{import_id}/cancel")
async def api_cancel_import(import_id: str, owner_id: str | None = None):
    try:
        return await cancel_import(import_id, owner_id=owner_id)
    except ImportNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Import not found") from exc
    except st.InvalidTransitionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/{import_id}/review")
async def api_review_import(import_id: str, req: ReviewImportRequest, owner_id: str | None = None):
    try:
        return await review_import(
            import_id, owner_id=owner_id, approve_urls=req.approve_urls, reject_urls=req.reject_urls
        )
    except ImportNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Import not found") from exc
    except st.InvalidTransitionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/{import_id}/events")
async def api_import_events(import_id: str, since_seq: int = 0, limit: int = 500):
    await _require_import(import_id, None)
    events = await list_events(import_id=import_id, since_seq=since_seq, limit=limit)
    return {"import_id": import_id, "events": events}


@router.get("/{import_id}/stream")
async def api_stream_import(import_id: str, since_seq: int = 0):
    """Tail the import's event log as text/event-stream until the job stops running."""
    await _require_import(import_id, None)
    poll_sec = max(0.2, min(get_settings().worker_poll_sec, 2.0))

    async def tail():
        seq = max(0, int(since_seq))
        while True:
            events = await list_events(import_id=import_id, since_seq=seq, limit=500)
            for ev in events:
                seq = max(seq, int(ev.get("seq") or seq))
                yield format_sse({"type": "event", "event": ev})
            job = await get_import(import_id)
            if not job or not st.is_runnable(job.get("status")):
                if not events:
                    yield format_sse({"type": "status", "import": job})
                    return
                continue
            if not events:
                await asyncio.sleep(poll_sec)

    return StreamingResponse(
        tail(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
