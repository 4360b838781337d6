"""Knowledge-base content routes: batch scrape, site map, browse, refresh and refresh schedules."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel, Field

from contentpilot.api.deps import get_classifier, require_crawl_client, spawn
from contentpilot.config import get_settings
from contentpilot.core.usecases.health import summarize_health
from contentpilot.core.usecases.link_priority import prioritize_links
from contentpilot.infra.events.sink import QueueEventSink, format_sse
from contentpilot.infra.repos import content_library as kb_repo
from contentpilot.pipeline.batch_scrape import BatchExecutor, is_valid_url, validate_urls
from contentpilot.pipeline.knowledge_base import refresh_entry

router = APIRouter(prefix="/api/content", tags=["content"])


class BatchScrapeRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=200)
    urls: list[str] = Field(default_factory=list)
    product_id: str | None = None


class MapRequest(BaseModel):
    url: str = Field(min_length=1, max_length=2048)
    limit: int = Field(default=500, ge=1, le=5000)
    search: str | None = Field(default=None, max_length=200)


class ScheduleRequest(BaseModel):
    frequency: Literal["daily", "weekly", "off"]


@router.post("/batch-scrape")
async def api_batch_scrape(req: BatchScrapeRequest, request: Request, crawl_client=Depends(require_crawl_client)):
    settings = get_settings()
    if not req.urls:
        raise HTTPException(status_code=400, detail="urls array is required")
    urls = validate_urls(req.urls, max_urls=settings.batch_max_urls)
    if not urls:
        raise HTTPException(status_code=400, detail="No valid URLs provided")

    executor = BatchExecutor(
        crawl_client=crawl_client,
        classifier=get_classifier(request),
        concurrency=settings.batch_max_concurrency,
        timeout_sec=settings.batch_scrape_timeout_sec,
    )
    sink = QueueEventSink()

    async def produce():
        try:
            await executor.run(owner_id=req.owner_id, urls=urls, sink=sink, product_id=req.product_id)
        finally:
            await sink.close()

    spawn(request, produce())

    async def stream():
        async for event in sink:
            yield format_sse(event)

    logger.bind(owner_id=req.owner_id).info("batch scrape started for {} urls", len(urls))
    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/map")
async def api_map_site(req: MapRequest, crawl_client=Depends(require_crawl_client)):
    if not is_valid_url(req.url):
        raise HTTPException(status_code=400, detail="url must be an http(s) URL")
    result = await crawl_client.map_url(req.url, limit=req.limit, search=req.search)
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.error or "Map failed")
    return prioritize_links(result.links)


@router.get("")
async def api_list_content(
    owner_id: str,
    content_type: str | None = None,
    confirmed: bool | None = None,
    include_archived: bool = False,
    limit: int = 100,
    offset: int = 0,
):
    rows = await kb_repo.list_entries(
        owner_id,
        active_only=not include_archived,
        confirmed=confirmed,
        content_type=content_type,
        limit=limit,
        offset=offset,
    )
    return {"entries": rows}


@router.get("/health")
async def api_content_health(owner_id: str):
    entries = await kb_repo.list_entries(owner_id, active_only=True, limit=5000)
    return summarize_health(entries)


async def _require_entry(entry_id: str, owner_id: str | None) -> dict:
    entry = await kb_repo.get_entry(entry_id, owner_id=owner_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Content not found")
    return entry


@router.get("/{entry_id}")
async def api_get_content(entry_id: str, owner_id: str | None = None):
    return await _require_entry(entry_id, owner_id)


@router.post("/{entry_id}/refresh")
async def api_refresh_content(entry_id: str, owner_id: str, crawl_client=Depends(require_crawl_client)):
    await _require_entry(entry_id, owner_id)
    result = await refresh_entry(entry_id=entry_id, owner_id=owner_id, crawl_client=crawl_client)
    if not result.get("ok"):
        raise HTTPException(status_code=502, detail=result.get("error") or "Refresh failed")
    return result


def _schedule_view(entry: dict) -> dict:
    return {
        "frequency": entry.get("refresh_frequency") or "off",
        "next_refresh_at": entry.get("next_refresh_at"),
        "last_refreshed_at": entry.get("last_refreshed_at"),
        "last_refresh_error": entry.get("last_refresh_error"),
    }


@router.get("/{entry_id}/schedule")
async def api_get_schedule(entry_id: str, owner_id: str | None = None):
    return _schedule_view(await _require_entry(entry_id, owner_id))


@router.put("/{entry_id}/schedule")
async def api_set_schedule(entry_id: str, req: ScheduleRequest, owner_id: str | None = None):
    entry = await _require_entry(entry_id, owner_id)
    if req.frequency != "off":
        if not entry.get("is_active"):
            raise HTTPException(status_code=400, detail="Archived content cannot be scheduled")
        if not str(entry.get("source_url") or "").strip():
            raise HTTPException(status_code=400, detail="Items without a source URL cannot be scheduled")
    await kb_repo.set_refresh_schedule(entry_id, req.frequency)
    return _schedule_view(await kb_repo.get_entry(entry_id))


@router.post("/{entry_id}/confirm")
async def api_confirm_content(entry_id: str, owner_id: str | None = None):
    await _require_entry(entry_id, owner_id)
    await kb_repo.set_user_confirmed(entry_id, True)
    return await kb_repo.get_entry(entry_id)


@router.delete("/{entry_id}")
async def api_archive_content(entry_id: str, owner_id: str | None = None):
    await _require_entry(entry_id, owner_id)
    archived = await kb_repo.archive_entry(entry_id)
    return {"ok": True, "archived": archived}
