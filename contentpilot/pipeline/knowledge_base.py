"""Apply versioning decisions to the knowledge-base store.

Writes for one URL are guarded twice: creates rely on the unique index over
active (owner_id, source_url) rows, and updates are compare-and-swap on the
stored content hash. A writer that loses either race re-reads the entry and
plans again once.
"""

from __future__ import annotations

from dataclasses import dataclass

import aiosqlite
from loguru import logger

from contentpilot.core.usecases import versioning
from contentpilot.core.usecases.classification import (
    MARKDOWN_STORE_MAX,
    CategorizedItem,
    suggested_type_to_content_type,
)
from contentpilot.infra.repos import content_library as kb_repo
from contentpilot.observability.metrics import KB_INGEST_TOTAL, SCHEDULED_REFRESH_TOTAL

ACTION_EXISTS = "exists"
ACTION_CONFLICT = "conflict"

_ATTEMPTS = 2


@dataclass(frozen=True)
class IngestOutcome:
    action: str
    entry_id: str | None = None
    version: str | None = None

    @property
    def created(self) -> bool:
        return self.action == versioning.ACTION_CREATE


async def ingest_content(
    *,
    owner_id: str,
    source_url: str,
    content: dict,
    title: str,
    content_type: str,
    product_id: str | None = None,
    industry: str | None = None,
    department: str | None = None,
    confidence: str | None = None,
    user_confirmed: bool = False,
) -> IngestOutcome:
    """Create, update, or leave alone the entry for (owner_id, source_url)."""
    log = logger.bind(owner_id=owner_id, url=source_url)
    for attempt in range(_ATTEMPTS):
        existing = await kb_repo.find_by_source_url(owner_id, source_url, active_only=True)
        plan = versioning.plan_ingest(existing, content)

        if plan.action == versioning.ACTION_CREATE:
            try:
                entry = await kb_repo.create_entry(
                    owner_id=owner_id,
                    title=title,
                    content_type=content_type,
                    content=content,
                    content_hash=plan.content_hash,
                    source_url=source_url,
                    product_id=product_id,
                    industry=industry,
                    department=department,
                    user_confirmed=user_confirmed,
                    confidence_score=confidence,
                    version=plan.version,
                )
            except aiosqlite.IntegrityError:
                log.info("entry created concurrently, re-planning (attempt {})", attempt + 1)
                continue
            KB_INGEST_TOTAL.labels(action=plan.action).inc()
            return IngestOutcome(action=plan.action, entry_id=entry["id"], version=entry["version"])

        if existing is None:
            continue
        if plan.action in {versioning.ACTION_SKIP, versioning.ACTION_UNCHANGED}:
            await kb_repo.update_entry(existing["id"], touch_scraped_at=True)
            KB_INGEST_TOTAL.labels(action=plan.action).inc()
            return IngestOutcome(action=plan.action, entry_id=existing["id"], version=plan.version)

        applied = await kb_repo.update_entry(
            existing["id"],
            expected_hash=existing.get("content_hash"),
            title=title,
            content_type=content_type,
            content=content,
            content_hash=plan.content_hash,
            version=plan.version,
            previous_content=plan.previous_content if plan.bumped else None,
            confidence_score=confidence,
            touch_scraped_at=True,
        )
        if applied:
            KB_INGEST_TOTAL.labels(action=plan.action).inc()
            if plan.bumped:
                log.info("content changed, version {} -> {}", existing.get("version"), plan.version)
            return IngestOutcome(action=plan.action, entry_id=existing["id"], version=plan.version)
        log.info("content hash moved underneath update, re-planning (attempt {})", attempt + 1)

    KB_INGEST_TOTAL.labels(action=ACTION_CONFLICT).inc()
    log.warning("gave up after concurrent writes to the same url")
    return IngestOutcome(action=ACTION_CONFLICT)


async def materialize_item(
    *,
    owner_id: str,
    item: CategorizedItem,
    user_confirmed: bool,
    product_id: str | None = None,
) -> IngestOutcome:
    """Create an entry for a classified page unless its URL already has one."""
    existing = await kb_repo.find_by_source_url(owner_id, item.url, active_only=True)
    if existing:
        return IngestOutcome(action=ACTION_EXISTS, entry_id=existing["id"], version=existing.get("version"))
    content = {"description": item.description or "", "suggestedType": item.suggestedType}
    try:
        entry = await kb_repo.create_entry(
            owner_id=owner_id,
            title=item.title,
            content_type=suggested_type_to_content_type(item.suggestedType),
            content=content,
            content_hash=versioning.plan_ingest(None, content).content_hash,
            source_url=item.url,
            product_id=product_id,
            industry=item.industry,
            department=item.department,
            user_confirmed=user_confirmed,
            confidence_score="medium",
        )
    except aiosqlite.IntegrityError:
        existing = await kb_repo.find_by_source_url(owner_id, item.url, active_only=True)
        return IngestOutcome(action=ACTION_EXISTS, entry_id=(existing or {}).get("id"))
    KB_INGEST_TOTAL.labels(action=versioning.ACTION_CREATE).inc()
    return IngestOutcome(action=versioning.ACTION_CREATE, entry_id=entry["id"], version=entry["version"])


async def refresh_entry(*, entry_id: str, owner_id: str, crawl_client) -> dict:
    """Re-scrape an entry's source URL and re-ingest it under the versioning rules."""
    entry = await kb_repo.get_entry(entry_id, owner_id=owner_id)
    if not entry or not entry.get("is_active"):
        return {"ok": False, "error": "Content not found"}
    source_url = str(entry.get("source_url") or "").strip()
    if not source_url:
        return {"ok": False, "error": "No source URL to refresh"}

    result = await crawl_client.scrape_url(source_url)
    if not result.ok or not result.markdown:
        return {"ok": False, "error": result.error or "Failed to fetch URL"}

    content = dict(entry.get("content") or {})
    content["markdown"] = result.markdown[:MARKDOWN_STORE_MAX]
    outcome = await ingest_content(
        owner_id=owner_id,
        source_url=source_url,
        content=content,
        title=entry.get("title") or source_url,
        content_type=entry.get("type") or "ResourceLink",
        product_id=entry.get("product_id"),
        industry=entry.get("industry"),
        department=entry.get("department"),
        confidence=entry.get("confidence_score"),
        user_confirmed=bool(entry.get("user_confirmed")),
    )
    if outcome.action == ACTION_CONFLICT:
        return {"ok": False, "error": "Entry was modified concurrently; try again"}
    return {"ok": True, "entry_id": outcome.entry_id, "action": outcome.action, "version": outcome.version}


async def run_due_refreshes(*, crawl_client, limit: int = 20) -> list[dict]:
    """Refresh every entry whose schedule is due. One failing entry does not stop the pass."""
    due = await kb_repo.claim_due_refreshes(limit=limit)
    results = []
    for entry in due:
        log = logger.bind(entry_id=entry["id"], url=entry.get("source_url"))
        try:
            result = await refresh_entry(entry_id=entry["id"], owner_id=entry["owner_id"], crawl_client=crawl_client)
        except Exception as exc:
            log.exception("scheduled refresh crashed")
            result = {"ok": False, "error": str(exc) or exc.__class__.__name__}
        error = None if result.get("ok") else str(result.get("error") or "Refresh failed")
        await kb_repo.record_refresh_result(entry["id"], error=error)
        SCHEDULED_REFRESH_TOTAL.labels(status="ok" if error is None else "error").inc()
        if error:
            log.warning("scheduled refresh failed: {}", error)
        else:
            log.info("scheduled refresh: {} (version {})", result.get("action"), result.get("version"))
        results.append({"entry_id": entry["id"], **result})
    return results
