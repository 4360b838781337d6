"""Batch scrape: fetch, classify and store a list of URLs with bounded concurrency.

URLs are processed in chunks of `concurrency`. Every URL in a chunk runs at
once and the chunk must settle before the next one starts. Each URL has its
own timeout and its outcome is reported on the event sink as soon as it
settles, paired by position within the chunk.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable
from urllib.parse import urlparse

from loguru import logger

from contentpilot.core.usecases.health import summarize_health
from contentpilot.infra.events.sink import EventSink
from contentpilot.infra.repos import content_library as kb_repo
from contentpilot.observability.metrics import BATCH_PAGES_TOTAL
from contentpilot.pipeline.knowledge_base import ACTION_CONFLICT, ingest_content

THIN_CONTENT_CHARS = 100


@dataclass(frozen=True)
class PageOutcome:
    ok: bool
    error: str = ""
    action: str = ""
    entry_id: str | None = None


@dataclass(frozen=True)
class BatchSummary:
    total: int
    saved: int
    failed: int
    health: dict | None = None


def is_valid_url(value: object) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def validate_urls(raw: Iterable[object], max_urls: int = 30) -> list[str]:
    """Keep http(s) URLs, drop duplicates (first wins), cap the list."""
    seen: set[str] = set()
    out: list[str] = []
    for value in raw or []:
        if not is_valid_url(value):
            continue
        url = str(value).strip()
        if url in seen:
            continue
        seen.add(url)
        out.append(url)
        if len(out) >= max_urls:
            break
    return out


def chunked(items: list[str], size: int) -> list[list[str]]:
    size = max(1, int(size))
    return [items[i : i + size] for i in range(0, len(items), size)]


class BatchExecutor:
    def __init__(self, *, crawl_client, classifier, concurrency: int = 5, timeout_sec: float = 30.0):
        self.crawl_client = crawl_client
        self.classifier = classifier
        self.concurrency = max(1, int(concurrency))
        self.timeout_sec = float(timeout_sec)

    async def process_url(self, url: str, *, owner_id: str, product_id: str | None = None) -> PageOutcome:
        """Scrape, classify and store one URL. Failures come back as `ok=False`."""
        scraped = await self.crawl_client.scrape_url(url)
        if not scraped.ok:
            return PageOutcome(ok=False, error=scraped.error or "Scrape failed")
        markdown = scraped.markdown or ""
        if len(markdown) < THIN_CONTENT_CHARS:
            return PageOutcome(ok=False, error="Page content too thin to extract signal")

        enriched = await self.classifier.enrich(url, markdown)
        if enriched.low_signal:
            return PageOutcome(ok=False, error="Low-signal page skipped (nav/legal/other)")

        outcome = await ingest_content(
            owner_id=owner_id,
            source_url=url,
            content=enriched.payload,
            title=enriched.item.title,
            content_type=enriched.content_type,
            product_id=product_id,
            industry=enriched.item.industry,
            department=enriched.item.department,
            confidence=enriched.confidence,
            user_confirmed=False,
        )
        if outcome.action == ACTION_CONFLICT:
            return PageOutcome(ok=False, error="Concurrent update for the same URL; try again")
        return PageOutcome(ok=True, action=outcome.action, entry_id=outcome.entry_id)

    async def _settle(self, url: str, *, owner_id: str, product_id: str | None) -> PageOutcome:
        try:
            return await asyncio.wait_for(
                self.process_url(url, owner_id=owner_id, product_id=product_id), timeout=self.timeout_sec
            )
        except asyncio.TimeoutError:
            return PageOutcome(ok=False, error=f"Timed out after {self.timeout_sec:g}s")
        except Exception as exc:
            logger.bind(url=url).warning("batch item failed: {}", exc)
            return PageOutcome(ok=False, error=str(exc) or exc.__class__.__name__)

    async def run(
        self, *, owner_id: str, urls: list[str], sink: EventSink, product_id: str | None = None
    ) -> BatchSummary:
        total = len(urls)
        saved = 0
        failed = 0
        completed = 0
        try:
            await sink.emit({"type": "started", "total": total})

            for chunk_no, chunk in enumerate(chunked(urls, self.concurrency)):
                offset = chunk_no * self.concurrency

                async def run_one(position: int, url: str) -> PageOutcome:
                    nonlocal completed
                    outcome = await self._settle(url, owner_id=owner_id, product_id=product_id)
                    completed += 1
                    event = {
                        "type": "page",
                        "url": url,
                        "position": offset + position,
                        "index": completed,
                        "total": total,
                        "status": "ok" if outcome.ok else "error",
                    }
                    if not outcome.ok:
                        event["error"] = outcome.error
                    await sink.emit(event)
                    return outcome

                results = await asyncio.gather(
                    *(run_one(position, url) for position, url in enumerate(chunk)), return_exceptions=True
                )
                for url, result in zip(chunk, results):
                    ok = isinstance(result, PageOutcome) and result.ok
                    BATCH_PAGES_TOTAL.labels(status="ok" if ok else "error").inc()
                    if ok:
                        saved += 1
                    else:
                        failed += 1
                        if isinstance(result, BaseException):
                            logger.bind(url=url).error("progress emit failed: {}", result)

            health = await self._health(owner_id)
            await sink.emit({"type": "complete", "saved": saved, "failed": failed, "health": health})
            return BatchSummary(total=total, saved=saved, failed=failed, health=health)
        except Exception as exc:
            logger.exception("batch scrape aborted")
            await sink.emit({"type": "error", "message": str(exc) or "Batch scrape failed"})
            return BatchSummary(total=total, saved=saved, failed=failed)

    async def _health(self, owner_id: str) -> dict | None:
        try:
            entries = await kb_repo.list_entries(owner_id, active_only=True, limit=5000)
            return summarize_health(entries)
        except Exception:
            logger.exception("health summary failed")
            return None
