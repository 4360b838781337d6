"""Site import: crawl a seed URL, filter, classify, and materialize entries.

`CrawlOrchestrator` is an explicit state machine. Each `step()` performs one
unit of work (guard, discover, one poll, filter, one classification,
materialize) and returns how long to wait before the next step, so a test
can drive it with a fake clock and a fake crawl client. `run()` is the
async loop that production code uses.

The import job row is the only place progress lives. Writes go through the
single-runner lease and status compare-and-swap in the imports repository.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Protocol

from loguru import logger
from pydantic import ValidationError

from contentpilot.config import Settings, get_settings
from contentpilot.core.usecases import import_status as st
from contentpilot.core.usecases.classification import CategorizedItem, fallback_item, infer_type_hint
from contentpilot.core.usecases.relevance import filter_by_industry
from contentpilot.infra.crawl.firecrawl import CrawlConfigError, CrawlPage
from contentpilot.infra.repos import content_library as kb_repo
from contentpilot.infra.repos import imports as imports_repo
from contentpilot.infra.repos._common import utcnow_iso
from contentpilot.infra.repos.import_events import append_event
from contentpilot.observability.metrics import CRAWL_POLLS_TOTAL, IMPORTS_FINISHED_TOTAL
from contentpilot.pipeline.knowledge_base import materialize_item

NO_PAGES_MESSAGE = (
    "No pages discovered from this URL. Try a different URL or check that the site is accessible. "
    "The crawl may have timed out for large sites."
)
NOT_CONFIGURED_MESSAGE = "Crawl service is not configured. Add FIRECRAWL_API_KEY."
CANCELLED_MESSAGE = "Import cancelled by user"

PHASE_GUARD = "guard"
PHASE_DISCOVER = "discover"
PHASE_POLL = "poll"
PHASE_FILTER = "filter"
PHASE_CATEGORIZE = "categorize"
PHASE_MATERIALIZE = "materialize"
PHASE_DONE = "done"


class ImportNotFoundError(LookupError):
    pass


class _JobLost(RuntimeError):
    """The job row stopped accepting our writes (status moved or lease lost)."""


class Clock(Protocol):
    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass(frozen=True)
class StepResult:
    done: bool
    delay: float = 0.0


@dataclass(frozen=True)
class ImportResult:
    ok: bool
    status: str | None = None
    total_pages: int = 0
    categorized_count: int = 0
    created_count: int = 0
    error: str = ""
    noop: bool = False


class CrawlOrchestrator:
    def __init__(
        self,
        import_id: str,
        *,
        crawl_client,
        classifier,
        settings: Settings | None = None,
        clock: Clock | None = None,
        runner_id: str | None = None,
    ):
        self.import_id = import_id
        self.crawl_client = crawl_client
        self.classifier = classifier
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.runner_id = runner_id or f"orchestrator-{uuid.uuid4().hex[:10]}"
        self.log = logger.bind(import_id=import_id, runner_id=self.runner_id)

        self.phase = PHASE_GUARD
        self.result: ImportResult | None = None
        self._job: dict = {}
        self._status = st.PENDING
        self._claimed = False
        self._crawl_id = ""
        self._deadline = 0.0
        self._pages: list[CrawlPage] = []
        self._to_process: list[CrawlPage] = []
        self._cursor = 0
        self._items: list[CategorizedItem] = []
        self._done_urls: set[str] = set()

    @property
    def done(self) -> bool:
        return self.phase == PHASE_DONE

    async def run(self) -> ImportResult:
        while not self.done:
            outcome = await self.step()
            if not outcome.done and outcome.delay > 0:
                await self.clock.sleep(outcome.delay)
        assert self.result is not None
        return self.result

    async def step(self) -> StepResult:
        if self.done:
            return StepResult(done=True)
        delay = 0.0
        try:
            if self.phase != PHASE_GUARD and await imports_repo.is_cancel_requested(self.import_id):
                await self._fail(st.STEP_CANCEL, CANCELLED_MESSAGE)
            else:
                delay = await self._handlers()[self.phase]()
                if self._claimed and not self.done:
                    await imports_repo.heartbeat_import(
                        self.import_id, runner_id=self.runner_id, lease_seconds=self.settings.import_lease_seconds
                    )
        except _JobLost as exc:
            self.log.warning("stopping: {}", exc)
            self._finish(ImportResult(ok=False, status=self._status, error=str(exc), noop=True))
        except Exception as exc:
            self.log.exception("import step {} crashed", self.phase)
            await self._fail(st.STEP_EXECUTE, str(exc) or exc.__class__.__name__)
        if self.done:
            await self._release()
        return StepResult(done=self.done, delay=delay)

    def _handlers(self):
        return {
            PHASE_GUARD: self._guard,
            PHASE_DISCOVER: self._discover,
            PHASE_POLL: self._poll,
            PHASE_FILTER: self._filter,
            PHASE_CATEGORIZE: self._categorize,
            PHASE_MATERIALIZE: self._materialize,
        }

    # -- phases -----------------------------------------------------------

    async def _guard(self) -> float:
        job = await imports_repo.get_import(self.import_id)
        if not job:
            self._finish(ImportResult(ok=False, error="Import not found", noop=True))
            return 0.0
        self._status = str(job.get("status") or "")
        if not st.is_runnable(self._status):
            self._finish(
                ImportResult(ok=False, status=self._status, error="Import is not in a runnable state", noop=True)
            )
            return 0.0
        claimed = await imports_repo.claim_import(
            self.import_id, runner_id=self.runner_id, lease_seconds=self.settings.import_lease_seconds
        )
        if not claimed:
            self._finish(
                ImportResult(ok=False, status=self._status, error="Import is already being executed", noop=True)
            )
            return 0.0
        self._claimed = True
        self._job = job

        if job.get("cancel_requested"):
            await self._fail(st.STEP_CANCEL, CANCELLED_MESSAGE)
            return 0.0
        try:
            self.crawl_client.ensure_configured()
        except CrawlConfigError:
            self.log.error("crawl service credentials missing")
            await self._fail(st.STEP_CONFIG, NOT_CONFIGURED_MESSAGE)
            return 0.0

        for raw in (job.get("categorized_content") or {}).get("items") or []:
            try:
                item = CategorizedItem.model_validate(raw)
            except ValidationError:
                continue
            self._items.append(item)
            self._done_urls.add(item.url)

        self._crawl_id = str(job.get("crawl_id") or "")
        resumed = bool(self._crawl_id)
        if resumed:
            self._deadline = self.clock.monotonic() + self.settings.crawl_timeout_sec
            self.phase = PHASE_POLL
        else:
            self.phase = PHASE_DISCOVER
        self.log.info("import started for {} (resumed={})", job.get("source_url"), resumed)
        await append_event(
            import_id=self.import_id,
            event_type="import_started",
            payload={"source_url": job.get("source_url"), "resumed": resumed, "kept_items": len(self._items)},
        )
        return 0.0

    async def _discover(self) -> float:
        await self._write(status=st.DISCOVERING)
        source_url = str(self._job.get("source_url") or "")
        start = await self.crawl_client.start_crawl(
            source_url,
            limit=self.settings.crawl_page_limit,
            formats=("markdown",),
            only_main_content=True,
        )
        if not start.ok:
            self.log.error("crawl start failed: {}", start.error)
            await self._fail(st.STEP_DISCOVER, start.error or "Crawl start failed")
            return 0.0
        self._crawl_id = start.crawl_id
        await self._write(crawl_id=self._crawl_id)
        self._deadline = self.clock.monotonic() + self.settings.crawl_timeout_sec
        self.log.info("crawl started: {}", self._crawl_id)
        await append_event(
            import_id=self.import_id, event_type="crawl_started", payload={"crawl_id": self._crawl_id}
        )
        self.phase = PHASE_POLL
        return 0.0

    async def _poll(self) -> float:
        if self.clock.monotonic() >= self._deadline:
            self.log.error("no pages before the crawl deadline")
            await self._fail_no_pages()
            return 0.0

        status = await self.crawl_client.get_crawl_status(self._crawl_id)
        CRAWL_POLLS_TOTAL.labels(status=status.status if status.ok else "error").inc()
        if not status.ok:
            self.log.error("crawl status failed: {}", status.error)
            await self._fail(st.STEP_SCRAPE, status.error or "Get crawl status failed")
            return 0.0

        found = len(status.pages)
        total = status.total or 0
        completed = status.completed if status.completed is not None else found
        if total > 0 or completed > 0 or found > 0:
            await self._write(
                status=st.SCRAPING, total_pages=max(total, found), scraped_pages=max(completed, found)
            )
            await append_event(
                import_id=self.import_id,
                event_type="crawl_progress",
                payload={"status": status.status, "total": max(total, found), "completed": max(completed, found)},
            )

        if status.status == "completed":
            if not found:
                await self._fail_no_pages()
                return 0.0
            self._pages = list(status.pages)
            self.log.info("crawl completed, pages: {}", found)
            self.phase = PHASE_FILTER
            return 0.0

        if status.status == "failed":
            self.log.error("crawl failed on the crawl service")
            await self._fail(st.STEP_SCRAPE, "Crawl failed on the crawl service")
            return 0.0

        return self.settings.crawl_poll_interval_sec

    async def _filter(self) -> float:
        pages = self._pages
        filtered = filter_by_industry(
            pages, self._job.get("industry"), self._job.get("additional_industries") or []
        )
        to_process = filtered or pages
        self._to_process = list(to_process[: self.settings.import_max_categorize])
        await self._write(
            status=st.SCRAPING,
            total_pages=len(pages),
            scraped_pages=len(pages),
            discovered_urls=[p.url for p in pages if p.url],
            scraped_content=[{"url": p.url, "markdownLength": len(p.markdown or "")} for p in pages],
        )
        self.log.info(
            "categorizing {} of {} pages ({} matched the relevance filter)",
            len(self._to_process),
            len(to_process),
            len(filtered),
        )
        await append_event(
            import_id=self.import_id,
            event_type="pages_filtered",
            payload={
                "discovered": len(pages),
                "matched": len(filtered),
                "fallback_unfiltered": not filtered,
                "to_process": len(self._to_process),
            },
        )
        self.phase = PHASE_CATEGORIZE
        return 0.0

    def _next_page(self) -> tuple[str, CrawlPage] | None:
        source_url = str(self._job.get("source_url") or "")
        while self._cursor < len(self._to_process):
            page = self._to_process[self._cursor]
            self._cursor += 1
            url = page.url or source_url
            if url not in self._done_urls:
                return url, page
        return None

    async def _categorize(self) -> float:
        nxt = self._next_page()
        if nxt is None:
            self.phase = PHASE_MATERIALIZE
            return 0.0
        url, page = nxt
        try:
            item = await self.classifier.classify(url, page.markdown or "")
        except Exception as exc:
            self.log.warning("classification failed for {}: {}", url, exc)
            item = fallback_item(url, infer_type_hint(url))
        self._items.append(item)
        self._done_urls.add(url)
        await self._write(
            status=st.CATEGORIZING,
            categorized_pages=len(self._items),
            categorized_content={"items": [i.as_payload() for i in self._items]},
        )
        await append_event(
            import_id=self.import_id,
            event_type="page_categorized",
            payload={"url": url, "suggestedType": item.suggestedType, "count": len(self._items)},
        )
        return self.settings.import_classify_delay_sec

    async def _materialize(self) -> float:
        owner_id = str(self._job.get("owner_id") or "")
        auto_confirm = self.settings.import_auto_confirm
        created = 0
        for item in self._items:
            try:
                outcome = await materialize_item(owner_id=owner_id, item=item, user_confirmed=auto_confirm)
            except Exception:
                self.log.exception("failed to create knowledge-base entry for {}", item.url)
                continue
            if outcome.created:
                created += 1

        final = st.APPROVED if auto_confirm else st.REVIEW_PENDING
        await self._write(
            status=final,
            categorized_content={"items": [i.as_payload() for i in self._items]},
            approved_count=created,
            rejected_count=len(self._items) - created,
            reviewed_at=utcnow_iso() if auto_confirm else None,
        )
        self._status = final
        IMPORTS_FINISHED_TOTAL.labels(status=final).inc()
        self.log.info("import finished: {} items, {} new entries, status {}", len(self._items), created, final)
        await append_event(
            import_id=self.import_id,
            event_type="import_finished",
            payload={"status": final, "categorized": len(self._items), "created": created},
        )
        self._finish(
            ImportResult(
                ok=True,
                status=final,
                total_pages=len(self._pages),
                categorized_count=len(self._items),
                created_count=created,
            )
        )
        return 0.0

    # -- helpers ----------------------------------------------------------

    async def _write(self, *, status: str | None = None, **fields) -> None:
        if status is not None:
            status = st.forward_status(self._status, status)
        ok = await imports_repo.update_import(self.import_id, status=status, runner_id=self.runner_id, **fields)
        if not ok:
            raise _JobLost("import job no longer accepts writes from this runner")
        if status is not None:
            self._status = status

    async def _fail_no_pages(self) -> None:
        await self._fail(
            st.STEP_SCRAPE,
            NO_PAGES_MESSAGE,
            reset_progress=True,
            discovered_urls=[],
            scraped_content=[],
            categorized_content={"items": []},
        )

    async def _fail(self, step: str, error: str, **fields) -> None:
        try:
            written = await imports_repo.update_import(
                self.import_id,
                status=st.FAILED,
                runner_id=self.runner_id if self._claimed else None,
                errors={"step": step, "error": error},
                **fields,
            )
            if written:
                self._status = st.FAILED
                IMPORTS_FINISHED_TOTAL.labels(status=st.FAILED).inc()
                await append_event(
                    import_id=self.import_id, event_type="import_failed", payload={"step": step, "error": error}
                )
        except Exception:
            self.log.exception("could not record failure ({}: {})", step, error)
        self._finish(ImportResult(ok=False, status=self._status, total_pages=len(self._pages), error=error))

    def _finish(self, result: ImportResult) -> None:
        self.result = result
        self.phase = PHASE_DONE

    async def _release(self) -> None:
        if not self._claimed:
            return
        self._claimed = False
        try:
            await imports_repo.release_import(self.import_id, runner_id=self.runner_id)
        except Exception:
            self.log.exception("could not release import lease")


async def cancel_import(import_id: str, *, owner_id: str | None = None) -> dict:
    """Ask a runnable import to stop at its next step boundary.

    An unclaimed PENDING job has no runner to notice the flag, so it is failed here.
    """
    job = await imports_repo.get_import(import_id, owner_id=owner_id)
    if not job:
        raise ImportNotFoundError(import_id)
    if not st.is_runnable(job.get("status")):
        raise st.InvalidTransitionError(f"cannot cancel an import in status {job.get('status')}")
    await imports_repo.request_cancel(import_id)
    await append_event(import_id=import_id, event_type="import_cancel_requested", payload={})
    if job.get("status") == st.PENDING and not job.get("runner_id"):
        await imports_repo.update_import(
            import_id, status=st.FAILED, errors={"step": st.STEP_CANCEL, "error": CANCELLED_MESSAGE}
        )
        IMPORTS_FINISHED_TOTAL.labels(status=st.FAILED).inc()
    return await imports_repo.get_import(import_id)


async def review_import(
    import_id: str,
    *,
    owner_id: str | None = None,
    approve_urls: list[str] | None = None,
    reject_urls: list[str] | None = None,
) -> dict:
    """Resolve a REVIEW_PENDING import.

    Approved URLs get confirmed entries; rejected URLs have their unconfirmed
    entries archived. Without `approve_urls`, everything not rejected is approved.
    """
    job = await imports_repo.get_import(import_id, owner_id=owner_id)
    if not job:
        raise ImportNotFoundError(import_id)
    if job.get("status") != st.REVIEW_PENDING:
        raise st.InvalidTransitionError(f"cannot review an import in status {job.get('status')}")

    items = []
    for raw in (job.get("categorized_content") or {}).get("items") or []:
        try:
            items.append(CategorizedItem.model_validate(raw))
        except ValidationError:
            continue

    rejected_set = set(reject_urls or [])
    if approve_urls is None:
        approved_set = {i.url for i in items} - rejected_set
    else:
        approved_set = set(approve_urls) - rejected_set

    owner = str(job.get("owner_id") or "")
    approved = 0
    rejected = 0
    for item in items:
        entry = await kb_repo.find_by_source_url(owner, item.url, active_only=True)
        if item.url in approved_set:
            if entry:
                await kb_repo.set_user_confirmed(entry["id"], True)
            else:
                await materialize_item(owner_id=owner, item=item, user_confirmed=True)
            approved += 1
        else:
            if entry and not entry.get("user_confirmed"):
                await kb_repo.archive_entry(entry["id"])
            rejected += 1

    await imports_repo.update_import(
        import_id,
        status=st.APPROVED,
        approved_count=approved,
        rejected_count=rejected,
        reviewed_at=utcnow_iso(),
    )
    IMPORTS_FINISHED_TOTAL.labels(status=st.APPROVED).inc()
    await append_event(
        import_id=import_id, event_type="import_reviewed", payload={"approved": approved, "rejected": rejected}
    )
    return await imports_repo.get_import(import_id)
