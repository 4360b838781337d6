"""contentpilot import worker.

Claims PENDING site imports from SQLite and runs them to a resting status.
Jobs created with `run=true` are executed by the API process instead.

Every `refresh_check_sec` it also re-scrapes knowledge-base entries whose
refresh schedule is due.
"""

from __future__ import annotations

import asyncio
import os
import signal
import socket
import uuid

from loguru import logger

from contentpilot.config import Settings, get_settings
from contentpilot.core.usecases.classification import ContentClassifier
from contentpilot.infra.crawl.firecrawl import FirecrawlClient
from contentpilot.infra.db.sqlite import init_db
from contentpilot.infra.llm.chat_provider import ChatProvider
from contentpilot.infra.repos._common import utcnow_iso
from contentpilot.infra.repos.imports import claim_next_pending_import
from contentpilot.infra.repos.workers import upsert_worker_heartbeat
from contentpilot.observability.logs import configure_logging
from contentpilot.pipeline.knowledge_base import run_due_refreshes
from contentpilot.pipeline.site_import import CrawlOrchestrator

WORKER_ROLE = "import-worker"


async def _heartbeat_loop(*, worker_id: str, settings: Settings, stop_event: asyncio.Event) -> None:
    while not stop_event.is_set():
        try:
            await upsert_worker_heartbeat(
                worker_id=worker_id,
                role=WORKER_ROLE,
                meta={"pid": os.getpid(), "host": socket.gethostname(), "updated_at": utcnow_iso()},
            )
        except Exception:
            logger.exception("heartbeat write failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=settings.worker_heartbeat_sec)
        except asyncio.TimeoutError:
            pass


async def run_once(*, worker_id: str, crawl_client, classifier, settings: Settings) -> bool:
    """Claim and run one pending import. Returns False when the queue is empty."""
    job = await claim_next_pending_import(runner_id=worker_id, lease_seconds=settings.import_lease_seconds)
    if not job:
        return False
    log = logger.bind(import_id=job["id"], worker_id=worker_id)
    log.info("claimed import for {}", job.get("source_url"))
    orchestrator = CrawlOrchestrator(
        job["id"], crawl_client=crawl_client, classifier=classifier, settings=settings, runner_id=worker_id
    )
    result = await orchestrator.run()
    log.info("import ended: ok={} status={} error={!r}", result.ok, result.status, result.error)
    return True


async def run_scheduled_refreshes(*, crawl_client, settings: Settings) -> int:
    """Run one pass over due refresh schedules. Returns how many entries were refreshed."""
    if not crawl_client.configured:
        return 0
    results = await run_due_refreshes(crawl_client=crawl_client, limit=settings.refresh_batch_size)
    if results:
        failed = sum(1 for r in results if not r.get("ok"))
        logger.info("scheduled refresh pass: {} entries, {} failed", len(results), failed)
    return len(results)


async def _run_loop(*, worker_id: str, settings: Settings, stop_event: asyncio.Event) -> None:
    chat_provider = ChatProvider()
    crawl_client = FirecrawlClient()
    await chat_provider.start()
    await crawl_client.start()
    classifier = ContentClassifier(chat_provider, model=settings.llm_model, excerpt_chars=settings.classify_excerpt_chars)
    loop = asyncio.get_running_loop()
    next_refresh_check = loop.time()
    try:
        while not stop_event.is_set():
            if loop.time() >= next_refresh_check:
                next_refresh_check = loop.time() + settings.refresh_check_sec
                try:
                    await run_scheduled_refreshes(crawl_client=crawl_client, settings=settings)
                except Exception:
                    logger.exception("scheduled refresh pass failed")
            try:
                worked = await run_once(
                    worker_id=worker_id, crawl_client=crawl_client, classifier=classifier, settings=settings
                )
            except Exception:
                logger.exception("worker iteration failed")
                worked = False
            if worked:
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=settings.worker_poll_sec)
            except asyncio.TimeoutError:
                pass
    finally:
        await crawl_client.stop()
        await chat_provider.stop()


async def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    await init_db(settings=settings)
    worker_id = f"worker-{uuid.uuid4().hex[:10]}"
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers.
            pass

    logger.info("worker {} started (db={})", worker_id, settings.db_path)
    heartbeat = asyncio.create_task(_heartbeat_loop(worker_id=worker_id, settings=settings, stop_event=stop_event))
    try:
        await _run_loop(worker_id=worker_id, settings=settings, stop_event=stop_event)
    finally:
        stop_event.set()
        await heartbeat
        logger.info("worker {} stopped", worker_id)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
