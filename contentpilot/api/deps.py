"""Request-scoped access to the clients built in the app lifespan."""

from __future__ import annotations

import asyncio

from fastapi import HTTPException, Request

from contentpilot.core.usecases.classification import ContentClassifier
from contentpilot.infra.crawl.firecrawl import CrawlConfigError, FirecrawlClient


def get_crawl_client(request: Request) -> FirecrawlClient:
    return request.app.state.crawl_client


def get_classifier(request: Request) -> ContentClassifier:
    return request.app.state.classifier


def require_crawl_client(request: Request) -> FirecrawlClient:
    client = get_crawl_client(request)
    try:
        client.ensure_configured()
    except CrawlConfigError as exc:
        raise HTTPException(status_code=503, detail=f"Crawl service is not configured ({exc}).") from exc
    return client


def spawn(request: Request, coro) -> None:
    """Run `coro` in the background, keeping a reference until it finishes."""
    tasks: set = request.app.state.background_tasks
    task = asyncio.create_task(coro)
    tasks.add(task)
    task.add_done_callback(tasks.discard)
