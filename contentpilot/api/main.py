"""FastAPI entrypoint for contentpilot."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from contentpilot import __version__
from contentpilot.config import get_settings
from contentpilot.core.usecases.classification import ContentClassifier
from contentpilot.infra.crawl.firecrawl import FirecrawlClient
from contentpilot.infra.db.sqlite import init_db
from contentpilot.infra.llm.chat_provider import ChatProvider
from contentpilot.observability.logs import configure_logging

from contentpilot.api.routes.content import router as content_router
from contentpilot.api.routes.imports import router as imports_router
from contentpilot.api.routes.system import router as system_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    db_info = await init_db(settings=settings)
    if db_info["applied"]:
        logger.info("applied migrations: {}", ", ".join(db_info["applied"]))

    chat_provider = ChatProvider()
    crawl_client = FirecrawlClient()
    await chat_provider.start()
    await crawl_client.start()
    app.state.chat_provider = chat_provider
    app.state.crawl_client = crawl_client
    app.state.classifier = ContentClassifier(
        chat_provider, model=settings.llm_model, excerpt_chars=settings.classify_excerpt_chars
    )
    app.state.background_tasks = set()
    if not crawl_client.configured:
        logger.warning("FIRECRAWL_API_KEY is not set; crawl and scrape endpoints will return 503")

    try:
        yield
    finally:
        pending = list(app.state.background_tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await crawl_client.stop()
        await chat_provider.stop()


app = FastAPI(
    title="contentpilot",
    description="Site import, batch scrape and versioned knowledge base",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(imports_router)
app.include_router(content_router)
app.include_router(system_router)
