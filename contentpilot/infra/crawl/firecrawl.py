"""Firecrawl v2 client: whole-site crawl, single-page scrape and link map.

Every public call returns a result object with `ok` set; transport errors,
HTTP errors and missing credentials are all reported as `ok=False` with a
message. `ensure_configured()` is the one place that raises.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx
from loguru import logger

from contentpilot.config import get_settings

MAX_RETRIES = 3
RETRY_AFTER_CAP_SEC = 60
MAX_STATUS_PAGES = 50


class CrawlConfigError(RuntimeError):
    """The crawl service credentials are missing."""


class _RetriesExhausted(RuntimeError):
    pass


@dataclass(frozen=True)
class CrawlPage:
    url: str
    markdown: str = ""


@dataclass(frozen=True)
class CrawlStart:
    ok: bool
    crawl_id: str = ""
    error: str = ""


@dataclass(frozen=True)
class CrawlStatus:
    ok: bool
    status: str = "unknown"
    total: int | None = None
    completed: int | None = None
    pages: list[CrawlPage] = field(default_factory=list)
    error: str = ""


@dataclass(frozen=True)
class ScrapeResult:
    ok: bool
    markdown: str = ""
    error: str = ""


@dataclass(frozen=True)
class MapResult:
    ok: bool
    links: list[dict] = field(default_factory=list)
    error: str = ""


def _formats(formats: list[str] | tuple[str, ...] | None) -> list[dict]:
    return [{"type": f} for f in (formats or ("markdown",))]


def _normalize_page(raw: Any) -> CrawlPage | None:
    if not isinstance(raw, dict):
        return None
    meta = raw.get("metadata") or {}
    url = meta.get("sourceURL") or meta.get("sourceUrl") or raw.get("url") or ""
    markdown = raw.get("markdown")
    return CrawlPage(url=str(url), markdown=markdown if isinstance(markdown, str) else "")


def _error_text(body: Any, resp: httpx.Response, fallback: str) -> str:
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return resp.reason_phrase or fallback


class FirecrawlClient:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        settings = get_settings()
        self.api_key = settings.firecrawl_api_key if api_key is None else api_key
        self.base_url = (settings.firecrawl_base_url if base_url is None else base_url).rstrip("/")
        self.timeout = httpx.Timeout(60.0, connect=15.0)
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool((self.api_key or "").strip())

    def ensure_configured(self) -> None:
        if not self.configured:
            raise CrawlConfigError("FIRECRAWL_API_KEY not configured in environment variables")

    async def start(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def stop(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None

    async def _client_ready(self) -> httpx.AsyncClient:
        if self._client is None:
            await self.start()
        assert self._client is not None
        return self._client

    def _headers(self) -> dict:
        self.ensure_configured()
        return {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}

    async def _request(self, method: str, url: str, *, json: dict | None = None) -> httpx.Response:
        """Send with retries: 429 honours Retry-After (capped), transport errors back off linearly."""
        headers = self._headers()
        client = await self._client_ready()
        last_error: Exception | None = None
        for attempt in range(MAX_RETRIES):
            try:
                resp = await client.request(method, url, headers=headers, json=json)
            except httpx.HTTPError as exc:
                last_error = exc
                logger.warning("firecrawl {} {} failed (attempt {}): {}", method, url, attempt + 1, exc)
                if attempt < MAX_RETRIES - 1:
                    await self._sleep(1.0 * (attempt + 1))
                continue
            if resp.status_code == 429:
                try:
                    wait = int(resp.headers.get("Retry-After", "5"))
                except ValueError:
                    wait = 5
                await self._sleep(max(0, min(wait, RETRY_AFTER_CAP_SEC)))
                last_error = _RetriesExhausted("Rate limited by crawl service")
                continue
            return resp
        raise last_error or _RetriesExhausted("Max retries exceeded")

    async def _call(self, method: str, url: str, *, json: dict | None = None) -> tuple[httpx.Response, Any]:
        resp = await self._request(method, url, json=json)
        try:
            body = resp.json()
        except ValueError:
            body = {}
        return resp, body

    async def start_crawl(
        self,
        url: str,
        *,
        limit: int = 40,
        formats: list[str] | tuple[str, ...] = ("markdown",),
        only_main_content: bool = True,
    ) -> CrawlStart:
        payload = {
            "url": url,
            "limit": int(limit),
            "scrapeOptions": {"formats": _formats(formats), "onlyMainContent": only_main_content},
        }
        try:
            resp, body = await self._call("POST", f"{self.base_url}/crawl", json=payload)
        except CrawlConfigError as exc:
            return CrawlStart(ok=False, error=str(exc))
        except Exception as exc:
            return CrawlStart(ok=False, error=str(exc) or "Crawl start failed")
        if not resp.is_success or not isinstance(body, dict) or not body.get("success") or not body.get("id"):
            return CrawlStart(ok=False, error=_error_text(body, resp, "Crawl start failed"))
        return CrawlStart(ok=True, crawl_id=str(body["id"]))

    async def get_crawl_status(self, crawl_id: str) -> CrawlStatus:
        """Fetch crawl status and every page collected so far, following `next` links."""
        url = f"{self.base_url}/crawl/{crawl_id}"
        pages: list[CrawlPage] = []
        status = "unknown"
        total: int | None = None
        completed: int | None = None
        try:
            for _ in range(MAX_STATUS_PAGES):
                resp, raw = await self._call("GET", url)
                if not resp.is_success:
                    return CrawlStatus(ok=False, error=_error_text(raw, resp, "Get crawl status failed"))
                if not isinstance(raw, dict):
                    return CrawlStatus(ok=False, error="Unexpected crawl status payload")
                inner = raw.get("data")
                envelope = inner if isinstance(inner, dict) else raw
                status = str(envelope.get("status") or ("completed" if raw.get("success") else status))
                if isinstance(envelope.get("total"), int):
                    total = envelope["total"]
                if isinstance(envelope.get("completed"), int):
                    completed = envelope["completed"]
                data = envelope.get("data")
                if isinstance(data, list):
                    pages.extend(p for p in (_normalize_page(d) for d in data) if p is not None)
                next_url = envelope.get("next")
                if not (isinstance(next_url, str) and next_url):
                    break
                url = next_url
        except CrawlConfigError as exc:
            return CrawlStatus(ok=False, error=str(exc))
        except Exception as exc:
            return CrawlStatus(ok=False, error=str(exc) or "Get crawl status failed")
        if completed is None and pages:
            completed = len(pages)
        return CrawlStatus(ok=True, status=status, total=total, completed=completed, pages=pages)

    async def scrape_url(
        self, url: str, *, formats: list[str] | tuple[str, ...] = ("markdown",), only_main_content: bool = True
    ) -> ScrapeResult:
        payload = {"url": url, "formats": _formats(formats), "onlyMainContent": only_main_content}
        try:
            resp, body = await self._call("POST", f"{self.base_url}/scrape", json=payload)
        except CrawlConfigError as exc:
            return ScrapeResult(ok=False, error=str(exc))
        except Exception as exc:
            return ScrapeResult(ok=False, error=str(exc) or "Scrape failed")
        if not resp.is_success or not isinstance(body, dict) or not body.get("success"):
            return ScrapeResult(ok=False, error=_error_text(body, resp, "Scrape failed"))
        data = body.get("data") or {}
        markdown = data.get("markdown") if isinstance(data, dict) else None
        return ScrapeResult(ok=True, markdown=markdown if isinstance(markdown, str) else "")

    async def map_url(self, url: str, *, limit: int = 500, search: str | None = None) -> MapResult:
        payload: dict[str, Any] = {"url": url, "limit": int(limit)}
        if search:
            payload["search"] = search
        try:
            resp, body = await self._call("POST", f"{self.base_url}/map", json=payload)
        except CrawlConfigError as exc:
            return MapResult(ok=False, error=str(exc))
        except Exception as exc:
            return MapResult(ok=False, error=str(exc) or "Map failed")
        if not resp.is_success or not isinstance(body, dict) or not body.get("success"):
            return MapResult(ok=False, error=_error_text(body, resp, "Map failed"))
        links = []
        for link in body.get("links") or []:
            if isinstance(link, str):
                links.append({"url": link})
            elif isinstance(link, dict) and link.get("url"):
                links.append({k: link.get(k) for k in ("url", "title", "description") if link.get(k)})
        return MapResult(ok=True, links=links)
