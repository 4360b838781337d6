"""OpenAI-compatible chat completion client used for page classification.

One instance is built at process start (API lifespan or worker main) and
passed to the classifier. Nothing here is module-global.
"""

from __future__ import annotations

import time
import uuid

import httpx

from contentpilot.config import get_settings
from contentpilot.observability.metrics import CLASSIFY_LATENCY_SEC


class ChatProviderError(RuntimeError):
    def __init__(self, code: str, message: str, status_code: int = 502):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class ChatProvider:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.api_key = settings.llm_api_key if api_key is None else api_key
        self.base_url = (settings.llm_base_url if base_url is None else base_url).rstrip("/")
        self.model = model or settings.llm_model
        self.timeout = httpx.Timeout(120.0, connect=15.0)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool((self.api_key or "").strip())

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

    def _headers(self, operation: str) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Request-ID": str(uuid.uuid4()),
            "X-Contentpilot-Operation": operation,
        }

    async def chat_completion(
        self,
        *,
        messages: list[dict],
        model: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 500,
        operation: str = "classify",
    ) -> str:
        if not self.configured:
            raise ChatProviderError("llm_missing_api_key", "LLM_API_KEY is not configured.", 503)
        client = await self._client_ready()
        payload = {
            "model": model or self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        started = time.perf_counter()
        try:
            resp = await client.post(
                f"{self.base_url}/chat/completions", headers=self._headers(operation), json=payload
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ChatProviderError("llm_http_status", str(exc), exc.response.status_code) from exc
        except httpx.HTTPError as exc:
            raise ChatProviderError("llm_http_error", str(exc), 502) from exc
        finally:
            CLASSIFY_LATENCY_SEC.labels(operation=operation).observe(time.perf_counter() - started)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ChatProviderError("llm_bad_json", "Model endpoint returned non-JSON body.", 502) from exc
        choices = data.get("choices") or []
        if not choices:
            return ""
        msg = choices[0].get("message") or {}
        return str(msg.get("content") or "")
