import json
import unittest

import httpx

from contentpilot.infra.crawl.firecrawl import CrawlConfigError, FirecrawlClient

BASE = "https://crawl.test/v2"


class FirecrawlClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.requests: list[httpx.Request] = []
        self.responses: list = []
        self.sleeps: list[float] = []

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            nxt = self.responses.pop(0)
            if isinstance(nxt, Exception):
                raise nxt
            return nxt

        async def fake_sleep(seconds: float) -> None:
            self.sleeps.append(seconds)

        self.client = FirecrawlClient(
            api_key="fc-test", base_url=BASE, transport=httpx.MockTransport(handler), sleep=fake_sleep
        )

    async def asyncTearDown(self):
        await self.client.stop()

    async def test_start_crawl_sends_options_and_returns_id(self):
        self.responses.append(httpx.Response(200, json={"success": True, "id": "crawl-42"}))
        start = await self.client.start_crawl("https://acme.test", limit=40)

        self.assertTrue(start.ok)
        self.assertEqual(start.crawl_id, "crawl-42")
        req = self.requests[0]
        self.assertEqual(str(req.url), f"{BASE}/crawl")
        self.assertEqual(req.headers["Authorization"], "Bearer fc-test")
        body = json.loads(req.content)
        self.assertEqual(body["limit"], 40)
        self.assertEqual(body["scrapeOptions"], {"formats": [{"type": "markdown"}], "onlyMainContent": True})

    async def test_rate_limit_waits_retry_after_capped(self):
        self.responses += [
            httpx.Response(429, headers={"Retry-After": "120"}),
            httpx.Response(200, json={"success": True, "id": "crawl-1"}),
        ]
        start = await self.client.start_crawl("https://acme.test")
        self.assertTrue(start.ok)
        self.assertEqual(self.sleeps, [60])

    async def test_transport_errors_back_off_then_give_up(self):
        self.responses += [httpx.ConnectError("refused") for _ in range(3)]
        result = await self.client.scrape_url("https://acme.test")
        self.assertFalse(result.ok)
        self.assertIn("refused", result.error)
        self.assertEqual(self.sleeps, [1.0, 2.0])
        self.assertEqual(len(self.requests), 3)

    async def test_http_error_is_reported_not_raised(self):
        self.responses.append(httpx.Response(402, json={"success": False, "error": "Payment required"}))
        result = await self.client.scrape_url("https://acme.test")
        self.assertFalse(result.ok)
        self.assertEqual(result.error, "Payment required")

    async def test_scrape_returns_markdown(self):
        self.responses.append(httpx.Response(200, json={"success": True, "data": {"markdown": "# Hi"}}))
        result = await self.client.scrape_url("https://acme.test")
        self.assertTrue(result.ok)
        self.assertEqual(result.markdown, "# Hi")

    async def test_crawl_status_follows_next_pages(self):
        self.responses += [
            httpx.Response(
                200,
                json={
                    "status": "completed",
                    "total": 3,
                    "completed": 3,
                    "data": [
                        {"markdown": "a", "metadata": {"sourceURL": "https://acme.test/a"}},
                        {"markdown": "b", "metadata": {"sourceURL": "https://acme.test/b"}},
                    ],
                    "next": f"{BASE}/crawl/crawl-1?skip=2",
                },
            ),
            httpx.Response(
                200, json={"status": "completed", "data": [{"markdown": "c", "url": "https://acme.test/c"}]}
            ),
        ]
        status = await self.client.get_crawl_status("crawl-1")

        self.assertTrue(status.ok)
        self.assertEqual(status.status, "completed")
        self.assertEqual(status.total, 3)
        self.assertEqual([p.url for p in status.pages], ["https://acme.test/a", "https://acme.test/b", "https://acme.test/c"])
        self.assertEqual(str(self.requests[1].url), f"{BASE}/crawl/crawl-1?skip=2")

    async def test_crawl_status_accepts_wrapped_envelope(self):
        self.responses.append(
            httpx.Response(200, json={"success": True, "data": {"status": "scraping", "total": 9, "completed": 1, "data": []}})
        )
        status = await self.client.get_crawl_status("crawl-1")
        self.assertEqual((status.status, status.total, status.completed), ("scraping", 9, 1))
        self.assertEqual(status.pages, [])

    async def test_map_normalizes_links(self):
        self.responses.append(
            httpx.Response(
                200,
                json={"success": True, "links": ["https://acme.test/a", {"url": "https://acme.test/b", "title": "B"}]},
            )
        )
        result = await self.client.map_url("https://acme.test", limit=10)
        self.assertEqual(result.links, [{"url": "https://acme.test/a"}, {"url": "https://acme.test/b", "title": "B"}])

    async def test_missing_key(self):
        client = FirecrawlClient(api_key="", base_url=BASE, transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        self.assertFalse(client.configured)
        with self.assertRaises(CrawlConfigError):
            client.ensure_configured()
        start = await client.start_crawl("https://acme.test")
        self.assertFalse(start.ok)
        self.assertIn("FIRECRAWL_API_KEY", start.error)
        await client.stop()
