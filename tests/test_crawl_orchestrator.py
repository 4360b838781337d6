import dataclasses

from fakes import DbTestCase, FakeChatProvider, FakeClock, FakeCrawlClient, page

from contentpilot.config import get_settings
from contentpilot.core.usecases import import_status as st
from contentpilot.core.usecases.classification import ContentClassifier
from contentpilot.infra.crawl.firecrawl import CrawlStart, CrawlStatus
from contentpilot.infra.repos import content_library as kb_repo
from contentpilot.infra.repos import imports as imports_repo
from contentpilot.infra.repos.import_events import list_events
from contentpilot.pipeline.site_import import (
    CANCELLED_MESSAGE,
    NO_PAGES_MESSAGE,
    NOT_CONFIGURED_MESSAGE,
    CrawlOrchestrator,
    cancel_import,
    review_import,
)

MATCHING = [
    "https://example.com/automotive/fleet",
    "https://example.com/vehicle-safety",
    "https://example.com/solutions/autonomous",
]
SITE = [f"https://example.com/p/{i}" for i in range(4)] + MATCHING + [f"https://example.com/p/{i}" for i in range(4, 7)]


class CrawlOrchestratorTests(DbTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.settings = dataclasses.replace(
            get_settings(),
            crawl_poll_interval_sec=5.0,
            crawl_timeout_sec=300.0,
            import_max_categorize=30,
            import_classify_delay_sec=0.0,
            import_auto_confirm=False,
        )
        self.clock = FakeClock()
        self.chat = FakeChatProvider()
        self.classifier = ContentClassifier(self.chat)
        self.job = await imports_repo.create_import(
            owner_id="org-1", source_url="https://example.com", industry="automotive"
        )

    def _orchestrator(self, crawl, **kwargs):
        return CrawlOrchestrator(
            self.job["id"],
            crawl_client=crawl,
            classifier=self.classifier,
            settings=kwargs.pop("settings", self.settings),
            clock=self.clock,
            **kwargs,
        )

    async def _event_types(self):
        return [e["type"] for e in await list_events(import_id=self.job["id"])]

    async def test_filters_to_industry_pages_and_waits_for_review(self):
        crawl = FakeCrawlClient(
            statuses=[
                CrawlStatus(ok=True, status="scraping", total=10, completed=0),
                CrawlStatus(ok=True, status="completed", total=10, completed=10, pages=[page(u) for u in SITE]),
            ]
        )
        result = await self._orchestrator(crawl).run()

        self.assertTrue(result.ok)
        self.assertEqual(result.status, st.REVIEW_PENDING)
        self.assertEqual(result.total_pages, 10)
        self.assertEqual(result.categorized_count, 3)
        self.assertEqual(result.created_count, 3)
        self.assertEqual(self.clock.sleeps, [5.0])

        job = await imports_repo.get_import(self.job["id"])
        self.assertEqual(job["status"], st.REVIEW_PENDING)
        self.assertEqual(job["total_pages"], 10)
        self.assertEqual(job["scraped_pages"], 10)
        self.assertEqual(job["categorized_pages"], 3)
        self.assertEqual(len(job["discovered_urls"]), 10)
        self.assertEqual([i["url"] for i in job["categorized_content"]["items"]], MATCHING)
        self.assertEqual(job["crawl_id"], "crawl-1")
        self.assertIsNone(job["runner_id"])
        self.assertEqual([c["url"] for c in self.chat.calls], MATCHING)

        entries = await kb_repo.list_entries("org-1")
        self.assertEqual(len(entries), 3)
        self.assertTrue(all(not e["user_confirmed"] for e in entries))

        types = await self._event_types()
        self.assertEqual(types[:3], ["import_started", "crawl_started", "crawl_progress"])
        self.assertEqual(types.count("page_categorized"), 3)
        self.assertEqual(types[-1], "import_finished")

    async def test_no_industry_match_falls_back_to_all_pages(self):
        other = [f"https://example.com/p/{i}" for i in range(3)]
        crawl = FakeCrawlClient(statuses=[CrawlStatus(ok=True, status="completed", pages=[page(u) for u in other])])
        result = await self._orchestrator(crawl).run()
        self.assertEqual(result.categorized_count, 3)

    async def test_categorize_cap(self):
        settings = dataclasses.replace(self.settings, import_max_categorize=2)
        crawl = FakeCrawlClient(statuses=[CrawlStatus(ok=True, status="completed", pages=[page(u) for u in SITE])])
        result = await self._orchestrator(crawl, settings=settings).run()
        self.assertEqual(result.categorized_count, 2)
        self.assertEqual(result.total_pages, 10)

    async def test_completed_crawl_without_pages_fails_at_scrape(self):
        crawl = FakeCrawlClient(statuses=[CrawlStatus(ok=True, status="completed", total=0, completed=0)])
        result = await self._orchestrator(crawl).run()

        self.assertFalse(result.ok)
        self.assertEqual(result.error, NO_PAGES_MESSAGE)
        job = await imports_repo.get_import(self.job["id"])
        self.assertEqual(job["status"], st.FAILED)
        self.assertEqual(job["errors"], {"step": "scrape", "error": NO_PAGES_MESSAGE})
        self.assertEqual(job["total_pages"], 0)
        self.assertEqual(job["discovered_urls"], [])
        self.assertEqual(job["categorized_content"], {"items": []})

    async def test_crawl_deadline_fails_with_no_pages(self):
        settings = dataclasses.replace(self.settings, crawl_timeout_sec=12.0)
        crawl = FakeCrawlClient(
            statuses=[
                CrawlStatus(ok=True, status="scraping", total=5, completed=2),
                CrawlStatus(ok=True, status="scraping"),
            ]
        )
        result = await self._orchestrator(crawl, settings=settings).run()

        self.assertEqual(result.error, NO_PAGES_MESSAGE)
        self.assertEqual(self.clock.sleeps, [5.0, 5.0, 5.0])
        self.assertEqual(sum(1 for c in crawl.calls if c[0] == "get_crawl_status"), 3)
        job = await imports_repo.get_import(self.job["id"])
        self.assertEqual(job["status"], st.FAILED)
        self.assertEqual(job["errors"]["step"], "scrape")
        self.assertEqual((job["total_pages"], job["scraped_pages"], job["categorized_pages"]), (0, 0, 0))

    async def test_completed_crawl_reporting_a_total_but_no_data_resets_counters(self):
        crawl = FakeCrawlClient(statuses=[CrawlStatus(ok=True, status="completed", total=5, completed=5)])
        result = await self._orchestrator(crawl).run()

        self.assertEqual(result.error, NO_PAGES_MESSAGE)
        job = await imports_repo.get_import(self.job["id"])
        self.assertEqual(job["status"], st.FAILED)
        self.assertEqual((job["total_pages"], job["scraped_pages"]), (0, 0))

    async def test_crawl_start_failure_fails_at_discover(self):
        crawl = FakeCrawlClient(start=CrawlStart(ok=False, error="Invalid URL"))
        result = await self._orchestrator(crawl).run()
        job = await imports_repo.get_import(self.job["id"])
        self.assertFalse(result.ok)
        self.assertEqual(job["status"], st.FAILED)
        self.assertEqual(job["errors"], {"step": "discover", "error": "Invalid URL"})

    async def test_failed_crawl_status_fails_at_scrape(self):
        crawl = FakeCrawlClient(statuses=[CrawlStatus(ok=True, status="failed")])
        await self._orchestrator(crawl).run()
        job = await imports_repo.get_import(self.job["id"])
        self.assertEqual(job["errors"]["step"], "scrape")

    async def test_missing_credentials_fail_at_config(self):
        crawl = FakeCrawlClient(configured=False)
        result = await self._orchestrator(crawl).run()
        job = await imports_repo.get_import(self.job["id"])
        self.assertEqual(result.error, NOT_CONFIGURED_MESSAGE)
        self.assertEqual(job["errors"], {"step": "config", "error": NOT_CONFIGURED_MESSAGE})
        self.assertEqual(crawl.calls, [])

    async def test_classifier_failure_uses_url_fallback(self):
        url = "https://example.com/automotive/case-studies/acme"
        self.chat.failing.add(url)
        crawl = FakeCrawlClient(statuses=[CrawlStatus(ok=True, status="completed", pages=[page(url)])])
        result = await self._orchestrator(crawl).run()

        self.assertTrue(result.ok)
        job = await imports_repo.get_import(self.job["id"])
        item = job["categorized_content"]["items"][0]
        self.assertEqual(item["suggestedType"], "CaseStudy")
        self.assertEqual(item["title"], "example.com/automotive/case-studies/acme")

    async def test_cancel_between_steps(self):
        crawl = FakeCrawlClient(statuses=[CrawlStatus(ok=True, status="scraping")])
        orch = self._orchestrator(crawl)
        await orch.step()  # guard
        await orch.step()  # discover
        await cancel_import(self.job["id"], owner_id="org-1")

        result = await orch.run()
        self.assertEqual(result.error, CANCELLED_MESSAGE)
        job = await imports_repo.get_import(self.job["id"])
        self.assertEqual(job["status"], st.FAILED)
        self.assertEqual(job["errors"]["step"], "cancel")
        self.assertFalse(any(c[0] == "get_crawl_status" for c in crawl.calls))

    async def test_cancel_of_unclaimed_pending_job_fails_it_directly(self):
        job = await cancel_import(self.job["id"])
        self.assertEqual(job["status"], st.FAILED)
        self.assertTrue(job["cancel_requested"])

    async def test_second_runner_is_a_noop(self):
        claimed = await imports_repo.claim_import(self.job["id"], runner_id="someone-else", lease_seconds=60)
        self.assertTrue(claimed)

        crawl = FakeCrawlClient()
        result = await self._orchestrator(crawl).run()
        self.assertTrue(result.noop)
        self.assertEqual(result.error, "Import is already being executed")
        self.assertEqual(crawl.calls, [])
        job = await imports_repo.get_import(self.job["id"])
        self.assertEqual(job["status"], st.PENDING)
        self.assertEqual(job["runner_id"], "someone-else")

    async def test_terminal_job_is_not_rerun(self):
        await imports_repo.update_import(self.job["id"], status=st.FAILED, errors={"step": "x", "error": "y"})
        result = await self._orchestrator(FakeCrawlClient()).run()
        self.assertTrue(result.noop)
        self.assertEqual(result.status, st.FAILED)

    async def test_resume_keeps_crawl_and_classified_items(self):
        done = {"url": MATCHING[0], "title": "Fleet", "description": "", "suggestedType": "Product"}
        await imports_repo.update_import(
            self.job["id"],
            status=st.CATEGORIZING,
            crawl_id="crawl-old",
            categorized_pages=1,
            categorized_content={"items": [done]},
        )
        crawl = FakeCrawlClient(statuses=[CrawlStatus(ok=True, status="completed", pages=[page(u) for u in SITE])])
        result = await self._orchestrator(crawl).run()

        self.assertTrue(result.ok)
        self.assertEqual(result.categorized_count, 3)
        self.assertNotIn("start_crawl", [c[0] for c in crawl.calls])
        self.assertIn(("get_crawl_status", "crawl-old"), crawl.calls)
        self.assertEqual([c["url"] for c in self.chat.calls], MATCHING[1:])

    async def test_auto_confirm_approves_and_confirms_entries(self):
        settings = dataclasses.replace(self.settings, import_auto_confirm=True)
        crawl = FakeCrawlClient(statuses=[CrawlStatus(ok=True, status="completed", pages=[page(u) for u in MATCHING])])
        result = await self._orchestrator(crawl, settings=settings).run()

        self.assertEqual(result.status, st.APPROVED)
        job = await imports_repo.get_import(self.job["id"])
        self.assertIsNotNone(job["reviewed_at"])
        entries = await kb_repo.list_entries("org-1")
        self.assertTrue(all(e["user_confirmed"] for e in entries))

    async def test_existing_entries_are_not_duplicated(self):
        first = await kb_repo.create_entry(
            owner_id="org-1",
            title="Existing",
            content_type="ResourceLink",
            content={"markdown": "x"},
            content_hash="h",
            source_url=MATCHING[0],
        )
        crawl = FakeCrawlClient(statuses=[CrawlStatus(ok=True, status="completed", pages=[page(u) for u in MATCHING])])
        result = await self._orchestrator(crawl).run()

        self.assertEqual(result.created_count, 2)
        job = await imports_repo.get_import(self.job["id"])
        self.assertEqual(job["approved_count"], 2)
        self.assertEqual(job["rejected_count"], 1)
        kept = await kb_repo.get_entry(first["id"])
        self.assertEqual(kept["title"], "Existing")


class ReviewImportTests(DbTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.job = await imports_repo.create_import(owner_id="org-1", source_url="https://example.com", industry="automotive")
        crawl = FakeCrawlClient(statuses=[CrawlStatus(ok=True, status="completed", pages=[page(u) for u in MATCHING])])
        settings = dataclasses.replace(get_settings(), import_auto_confirm=False, import_classify_delay_sec=0.0)
        await CrawlOrchestrator(
            self.job["id"], crawl_client=crawl, classifier=ContentClassifier(FakeChatProvider()), settings=settings,
            clock=FakeClock(),
        ).run()

    async def test_review_confirms_approved_and_archives_rejected(self):
        job = await review_import(self.job["id"], owner_id="org-1", reject_urls=[MATCHING[2]])

        self.assertEqual(job["status"], st.APPROVED)
        self.assertEqual(job["approved_count"], 2)
        self.assertEqual(job["rejected_count"], 1)
        active = {e["source_url"]: e for e in await kb_repo.list_entries("org-1")}
        self.assertEqual(set(active), set(MATCHING[:2]))
        self.assertTrue(all(e["user_confirmed"] for e in active.values()))

    async def test_review_requires_review_pending(self):
        await review_import(self.job["id"])
        with self.assertRaises(st.InvalidTransitionError):
            await review_import(self.job["id"])
