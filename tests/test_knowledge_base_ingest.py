import asyncio
from unittest import mock

import aiosqlite

from fakes import DbTestCase, FakeCrawlClient

from contentpilot.core.usecases import versioning
from contentpilot.core.usecases.classification import CategorizedItem
from contentpilot.core.usecases.content_hash import content_hash
from contentpilot.infra.crawl.firecrawl import ScrapeResult
from contentpilot.infra.repos import content_library as kb_repo
from contentpilot.pipeline.knowledge_base import ACTION_EXISTS, ingest_content, materialize_item, refresh_entry

URL = "https://acme.test/product/fleet"


async def _ingest(content, *, owner_id="org-1", confirmed=False):
    return await ingest_content(
        owner_id=owner_id,
        source_url=URL,
        content=content,
        title="Fleet",
        content_type="FeatureRelease",
        confidence="high",
        user_confirmed=confirmed,
    )


class KnowledgeBaseIngestTests(DbTestCase):
    async def test_create_then_unchanged_then_update(self):
        first = await _ingest({"markdown": "Fleet   tracking"})
        self.assertEqual(first.action, "create")
        self.assertEqual(first.version, "1.0")

        again = await _ingest({"markdown": "Fleet tracking"})
        self.assertEqual(again.action, "unchanged")
        self.assertEqual(again.entry_id, first.entry_id)

        changed = await _ingest({"markdown": "Fleet tracking and alerts"})
        self.assertEqual(changed.action, "update")
        self.assertEqual(changed.version, "1.1")

        entry = await kb_repo.get_entry(first.entry_id)
        self.assertEqual(entry["version"], "1.1")
        self.assertEqual(entry["previous_content"], {"markdown": "Fleet   tracking"})
        self.assertEqual(entry["content_hash"], content_hash("Fleet tracking and alerts"))
        self.assertFalse(entry["user_confirmed"])

    async def test_confirmed_entry_keeps_curated_content(self):
        first = await _ingest({"markdown": "curated copy"})
        await kb_repo.set_user_confirmed(first.entry_id, True)

        outcome = await _ingest({"markdown": "fresh scrape"})
        self.assertEqual(outcome.action, "skip")
        entry = await kb_repo.get_entry(first.entry_id)
        self.assertEqual(entry["content"], {"markdown": "curated copy"})
        self.assertEqual(entry["version"], "1.0")
        self.assertIsNotNone(entry["scraped_at"])

    async def test_archived_entry_does_not_block_a_new_one(self):
        first = await _ingest({"markdown": "v1"})
        await kb_repo.archive_entry(first.entry_id)
        second = await _ingest({"markdown": "v1"})
        self.assertEqual(second.action, "create")
        self.assertNotEqual(second.entry_id, first.entry_id)
        self.assertEqual(await kb_repo.count_entries("org-1"), 1)
        self.assertEqual(await kb_repo.count_entries("org-1", active_only=False), 2)

    async def test_owners_are_isolated(self):
        a = await _ingest({"markdown": "same"}, owner_id="org-a")
        b = await _ingest({"markdown": "same"}, owner_id="org-b")
        self.assertEqual((a.action, b.action), ("create", "create"))

    async def test_concurrent_ingest_of_one_url_creates_one_entry(self):
        outcomes = await asyncio.gather(_ingest({"markdown": "same"}), _ingest({"markdown": "same"}))
        self.assertEqual(sorted(o.action for o in outcomes), ["create", "unchanged"])
        self.assertEqual(await kb_repo.count_entries("org-1"), 1)

    async def test_unique_index_rejects_second_active_row(self):
        await _ingest({"markdown": "x"})
        with self.assertRaises(aiosqlite.IntegrityError):
            await kb_repo.create_entry(
                owner_id="org-1",
                title="dup",
                content_type="ResourceLink",
                content={"markdown": "x"},
                content_hash=content_hash("x"),
                source_url=URL,
            )

    async def test_update_is_compare_and_swap_on_hash(self):
        first = await _ingest({"markdown": "a"})
        applied = await kb_repo.update_entry(
            first.entry_id, expected_hash="not-the-hash", content={"markdown": "b"}, content_hash=content_hash("b")
        )
        self.assertFalse(applied)
        entry = await kb_repo.get_entry(first.entry_id)
        self.assertEqual(entry["content"], {"markdown": "a"})

    async def test_update_plan_without_a_stored_entry_is_replanned(self):
        real_plan = versioning.plan_ingest
        calls = []

        def stale_first_plan(existing, content):
            calls.append(existing)
            if len(calls) == 1:
                return versioning.IngestPlan(action=versioning.ACTION_UPDATE, content_hash="stale", version="1.3")
            return real_plan(existing, content)

        with mock.patch.object(versioning, "plan_ingest", side_effect=stale_first_plan):
            outcome = await _ingest({"markdown": "fresh"})

        self.assertEqual(outcome.action, "create")
        self.assertEqual(outcome.version, "1.0")
        self.assertEqual(calls, [None, None])
        self.assertEqual(await kb_repo.count_entries("org-1"), 1)


class MaterializeAndRefreshTests(DbTestCase):
    async def test_materialize_creates_once_per_url(self):
        item = CategorizedItem(url=URL, title="Fleet", description="Fleet tools", suggestedType="CaseStudy")
        created = await materialize_item(owner_id="org-1", item=item, user_confirmed=False)
        self.assertTrue(created.created)
        entry = await kb_repo.get_entry(created.entry_id)
        self.assertEqual(entry["type"], "SuccessStory")
        self.assertEqual(entry["confidence_score"], "medium")
        self.assertEqual(entry["content"], {"description": "Fleet tools", "suggestedType": "CaseStudy"})

        again = await materialize_item(owner_id="org-1", item=item, user_confirmed=True)
        self.assertEqual(again.action, ACTION_EXISTS)
        self.assertEqual(again.entry_id, created.entry_id)

    async def test_refresh_bumps_version_when_page_changed(self):
        first = await _ingest({"markdown": "old page", "description": "Fleet"})
        crawl = FakeCrawlClient(scrapes={URL: ScrapeResult(ok=True, markdown="new page")})

        result = await refresh_entry(entry_id=first.entry_id, owner_id="org-1", crawl_client=crawl)
        self.assertTrue(result["ok"])
        self.assertEqual(result["action"], "update")
        self.assertEqual(result["version"], "1.1")
        entry = await kb_repo.get_entry(first.entry_id)
        self.assertEqual(entry["content"]["markdown"], "new page")
        self.assertEqual(entry["content"]["description"], "Fleet")

    async def test_refresh_reports_scrape_failure(self):
        first = await _ingest({"markdown": "old page"})
        crawl = FakeCrawlClient(scrapes={URL: ScrapeResult(ok=False, error="blocked")})
        result = await refresh_entry(entry_id=first.entry_id, owner_id="org-1", crawl_client=crawl)
        self.assertEqual(result, {"ok": False, "error": "blocked"})

    async def test_refresh_unknown_entry(self):
        result = await refresh_entry(entry_id="kb_missing", owner_id="org-1", crawl_client=FakeCrawlClient())
        self.assertFalse(result["ok"])
