import unittest

from contentpilot.core.usecases.relevance import filter_by_industry, industry_to_keywords, page_url
from contentpilot.infra.crawl.firecrawl import CrawlPage

MATCHING = [
    "https://example.com/automotive/fleet",
    "https://example.com/vehicle-safety",
    "https://example.com/solutions/autonomous",
]
OTHERS = [f"https://example.com/p/{i}" for i in range(7)]


class RelevanceFilterTests(unittest.TestCase):
    def test_keeps_only_pages_whose_url_mentions_the_industry(self):
        pages = [CrawlPage(url=u) for u in OTHERS[:4] + MATCHING + OTHERS[4:]]
        kept = filter_by_industry(pages, "automotive")
        self.assertEqual([p.url for p in kept], MATCHING)

    def test_blank_industry_keeps_everything(self):
        pages = [CrawlPage(url=u) for u in OTHERS]
        self.assertEqual(filter_by_industry(pages, None), pages)
        self.assertEqual(filter_by_industry(pages, "   "), pages)

    def test_additional_industries_widen_the_match(self):
        pages = [CrawlPage(url="https://example.com/healthcare"), CrawlPage(url=MATCHING[0]), CrawlPage(url=OTHERS[0])]
        kept = filter_by_industry(pages, "automotive", ["healthcare"])
        self.assertEqual({p.url for p in kept}, {"https://example.com/healthcare", MATCHING[0]})

    def test_duplicate_urls_and_urlless_pages_are_dropped(self):
        pages = [CrawlPage(url=MATCHING[0]), CrawlPage(url=MATCHING[0].upper()), CrawlPage(url="")]
        kept = filter_by_industry(pages, "automotive")
        self.assertEqual(len(kept), 1)

    def test_unknown_label_is_used_as_a_keyword(self):
        self.assertEqual(industry_to_keywords("Aerospace"), ["aerospace"])
        pages = [CrawlPage(url="https://example.com/aerospace/parts"), CrawlPage(url=OTHERS[0])]
        self.assertEqual(len(filter_by_industry(pages, "Aerospace")), 1)

    def test_other_industry_has_no_keywords(self):
        pages = [CrawlPage(url=u) for u in OTHERS]
        self.assertEqual(filter_by_industry(pages, "other"), pages)

    def test_mapping_pages_fall_back_to_metadata_source_url(self):
        self.assertEqual(page_url({"metadata": {"sourceURL": "https://a.test/x"}}), "https://a.test/x")
        self.assertEqual(page_url({"url": "https://a.test/y"}), "https://a.test/y")
