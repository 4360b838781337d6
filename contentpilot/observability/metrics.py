"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

IMPORTS_FINISHED_TOTAL = Counter(
    "contentpilot_imports_finished_total",
    "Site imports that reached a resting status",
    ["status"],
)
CRAWL_POLLS_TOTAL = Counter(
    "contentpilot_crawl_polls_total",
    "Crawl status polls grouped by reported crawl status",
    ["status"],
)
CLASSIFY_LATENCY_SEC = Histogram(
    "contentpilot_classify_latency_seconds",
    "Page classification latency in seconds",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)
BATCH_PAGES_TOTAL = Counter(
    "contentpilot_batch_pages_total",
    "Batch scrape outcomes per URL",
    ["status"],
)
KB_INGEST_TOTAL = Counter(
    "contentpilot_kb_ingest_total",
    "Knowledge-base ingest actions",
    ["action"],
)
SCHEDULED_REFRESH_TOTAL = Counter(
    "contentpilot_scheduled_refresh_total",
    "Scheduled knowledge-base refreshes grouped by outcome",
    ["status"],
)
