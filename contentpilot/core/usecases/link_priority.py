"""Split a site map into links worth scraping and low-value ones (blog, legal...)."""

from __future__ import annotations

from urllib.parse import urlparse

LOW_VALUE_PATTERNS = (
    "/blog",
    "/news",
    "/press",
    "/legal",
    "/privacy",
    "/terms",
    "/careers",
    "/career",
    "/about/team",
    "/login",
    "/signup",
    "/subscribe",
)


def is_low_value(url: str) -> bool:
    try:
        path = urlparse(url).path.lower()
    except ValueError:
        return False
    return any(p in path for p in LOW_VALUE_PATTERNS)


def prioritize_links(links: list[dict]) -> dict:
    high_value = []
    low_value = []
    for link in links:
        (low_value if is_low_value(str(link.get("url") or "")) else high_value).append(link)
    return {"links": links, "high_value": high_value, "low_value": low_value}
