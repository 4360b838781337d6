"""Industry relevance filter for crawled pages.

Whole-site crawls over-discover. Pages are kept when their discovery URL
mentions one of the keyword stems for the requested industries.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Sequence

INDUSTRY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "automotive": ("automotive", "vehicle", "drive", "autonomous", "car", "av"),
    "healthcare": ("healthcare", "health", "medical", "clinical", "pharma"),
    "manufacturing": ("manufacturing", "industrial", "factory", "production"),
    "financial_services": ("financial", "finance", "banking", "fintech"),
    "retail": ("retail", "commerce", "ecommerce", "store"),
    "energy": ("energy", "utility", "power", "oil", "gas", "renewable"),
    "technology": ("technology", "tech", "software", "solution", "platform"),
    "other": (),
}

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


def industry_to_keywords(industry: str | None) -> list[str]:
    label = (industry or "").strip().lower()
    if not label:
        return []
    if label in INDUSTRY_KEYWORDS:
        return list(INDUSTRY_KEYWORDS[label])
    derived = _NON_ALNUM_RE.sub(" ", label)
    return [derived] if derived.strip() else []


def keywords_for(industry: str | None, additional_industries: Iterable[str] = ()) -> list[str]:
    keywords = industry_to_keywords(industry)
    for extra in additional_industries or ():
        keywords.extend(industry_to_keywords(extra))
    return keywords


def page_url(page: Any) -> str:
    """Discovery URL of a crawled page (object with `.url` or a mapping)."""
    if isinstance(page, dict):
        url = page.get("url")
        if not url:
            meta = page.get("metadata") or {}
            url = meta.get("sourceURL") or meta.get("sourceUrl")
        return str(url or "")
    return str(getattr(page, "url", "") or "")


def filter_by_industry(
    pages: Sequence[Any],
    industry: str | None,
    additional_industries: Iterable[str] = (),
) -> list[Any]:
    keywords = keywords_for(industry, additional_industries)
    if not keywords:
        return list(pages)

    seen: set[str] = set()
    kept = []
    for page in pages:
        url = page_url(page).lower()
        if not url:
            continue
        if not any(k in url for k in keywords):
            continue
        if url in seen:
            continue
        seen.add(url)
        kept.append(page)
    return kept
