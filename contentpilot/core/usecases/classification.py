"""Page classification on top of an injected chat model.

The model is treated as unreliable: anything that does not parse into the
expected JSON shape degrades to a deterministic classification derived
from the URL.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict

TITLE_MAX = 300
DESCRIPTION_MAX = 500
MARKDOWN_STORE_MAX = 100_000

PAGE_TYPES = ("Product", "CaseStudy", "Event", "SolutionPage", "Playbook", "Pricing", "Other")
GENERIC_TYPE = "Other"
CONFIDENCE_LEVELS = ("high", "medium", "low")

# Path-segment prefixes, checked in priority order.
_URL_HINTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("case-stud", "case_stud", "customer", "success-stor", "client-stor"), "CaseStudy"),
    (("pricing", "plans", "tiers"), "Pricing"),
    (("event", "webinar", "conference"), "Event"),
    (("solution", "use-case", "use_case", "industries"), "SolutionPage"),
    (("playbook", "framework", "guide"), "Playbook"),
    (("product", "platform", "feature"), "Product"),
)

_TYPE_ALIASES = {
    "industryplaybook": "Playbook",
    "playbook": "Playbook",
    "casestudy": "CaseStudy",
    "case_study": "CaseStudy",
    "successstory": "CaseStudy",
    "solution": "SolutionPage",
    "solutionpage": "SolutionPage",
    "use_case": "SolutionPage",
    "usecase": "SolutionPage",
    "product": "Product",
    "event": "Event",
    "webinar": "Event",
    "pricing": "Pricing",
    "other": "Other",
}

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)

CLASSIFY_SYSTEM_PROMPT = """You are a content classifier. Given a web page URL and excerpt, output exactly:
- title: short page title (from content or URL)
- description: one-line description (max 200 chars)
- suggestedType: one of Product, CaseStudy, Event, SolutionPage, Playbook, Pricing, Other
- industry: optional industry tag if evident
- department: optional department/segment if evident
Output valid JSON only, no markdown."""

ENRICH_SYSTEM_PROMPT = """You are a B2B sales intelligence analyst extracting structured signal from a company web page.
Only extract what is actually on the page. Be specific and concise; one sentence or phrase per item.
Output valid JSON only, no markdown, with these keys:
- title: short page title
- description: one-line description (max 200 chars)
- suggestedType: one of Product, CaseStudy, Event, SolutionPage, Playbook, Pricing, Other
- industry, department: optional tags if evident
- confidence: high, medium or low (low = nav page, error page or thin content)
- keyMessages: 3-5 things a prospect should take away
- valuePropositions: max 5
- capabilities: concrete product capabilities, max 10
- proofPoints: customer names, quantified results, awards, max 8
- differentiators: max 5
- targetPersonas: job titles or teams the page is written for, max 6
- pricingStance: one sentence on what is said about pricing
- missingSignals: what you expected on this page type but did not find, max 4"""

_LIST_FIELDS = (
    "keyMessages",
    "valuePropositions",
    "capabilities",
    "proofPoints",
    "differentiators",
    "targetPersonas",
    "missingSignals",
)


class ChatModel(Protocol):
    async def chat_completion(self, *, messages: list[dict], **kwargs: Any) -> str: ...


class CategorizedItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    title: str
    description: str = ""
    suggestedType: str = GENERIC_TYPE
    industry: str | None = None
    department: str | None = None

    def as_payload(self) -> dict:
        return self.model_dump(exclude_none=True)


@dataclass(frozen=True)
class EnrichedPage:
    item: CategorizedItem
    confidence: str
    content_type: str
    payload: dict
    extraction: dict = field(default_factory=dict)

    @property
    def low_signal(self) -> bool:
        return self.confidence == "low" and self.item.suggestedType == GENERIC_TYPE


def infer_type_hint(url: str) -> str | None:
    """Guess a page type from URL path segments, e.g. /case-studies/ -> CaseStudy."""
    try:
        path = urlparse(url or "").path.lower()
    except ValueError:
        return None
    segments = [s for s in path.split("/") if s]
    for prefixes, page_type in _URL_HINTS:
        if any(seg.startswith(prefixes) for seg in segments):
            return page_type
    return None


def normalize_page_type(value: Any) -> str:
    raw = str(value or "").strip()
    if raw in PAGE_TYPES:
        return raw
    key = re.sub(r"[\s\-]", "", raw).lower()
    return _TYPE_ALIASES.get(key, GENERIC_TYPE)


def resolve_page_type(model_type: Any, hint: str | None) -> str:
    page_type = normalize_page_type(model_type)
    if page_type == GENERIC_TYPE and hint:
        return hint
    return page_type


def suggested_type_to_content_type(suggested_type: str | None) -> str:
    """Map a page type to the knowledge-base content type."""
    t = str(suggested_type or "").lower()
    if "case" in t or "success" in t:
        return "SuccessStory"
    if "event" in t or "webinar" in t:
        return "CompanyEvent"
    if "product" in t:
        return "FeatureRelease"
    if "solution" in t or "use case" in t or "usecase" in t:
        return "UseCase"
    if "playbook" in t or "framework" in t:
        return "Framework"
    return "ResourceLink"


def title_from_url(url: str) -> str:
    return _SCHEME_RE.sub("", url or "")[:TITLE_MAX]


def fallback_item(url: str, hint: str | None = None) -> CategorizedItem:
    return CategorizedItem(url=url, title=title_from_url(url), description="", suggestedType=hint or GENERIC_TYPE)


def _parse_json_object(text: str) -> dict | None:
    cleaned = _FENCE_RE.sub("", (text or "").strip())
    try:
        parsed = json.loads(cleaned)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _item_from_parsed(url: str, parsed: dict, hint: str | None) -> CategorizedItem:
    title = _optional_str(parsed.get("title")) or title_from_url(url)
    return CategorizedItem(
        url=url,
        title=title[:TITLE_MAX],
        description=str(parsed.get("description") or "")[:DESCRIPTION_MAX],
        suggestedType=resolve_page_type(parsed.get("suggestedType"), hint),
        industry=_optional_str(parsed.get("industry")),
        department=_optional_str(parsed.get("department")),
    )


def parse_classification(url: str, raw: str, hint: str | None = None) -> CategorizedItem:
    parsed = _parse_json_object(raw)
    if parsed is None:
        return fallback_item(url, hint)
    return _item_from_parsed(url, parsed, hint)


def _string_list(value: Any, limit: int = 10) -> list[str]:
    if not isinstance(value, list):
        return []
    out = [str(v).strip() for v in value if str(v or "").strip()]
    return out[:limit]


def parse_enrichment(url: str, raw: str, markdown: str, hint: str | None = None) -> EnrichedPage:
    parsed = _parse_json_object(raw)
    if parsed is None:
        item = fallback_item(url, hint)
        confidence = "low"
        extraction: dict = {}
    else:
        item = _item_from_parsed(url, parsed, hint)
        confidence = str(parsed.get("confidence") or "").strip().lower()
        if confidence not in CONFIDENCE_LEVELS:
            confidence = "medium"
        extraction = {name: _string_list(parsed.get(name)) for name in _LIST_FIELDS}
        extraction["pricingStance"] = str(parsed.get("pricingStance") or "")
    extraction["confidence"] = confidence
    extraction["pageType"] = item.suggestedType

    description = item.description or (extraction.get("keyMessages") or [""])[0]
    content_type = suggested_type_to_content_type(item.suggestedType)
    payload = {
        "markdown": (markdown or "")[:MARKDOWN_STORE_MAX],
        "description": description,
        "suggestedType": item.suggestedType,
        "extraction": extraction,
    }
    return EnrichedPage(
        item=item,
        confidence=confidence,
        content_type=content_type,
        payload=payload,
        extraction=extraction,
    )


class ContentClassifier:
    def __init__(self, provider: ChatModel, *, model: str | None = None, excerpt_chars: int = 8000):
        self.provider = provider
        self.model = model
        self.excerpt_chars = max(1, int(excerpt_chars))

    def _prompt(self, url: str, text: str, hint: str | None) -> str:
        excerpt = (text or "")[: self.excerpt_chars]
        hint_line = f"URL suggests this is a: {hint}\n" if hint else ""
        return f"URL: {url}\n{hint_line}\nExcerpt:\n{excerpt}\n\nOutput JSON:"

    async def classify(self, url: str, text: str) -> CategorizedItem:
        """Classify one page. Raises the provider's error on transport failure."""
        hint = infer_type_hint(url)
        raw = await self.provider.chat_completion(
            messages=[
                {"role": "system", "content": CLASSIFY_SYSTEM_PROMPT},
                {"role": "user", "content": self._prompt(url, text, hint)},
            ],
            model=self.model,
            max_tokens=500,
            operation="classify",
        )
        return parse_classification(url, raw, hint)

    async def enrich(self, url: str, markdown: str) -> EnrichedPage:
        hint = infer_type_hint(url)
        raw = await self.provider.chat_completion(
            messages=[
                {"role": "system", "content": ENRICH_SYSTEM_PROMPT},
                {"role": "user", "content": self._prompt(url, markdown, hint)},
            ],
            model=self.model,
            max_tokens=1500,
            operation="enrich",
        )
        return parse_enrichment(url, raw, markdown, hint)
