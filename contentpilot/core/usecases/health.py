"""Knowledge-base completeness summary.

Counts entries by type and extraction confidence, then scores the library on
the sales signals a rep needs (value props, capabilities, proof points...).
Low-confidence extractions are counted but excluded from dimension scores.
"""

from __future__ import annotations

import math
from collections import Counter
from typing import Any, Iterable

DIMENSION_WEIGHTS = {
    "Value Propositions": 0.2,
    "Product Capabilities": 0.2,
    "Customer Proof Points": 0.2,
    "Differentiators": 0.1,
    "Target Personas": 0.1,
    "Case Studies": 0.1,
    "Use Cases": 0.05,
    "Pricing Stance": 0.05,
}

# name -> (extraction key, target, critical threshold)
_LIST_DIMENSIONS = (
    ("Value Propositions", "valuePropositions", 3, 1),
    ("Product Capabilities", "capabilities", 5, 2),
    ("Customer Proof Points", "proofPoints", 3, 1),
    ("Differentiators", "differentiators", 2, 1),
    ("Target Personas", "targetPersonas", 3, 1),
)

_GAP_MESSAGES = {
    "Value Propositions": ("critical", "No value propositions found.", "Scrape the homepage or product overview page."),
    "Product Capabilities": ("critical", "Not enough product capabilities found.", "Scrape the product or features page."),
    "Customer Proof Points": ("critical", "No customer proof points found.", "Add a customers page or a case study."),
    "Case Studies": ("important", "No case studies in the library.", "Crawl the customers or case-studies section."),
    "Pricing Stance": ("nice-to-have", "Pricing stance unknown.", "Scrape the pricing page."),
}


def grade_for(score: int) -> str:
    if score >= 80:
        return "Strong"
    if score >= 60:
        return "Good"
    if score >= 35:
        return "Needs Work"
    return "Incomplete"


def _status(found: int, target: int, critical: int) -> str:
    if found >= target:
        return "complete"
    if found >= critical:
        return "partial"
    return "missing"


def _dimension(name: str, found: int, target: int, critical: int) -> dict:
    return {
        "name": name,
        "score": min(100, int(math.floor(found / target * 100 + 0.5))),
        "found": found,
        "target": target,
        "status": _status(found, target, critical),
    }


def _extraction(entry: dict) -> dict | None:
    content = entry.get("content")
    if not isinstance(content, dict):
        return None
    extraction = content.get("extraction")
    return extraction if isinstance(extraction, dict) else None


def summarize_health(entries: Iterable[dict[str, Any]]) -> dict:
    items = [e for e in entries if e.get("is_active", 1)]

    by_type = Counter(str(e.get("type") or "Unknown") for e in items)
    by_confidence: Counter[str] = Counter()
    pending_review = sum(1 for e in items if not e.get("user_confirmed"))
    confirmed = len(items) - pending_review

    collected: dict[str, int] = {key: 0 for _, key, _, _ in _LIST_DIMENSIONS}
    pricing_known = 0
    low_confidence = 0
    for entry in items:
        extraction = _extraction(entry)
        confidence = str((extraction or {}).get("confidence") or entry.get("confidence_score") or "unknown")
        by_confidence[confidence] += 1
        if extraction is None:
            continue
        if confidence == "low":
            low_confidence += 1
            continue
        for _, key, _, _ in _LIST_DIMENSIONS:
            values = extraction.get(key)
            if isinstance(values, list):
                collected[key] += len(values)
        stance = str(extraction.get("pricingStance") or "").strip().lower()
        if stance and "not mentioned" not in stance:
            pricing_known += 1

    dimensions = [_dimension(name, collected[key], target, critical) for name, key, target, critical in _LIST_DIMENSIONS]
    dimensions.append(_dimension("Case Studies", by_type.get("SuccessStory", 0), 2, 1))
    dimensions.append(_dimension("Use Cases", by_type.get("UseCase", 0), 3, 1))
    dimensions.append(_dimension("Pricing Stance", min(pricing_known, 1), 1, 1))

    overall = int(
        math.floor(sum(d["score"] * DIMENSION_WEIGHTS.get(d["name"], 0.05) for d in dimensions) + 0.5)
    )

    gaps = []
    for d in dimensions:
        if d["status"] != "missing" or d["name"] not in _GAP_MESSAGES:
            continue
        severity, message, action = _GAP_MESSAGES[d["name"]]
        gaps.append({"dimension": d["name"], "severity": severity, "message": message, "suggested_action": action})

    return {
        "total": len(items),
        "by_type": dict(by_type),
        "by_confidence": dict(by_confidence),
        "confirmed_count": confirmed,
        "pending_review_count": pending_review,
        "low_confidence_count": low_confidence,
        "overall_score": overall,
        "grade": grade_for(overall),
        "dimensions": dimensions,
        "gaps": gaps,
    }
