"""Deterministic content fingerprints for change detection."""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any

_WHITESPACE_RE = re.compile(r"\s+")


def _canonical_json(value: Any) -> str:
    # sort_keys applies recursively, so nested key order never matters.
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def content_to_text(content: Any) -> str:
    """Pick the text that represents `content` for hashing.

    Strings are used as-is. Mappings prefer their `markdown` field, then
    `fullText`, then a key-sorted JSON rendering. Lists are rendered the
    same way. `None` becomes "".
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        markdown = content.get("markdown")
        if isinstance(markdown, str):
            return markdown
        full_text = content.get("fullText")
        if isinstance(full_text, str):
            return full_text
        return _canonical_json(content)
    if isinstance(content, (list, tuple)):
        return _canonical_json(content)
    return str(content)


def normalize_text(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def content_hash(content: Any) -> str:
    normalized = normalize_text(content_to_text(content))
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()
