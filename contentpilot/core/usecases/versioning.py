"""Change detection and version bumping for knowledge-base entries."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from contentpilot.core.usecases.content_hash import content_hash

INITIAL_VERSION = "1.0"
_STEP = Decimal("0.1")

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_UNCHANGED = "unchanged"
ACTION_SKIP = "skip"


@dataclass(frozen=True)
class IngestPlan:
    action: str
    content_hash: str
    version: str
    previous_content: Any = None
    bumped: bool = False

    @property
    def writes_content(self) -> bool:
        return self.action in {ACTION_CREATE, ACTION_UPDATE}


def bump_version(version: str | None) -> str:
    """Add exactly 0.1, using decimal arithmetic so "1.9" becomes "2.0"."""
    try:
        current = Decimal(str(version or "").strip())
    except InvalidOperation:
        current = Decimal(INITIAL_VERSION)
    if not current.is_finite() or current < 0:
        current = Decimal(INITIAL_VERSION)
    bumped = current + _STEP
    if bumped.as_tuple().exponent > -1:
        bumped = bumped.quantize(_STEP)
    return str(bumped)


def plan_ingest(existing: dict | None, new_content: Any) -> IngestPlan:
    """Decide what a re-ingestion of `new_content` does to `existing`.

    `existing` is a stored entry as returned by the content library repository
    (decoded `content`, `content_hash`, `version`, `user_confirmed`), or None.
    """
    new_hash = content_hash(new_content)
    if not existing:
        return IngestPlan(action=ACTION_CREATE, content_hash=new_hash, version=INITIAL_VERSION)

    version = str(existing.get("version") or INITIAL_VERSION)
    old_hash = existing.get("content_hash") or None

    if bool(existing.get("user_confirmed")):
        return IngestPlan(action=ACTION_SKIP, content_hash=old_hash or "", version=version)

    if old_hash == new_hash:
        return IngestPlan(action=ACTION_UNCHANGED, content_hash=new_hash, version=version)

    if old_hash is None:
        # First hash for a legacy entry; nothing to diff against.
        return IngestPlan(action=ACTION_UPDATE, content_hash=new_hash, version=version)

    return IngestPlan(
        action=ACTION_UPDATE,
        content_hash=new_hash,
        version=bump_version(version),
        previous_content=existing.get("content"),
        bumped=True,
    )
