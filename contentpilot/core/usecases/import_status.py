"""Import job status rules.

Statuses only move forward, except that FAILED is reachable from any
non-terminal status.
"""

from __future__ import annotations

PENDING = "PENDING"
DISCOVERING = "DISCOVERING"
SCRAPING = "SCRAPING"
CATEGORIZING = "CATEGORIZING"
REVIEW_PENDING = "REVIEW_PENDING"
APPROVED = "APPROVED"
FAILED = "FAILED"

STATUS_ORDER = {
    PENDING: 0,
    DISCOVERING: 1,
    SCRAPING: 2,
    CATEGORIZING: 3,
    REVIEW_PENDING: 4,
    APPROVED: 5,
    FAILED: 5,
}

RUNNABLE = frozenset({PENDING, DISCOVERING, SCRAPING, CATEGORIZING})
TERMINAL = frozenset({APPROVED, FAILED})

# Error step labels recorded in `errors_json`.
STEP_CONFIG = "config"
STEP_DISCOVER = "discover"
STEP_SCRAPE = "scrape"
STEP_EXECUTE = "execute"
STEP_CANCEL = "cancel"


class InvalidTransitionError(ValueError):
    pass


def is_runnable(status: str | None) -> bool:
    return str(status or "") in RUNNABLE


def can_transition(current: str, target: str) -> bool:
    if current not in STATUS_ORDER or target not in STATUS_ORDER:
        return False
    if current in TERMINAL:
        return current == target
    if target == FAILED:
        return True
    return STATUS_ORDER[target] >= STATUS_ORDER[current]


def sources_for(target: str) -> tuple[str, ...]:
    """All statuses a job may be in for a write that sets `target`."""
    return tuple(s for s in STATUS_ORDER if can_transition(s, target))


def forward_status(current: str, proposed: str) -> str:
    """Return `proposed` if it is not a step backwards, otherwise `current`."""
    if can_transition(current, proposed):
        return proposed
    return current
