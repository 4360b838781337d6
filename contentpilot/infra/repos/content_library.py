"""Knowledge-base entries repository (SQLite).

Entries are keyed logically by (owner_id, source_url). They are never
deleted; `archive_entry` soft-retires them.
"""

from __future__ import annotations

from typing import Any

from contentpilot.infra.db.sqlite import get_db
from contentpilot.infra.repos._common import changes, json_dumps, new_id, row_to_dict, utcnow_iso

_JSON_FIELDS = {
    "content_json": ("content", {}),
    "previous_content_json": ("previous_content", None),
}
_BOOL_FIELDS = ("user_confirmed", "is_active")

_NOT_SET = object()


def _entry_row(row) -> dict[str, Any]:
    return row_to_dict(row, json_fields=_JSON_FIELDS, bool_fields=_BOOL_FIELDS)


async def find_by_source_url(owner_id: str, url: str, *, active_only: bool = False) -> dict | None:
    sql = "SELECT * FROM content_library WHERE owner_id = ? AND source_url = ?"
    if active_only:
        sql += " AND is_active = 1"
    # Oldest row wins if a legacy duplicate exists.
    sql += " ORDER BY created_at ASC LIMIT 1"
    db = await get_db()
    try:
        cur = await db.execute(sql, (owner_id, url))
        row = await cur.fetchone()
        return _entry_row(row) if row else None
    finally:
        await db.close()


async def create_entry(
    *,
    owner_id: str,
    title: str,
    content_type: str,
    content: dict,
    content_hash: str,
    source_url: str | None = None,
    product_id: str | None = None,
    industry: str | None = None,
    department: str | None = None,
    user_confirmed: bool = False,
    confidence_score: str | None = None,
    version: str = "1.0",
) -> dict:
    entry_id = new_id("kb")
    now = utcnow_iso()
    db = await get_db()
    try:
        await db.execute(
            "INSERT INTO content_library("
            "id, owner_id, product_id, title, type, content_json, content_hash, version, industry, department, "
            "source_url, user_confirmed, confidence_score, is_active, scraped_at, created_at, updated_at"
            ") VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)",
            (
                entry_id,
                owner_id,
                product_id,
                (title or "")[:500],
                content_type,
                json_dumps(content),
                content_hash,
                version,
                industry,
                department,
                source_url,
                1 if user_confirmed else 0,
                confidence_score,
                now,
                now,
                now,
            ),
        )
        await db.commit()
    finally:
        await db.close()
    return await get_entry(entry_id)


async def get_entry(entry_id: str, *, owner_id: str | None = None) -> dict | None:
    db = await get_db()
    try:
        if owner_id is None:
            cur = await db.execute("SELECT * FROM content_library WHERE id = ? LIMIT 1", (entry_id,))
        else:
            cur = await db.execute(
                "SELECT * FROM content_library WHERE id = ? AND owner_id = ? LIMIT 1", (entry_id, owner_id)
            )
        row = await cur.fetchone()
        return _entry_row(row) if row else None
    finally:
        await db.close()


async def update_entry(
    entry_id: str,
    *,
    expected_hash: Any = _NOT_SET,
    title: str | None = None,
    content_type: str | None = None,
    content: dict | None = None,
    content_hash: str | None = None,
    version: str | None = None,
    previous_content: dict | None = None,
    confidence_score: str | None = None,
    touch_scraped_at: bool = False,
) -> bool:
    """Partial update. With `expected_hash`, only applies if the stored hash still matches."""
    now = utcnow_iso()
    sets = ["updated_at = ?"]
    params: list[Any] = [now]
    for column, value in (
        ("title", title[:500] if title is not None else None),
        ("type", content_type),
        ("content_hash", content_hash),
        ("version", version),
        ("confidence_score", confidence_score),
    ):
        if value is not None:
            sets.append(f"{column} = ?")
            params.append(value)
    if content is not None:
        sets.append("content_json = ?")
        params.append(json_dumps(content))
    if previous_content is not None:
        sets.append("previous_content_json = ?")
        params.append(json_dumps(previous_content))
    if touch_scraped_at:
        sets.append("scraped_at = ?")
        params.append(now)

    where = "id = ?"
    params.append(entry_id)
    if expected_hash is not _NOT_SET:
        where += " AND content_hash IS ?"
        params.append(expected_hash)

    db = await get_db()
    try:
        await db.execute(f"UPDATE content_library SET {', '.join(sets)} WHERE {where}", tuple(params))
        n = await changes(db)
        await db.commit()
        return n == 1
    finally:
        await db.close()


def _filters(
    owner_id: str, *, active_only: bool, confirmed: bool | None, content_type: str | None
) -> tuple[str, list[Any]]:
    where = ["owner_id = ?"]
    params: list[Any] = [owner_id]
    if active_only:
        where.append("is_active = 1")
    if confirmed is not None:
        where.append("user_confirmed = ?")
        params.append(1 if confirmed else 0)
    if content_type:
        where.append("type = ?")
        params.append(content_type)
    return " AND ".join(where), params


async def list_entries(
    owner_id: str,
    *,
    active_only: bool = True,
    confirmed: bool | None = None,
    content_type: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict]:
    where, params = _filters(owner_id, active_only=active_only, confirmed=confirmed, content_type=content_type)
    params.extend([max(1, min(int(limit), 5000)), max(0, int(offset))])
    db = await get_db()
    try:
        cur = await db.execute(
            f"SELECT * FROM content_library WHERE {where} ORDER BY updated_at DESC LIMIT ? OFFSET ?",
            tuple(params),
        )
        return [_entry_row(r) for r in await cur.fetchall()]
    finally:
        await db.close()


async def count_entries(
    owner_id: str, *, active_only: bool = True, confirmed: bool | None = None, content_type: str | None = None
) -> int:
    where, params = _filters(owner_id, active_only=active_only, confirmed=confirmed, content_type=content_type)
    db = await get_db()
    try:
        cur = await db.execute(f"SELECT COUNT(*) AS n FROM content_library WHERE {where}", tuple(params))
        row = await cur.fetchone()
        return int(row["n"] or 0) if row else 0
    finally:
        await db.close()


async def set_user_confirmed(entry_id: str, confirmed: bool = True) -> bool:
    db = await get_db()
    try:
        await db.execute(
            "UPDATE content_library SET user_confirmed = ?, updated_at = ? WHERE id = ?",
            (1 if confirmed else 0, utcnow_iso(), entry_id),
        )
        n = await changes(db)
        await db.commit()
        return n == 1
    finally:
        await db.close()


async def archive_entry(entry_id: str) -> bool:
    now = utcnow_iso()
    db = await get_db()
    try:
        await db.execute(
            "UPDATE content_library SET is_active = 0, archived_at = COALESCE(archived_at, ?), updated_at = ? "
            "WHERE id = ?",
            (now, now, entry_id),
        )
        n = await changes(db)
        await db.commit()
        return n == 1
    finally:
        await db.close()


# SQLite datetime() modifiers per schedule frequency.
REFRESH_INTERVALS = {"daily": "+1 day", "weekly": "+7 days"}


async def set_refresh_schedule(entry_id: str, frequency: str) -> bool:
    """Schedule periodic re-scrapes, or clear the schedule with "off".

    The first run is one interval from now.
    """
    db = await get_db()
    try:
        if frequency == "off":
            await db.execute(
                "UPDATE content_library SET refresh_frequency = NULL, next_refresh_at = NULL, updated_at = ? "
                "WHERE id = ?",
                (utcnow_iso(), entry_id),
            )
        else:
            await db.execute(
                "UPDATE content_library SET refresh_frequency = ?, next_refresh_at = datetime('now', ?), "
                "updated_at = ? WHERE id = ?",
                (frequency, REFRESH_INTERVALS[frequency], utcnow_iso(), entry_id),
            )
        n = await changes(db)
        await db.commit()
        return n == 1
    finally:
        await db.close()


async def claim_due_refreshes(*, limit: int = 20) -> list[dict]:
    """Take active entries whose refresh is due and push their next run one interval out.

    The push happens before the refresh runs, so two workers never pick the
    same entry and a failing URL is retried on the next interval, not in a loop.
    """
    db = await get_db()
    try:
        await db.execute("BEGIN IMMEDIATE")
        cur = await db.execute(
            "SELECT * FROM content_library WHERE is_active = 1 AND refresh_frequency IS NOT NULL "
            "AND next_refresh_at IS NOT NULL AND next_refresh_at <= datetime('now') "
            "ORDER BY next_refresh_at ASC LIMIT ?",
            (max(1, int(limit)),),
        )
        rows = [_entry_row(r) for r in await cur.fetchall()]
        claimed = []
        for entry in rows:
            interval = REFRESH_INTERVALS.get(str(entry.get("refresh_frequency")), REFRESH_INTERVALS["daily"])
            await db.execute(
                "UPDATE content_library SET next_refresh_at = datetime('now', ?) WHERE id = ? AND next_refresh_at = ?",
                (interval, entry["id"], entry["next_refresh_at"]),
            )
            if await changes(db) == 1:
                claimed.append(entry)
        await db.commit()
        return claimed
    finally:
        await db.close()


async def record_refresh_result(entry_id: str, *, error: str | None = None) -> None:
    db = await get_db()
    try:
        await db.execute(
            "UPDATE content_library SET last_refreshed_at = ?, last_refresh_error = ? WHERE id = ?",
            (utcnow_iso(), error, entry_id),
        )
        await db.commit()
    finally:
        await db.close()
