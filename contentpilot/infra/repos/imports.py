"""Site import jobs repository (SQLite).

Status writes are compare-and-swap on the current status so a stale writer
can never move a job backwards. Progress counters only grow.
"""

from __future__ import annotations

from typing import Any

from contentpilot.core.usecases import import_status as st
from contentpilot.infra.db.sqlite import get_db
from contentpilot.infra.repos._common import changes, json_dumps, new_id, row_to_dict, utcnow_iso

_JSON_FIELDS = {
    "additional_industries_json": ("additional_industries", []),
    "discovered_urls_json": ("discovered_urls", []),
    "scraped_content_json": ("scraped_content", []),
    "categorized_content_json": ("categorized_content", {"items": []}),
    "errors_json": ("errors", None),
}


def _import_row(row) -> dict[str, Any]:
    return row_to_dict(row, json_fields=_JSON_FIELDS, bool_fields=("cancel_requested",))


async def create_import(
    *,
    owner_id: str,
    source_url: str,
    industry: str | None = None,
    additional_industries: list[str] | None = None,
) -> dict:
    import_id = new_id("imp")
    now = utcnow_iso()
    extra = [str(i).strip() for i in (additional_industries or []) if str(i or "").strip()]
    db = await get_db()
    try:
        await db.execute(
            "INSERT INTO content_imports("
            "id, owner_id, source_url, industry, additional_industries_json, status, created_at, updated_at"
            ") VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                import_id,
                owner_id,
                source_url.strip(),
                (industry or "").strip() or None,
                json_dumps(extra, empty=[]),
                st.PENDING,
                now,
                now,
            ),
        )
        await db.commit()
    finally:
        await db.close()
    return await get_import(import_id)


async def get_import(import_id: str, *, owner_id: str | None = None) -> dict | None:
    db = await get_db()
    try:
        if owner_id is None:
            cur = await db.execute("SELECT * FROM content_imports WHERE id = ? LIMIT 1", (import_id,))
        else:
            cur = await db.execute(
                "SELECT * FROM content_imports WHERE id = ? AND owner_id = ? LIMIT 1", (import_id, owner_id)
            )
        row = await cur.fetchone()
        return _import_row(row) if row else None
    finally:
        await db.close()


async def list_imports(
    *, owner_id: str | None = None, status: str | None = None, limit: int = 50, offset: int = 0
) -> list[dict]:
    where = []
    params: list[Any] = []
    if owner_id:
        where.append("owner_id = ?")
        params.append(owner_id)
    if status:
        where.append("status = ?")
        params.append(status.strip().upper())
    sql = "SELECT * FROM content_imports"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
    params.extend([max(1, min(int(limit), 500)), max(0, int(offset))])
    db = await get_db()
    try:
        cur = await db.execute(sql, tuple(params))
        return [_import_row(r) for r in await cur.fetchall()]
    finally:
        await db.close()


async def update_import(
    import_id: str,
    *,
    status: str | None = None,
    runner_id: str | None = None,
    total_pages: int | None = None,
    scraped_pages: int | None = None,
    categorized_pages: int | None = None,
    discovered_urls: list | None = None,
    scraped_content: list | None = None,
    categorized_content: dict | None = None,
    errors: dict | None = None,
    approved_count: int | None = None,
    rejected_count: int | None = None,
    crawl_id: str | None = None,
    reviewed_at: str | None = None,
    reset_progress: bool = False,
) -> bool:
    """Apply a partial update. Returns False when the guard rejected the write.

    With `status`, the row must currently be in a status that may move to it.
    With `runner_id`, the row must be leased by that runner.
    Page counters only grow, unless `reset_progress` zeroes all three.
    """
    sets = ["updated_at = ?"]
    params: list[Any] = [utcnow_iso()]
    if status is not None:
        sets.append("status = ?")
        params.append(status)
    if reset_progress:
        sets.append("total_pages = 0, scraped_pages = 0, categorized_pages = 0")
    else:
        for column, value in (
            ("total_pages", total_pages),
            ("scraped_pages", scraped_pages),
            ("categorized_pages", categorized_pages),
        ):
            if value is not None:
                sets.append(f"{column} = MAX({column}, ?)")
                params.append(max(0, int(value)))
    for column, value in (
        ("discovered_urls_json", discovered_urls),
        ("scraped_content_json", scraped_content),
        ("categorized_content_json", categorized_content),
        ("errors_json", errors),
    ):
        if value is not None:
            sets.append(f"{column} = ?")
            params.append(json_dumps(value))
    for column, value in (
        ("approved_count", approved_count),
        ("rejected_count", rejected_count),
        ("crawl_id", crawl_id),
        ("reviewed_at", reviewed_at),
    ):
        if value is not None:
            sets.append(f"{column} = ?")
            params.append(value)

    where = ["id = ?"]
    params.append(import_id)
    if status is not None:
        sources = st.sources_for(status)
        where.append(f"status IN ({','.join('?' for _ in sources)})")
        params.extend(sources)
    if runner_id is not None:
        where.append("runner_id = ?")
        params.append(runner_id)

    db = await get_db()
    try:
        await db.execute(
            f"UPDATE content_imports SET {', '.join(sets)} WHERE {' AND '.join(where)}",
            tuple(params),
        )
        n = await changes(db)
        await db.commit()
        return n == 1
    finally:
        await db.close()


def _runnable_placeholders() -> tuple[str, tuple[str, ...]]:
    runnable = tuple(sorted(st.RUNNABLE))
    return ",".join("?" for _ in runnable), runnable


async def claim_import(import_id: str, *, runner_id: str, lease_seconds: int = 120) -> bool:
    """Take the single-runner lease on a runnable job.

    Fails while another runner holds a live lease. A runner may re-claim its own lease.
    """
    marks, runnable = _runnable_placeholders()
    db = await get_db()
    try:
        await db.execute("BEGIN IMMEDIATE")
        await db.execute(
            "UPDATE content_imports SET runner_id = ?, lease_until = datetime('now', ?), updated_at = ? "
            f"WHERE id = ? AND status IN ({marks}) "
            "AND (runner_id IS NULL OR runner_id = ? OR lease_until IS NULL OR lease_until < datetime('now'))",
            (runner_id, f"+{max(5, int(lease_seconds))} seconds", utcnow_iso(), import_id, *runnable, runner_id),
        )
        n = await changes(db)
        await db.commit()
        return n == 1
    finally:
        await db.close()


async def claim_next_pending_import(*, runner_id: str, lease_seconds: int = 120) -> dict | None:
    """Claim the oldest unleased PENDING job (worker entry point)."""
    db = await get_db()
    try:
        await db.execute("BEGIN IMMEDIATE")
        cur = await db.execute(
            "SELECT id FROM content_imports WHERE status = ? "
            "AND (runner_id IS NULL OR lease_until IS NULL OR lease_until < datetime('now')) "
            "ORDER BY created_at ASC LIMIT 1",
            (st.PENDING,),
        )
        row = await cur.fetchone()
        if not row:
            await db.commit()
            return None
        import_id = str(row["id"])
        await db.execute(
            "UPDATE content_imports SET runner_id = ?, lease_until = datetime('now', ?), updated_at = ? "
            "WHERE id = ? AND status = ?",
            (runner_id, f"+{max(5, int(lease_seconds))} seconds", utcnow_iso(), import_id, st.PENDING),
        )
        n = await changes(db)
        await db.commit()
    finally:
        await db.close()
    if n != 1:
        return None
    return await get_import(import_id)


async def heartbeat_import(import_id: str, *, runner_id: str, lease_seconds: int = 120) -> bool:
    db = await get_db()
    try:
        await db.execute(
            "UPDATE content_imports SET lease_until = datetime('now', ?) WHERE id = ? AND runner_id = ?",
            (f"+{max(5, int(lease_seconds))} seconds", import_id, runner_id),
        )
        n = await changes(db)
        await db.commit()
        return n == 1
    finally:
        await db.close()


async def release_import(import_id: str, *, runner_id: str) -> None:
    db = await get_db()
    try:
        await db.execute(
            "UPDATE content_imports SET runner_id = NULL, lease_until = NULL WHERE id = ? AND runner_id = ?",
            (import_id, runner_id),
        )
        await db.commit()
    finally:
        await db.close()


async def request_cancel(import_id: str) -> bool:
    marks, runnable = _runnable_placeholders()
    db = await get_db()
    try:
        await db.execute(
            f"UPDATE content_imports SET cancel_requested = 1, updated_at = ? WHERE id = ? AND status IN ({marks})",
            (utcnow_iso(), import_id, *runnable),
        )
        n = await changes(db)
        await db.commit()
        return n == 1
    finally:
        await db.close()


async def is_cancel_requested(import_id: str) -> bool:
    db = await get_db()
    try:
        cur = await db.execute("SELECT cancel_requested FROM content_imports WHERE id = ? LIMIT 1", (import_id,))
        row = await cur.fetchone()
        return bool(row and row["cancel_requested"])
    finally:
        await db.close()
