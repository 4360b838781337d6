"""Import worker heartbeats (SQLite).

The API reads these to tell whether a worker is draining the PENDING queue.
"""

from __future__ import annotations

from datetime import datetime, timezone

from contentpilot.infra.db.sqlite import get_db
from contentpilot.infra.repos._common import json_dumps, row_to_dict, utcnow_iso


async def upsert_worker_heartbeat(*, worker_id: str, role: str, meta: dict | None = None) -> None:
    db = await get_db()
    try:
        await db.execute(
            "INSERT INTO worker_heartbeats(worker_id, role, updated_at, meta_json) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(worker_id) DO UPDATE SET role=excluded.role, updated_at=excluded.updated_at, "
            "meta_json=excluded.meta_json",
            (worker_id, role, utcnow_iso(), json_dumps(meta or {})),
        )
        await db.commit()
    finally:
        await db.close()


async def get_latest_worker_heartbeat(*, role: str = "import-worker") -> dict | None:
    db = await get_db()
    try:
        cur = await db.execute(
            "SELECT * FROM worker_heartbeats WHERE role = ? ORDER BY updated_at DESC LIMIT 1",
            (role,),
        )
        row = await cur.fetchone()
        return row_to_dict(row, json_fields={"meta_json": ("meta", {})}) if row else None
    finally:
        await db.close()


def heartbeat_age_sec(heartbeat: dict | None, *, now: datetime | None = None) -> float | None:
    """Seconds since the heartbeat was written, or None if there is none."""
    if not heartbeat or not heartbeat.get("updated_at"):
        return None
    try:
        written = datetime.fromisoformat(str(heartbeat["updated_at"]))
    except ValueError:
        return None
    if written.tzinfo is None:
        written = written.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (now - written).total_seconds())
