"""Import events repository (SQLite, append-only).

Each import has its own monotonically increasing `seq` so pollers can ask
for everything after the last event they saw.
"""

from __future__ import annotations

from contentpilot.infra.db.sqlite import get_db
from contentpilot.infra.repos._common import json_dumps, json_loads, utcnow_iso


async def append_event(*, import_id: str, event_type: str, payload: dict) -> dict:
    """Append an event and return the stored row (including seq)."""
    now = utcnow_iso()
    db = await get_db()
    try:
        await db.execute("BEGIN IMMEDIATE")

        await db.execute(
            "INSERT OR IGNORE INTO import_event_counters(import_id, next_seq) VALUES (?, 1)",
            (import_id,),
        )
        cur = await db.execute(
            "SELECT next_seq FROM import_event_counters WHERE import_id = ? LIMIT 1", (import_id,)
        )
        row = await cur.fetchone()
        seq = int(row["next_seq"]) if row else 1

        await db.execute(
            "UPDATE import_event_counters SET next_seq = ? WHERE import_id = ?",
            (seq + 1, import_id),
        )
        await db.execute(
            "INSERT INTO import_events(import_id, seq, type, payload_json, created_at) VALUES (?, ?, ?, ?, ?)",
            (import_id, seq, event_type, json_dumps(payload), now),
        )
        await db.commit()
        return {"import_id": import_id, "seq": seq, "type": event_type, "payload": payload, "created_at": now}
    except Exception:
        await db.rollback()
        raise
    finally:
        await db.close()


async def list_events(*, import_id: str, since_seq: int = 0, limit: int = 500) -> list[dict]:
    db = await get_db()
    try:
        cur = await db.execute(
            "SELECT import_id, seq, type, payload_json, created_at "
            "FROM import_events WHERE import_id = ? AND seq > ? ORDER BY seq ASC LIMIT ?",
            (import_id, max(0, int(since_seq)), max(1, min(int(limit), 5000))),
        )
        out = []
        for row in await cur.fetchall():
            d = dict(row)
            d["payload"] = json_loads(d.pop("payload_json", None), {})
            out.append(d)
        return out
    finally:
        await db.close()
