"""Shared helpers for the SQLite repositories."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str | None = None) -> str:
    value = uuid.uuid4().hex
    return f"{prefix}_{value}" if prefix else value


def json_dumps(value: Any, empty: Any = None) -> str:
    if value is None:
        value = {} if empty is None else empty
    return json.dumps(value, default=str)


def json_loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def row_to_dict(row, *, json_fields: dict[str, tuple[str, Any]] | None = None, bool_fields: tuple[str, ...] = ()) -> dict:
    """Convert a sqlite Row, decoding `*_json` columns and 0/1 flags.

    `json_fields` maps column name -> (output key, default).
    """
    if not row:
        return {}
    out = dict(row)
    for column, (key, default) in (json_fields or {}).items():
        if column in out:
            out[key] = json_loads(out.pop(column), default)
    for name in bool_fields:
        if name in out:
            out[name] = bool(out[name])
    return out


async def changes(db) -> int:
    cur = await db.execute("SELECT changes() AS n")
    row = await cur.fetchone()
    return int(row["n"] or 0) if row else 0
