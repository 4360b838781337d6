"""System diagnostics."""

from __future__ import annotations

import platform
import time

from fastapi import APIRouter, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from contentpilot import __version__
from contentpilot.config import get_settings
from contentpilot.infra.db.sqlite import get_db
from contentpilot.infra.repos.workers import get_latest_worker_heartbeat, heartbeat_age_sec

router = APIRouter(tags=["system"])


@router.get("/api/health")
async def api_health():
    return {"status": "ok", "service": "contentpilot", "version": __version__}


@router.get("/api/system/readiness")
async def api_readiness(request: Request):
    settings = get_settings()
    checks = {
        "database": {"ok": False},
        "crawl_service": {"ok": settings.crawl_configured},
        "classifier": {"ok": bool(getattr(request.app.state, "chat_provider", None) and request.app.state.chat_provider.configured)},
        "platform": {"ok": True, "value": platform.platform()},
    }

    try:
        db = await get_db()
        try:
            cur = await db.execute("SELECT 1 AS ok")
            row = await cur.fetchone()
            checks["database"]["ok"] = bool(row and int(row["ok"]) == 1)
        finally:
            await db.close()
    except Exception as exc:
        checks["database"]["error"] = str(exc)

    return {"timestamp": int(time.time()), "checks": checks}


@router.get("/api/system/worker")
async def api_worker():
    settings = get_settings()
    hb = await get_latest_worker_heartbeat(role="import-worker")
    age = heartbeat_age_sec(hb)
    # Three missed beats and the worker counts as gone.
    alive = age is not None and age <= settings.worker_heartbeat_sec * 3
    return {"heartbeat": hb, "age_sec": age, "alive": alive}


@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
