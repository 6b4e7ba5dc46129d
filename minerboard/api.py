"""HTTP surface serving the published leaderboard."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict

from aiohttp import web

from . import __version__, jsonutil
from .controller import RefreshController
from .models import LeaderboardSnapshot, iso_timestamp, placeholder_snapshot

logger = logging.getLogger(__name__)

CONTROLLER_KEY = web.AppKey("controller", RefreshController)
CONTRACT_KEY = web.AppKey("contract", str)
STARTED_KEY = web.AppKey("started_at", float)


def _json(payload: Dict[str, Any]) -> web.Response:
    return web.json_response(payload, dumps=jsonutil.dumps)


def _document(snapshot: LeaderboardSnapshot, status: Dict[str, Any]) -> Dict[str, Any]:
    doc = snapshot.to_dict()
    doc["metadata"] = {
        "totalMiners": snapshot.miner_count,
        "lastScannedBlock": snapshot.last_scanned_block,
        "isPartialUpdate": snapshot.partial,
    }
    doc["status"] = status
    return doc


def _fallback_document(exc: BaseException) -> Dict[str, Any]:
    return _document(
        placeholder_snapshot(),
        {
            "blockchain": "unknown",
            "connected": False,
            "degraded": True,
            "stale": True,
            "dataAge": 0,
            "error": str(exc) or type(exc).__name__,
        },
    )


async def leaderboard(request: web.Request) -> web.Response:
    controller = request.app[CONTROLLER_KEY]
    try:
        snapshot = controller.current
        controller.maybe_refresh_in_background()
        doc = _document(snapshot, await controller.status())
    except Exception as exc:
        logger.exception("Failed to render leaderboard")
        doc = _fallback_document(exc)
    return _json(doc)


async def refresh(request: web.Request) -> web.Response:
    controller = request.app[CONTROLLER_KEY]
    try:
        snapshot = await controller.refresh(force=True)
        doc = _document(snapshot, await controller.status())
        doc["success"] = snapshot.source in {"live", "partial"}
    except Exception as exc:
        logger.exception("Forced refresh failed")
        doc = _fallback_document(exc)
        doc["success"] = False
    return _json(doc)


async def health(request: web.Request) -> web.Response:
    controller = request.app[CONTROLLER_KEY]
    snapshot = controller.current
    now = time.time()
    return _json(
        {
            "status": "ok",
            "version": __version__,
            "uptime": round(now - request.app[STARTED_KEY], 3),
            "blockchain": "connected" if controller.context.connected else "disconnected",
            "contract": request.app[CONTRACT_KEY],
            "miners": snapshot.miner_count,
            "lastUpdate": iso_timestamp(snapshot.generated_at),
            "timestamp": iso_timestamp(now),
        }
    )


async def index(_: web.Request) -> web.Response:
    return _json(
        {
            "message": "minerboard running",
            "endpoints": {
                "leaderboard": "/api/leaderboard",
                "refresh": "/api/leaderboard/refresh",
                "health": "/api/health",
            },
        }
    )


def create_app(controller: RefreshController, *, contract: str = "") -> web.Application:
    app = web.Application()
    app[CONTROLLER_KEY] = controller
    app[CONTRACT_KEY] = contract
    app[STARTED_KEY] = time.time()
    app.router.add_get("/", index)
    app.router.add_get("/api/leaderboard", leaderboard)
    app.router.add_post("/api/leaderboard/refresh", refresh)
    app.router.add_get("/api/health", health)
    return app


__all__ = ["create_app", "CONTROLLER_KEY"]
