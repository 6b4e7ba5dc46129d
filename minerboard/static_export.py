"""Write the published leaderboard as static JSON files for the frontend."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from . import jsonutil
from .models import LeaderboardSnapshot, iso_timestamp

logger = logging.getLogger(__name__)

CURRENT_NAME = "leaderboard.json"
NEXT_UPDATE_AFTER = 3600.0


def build_static_document(
    snapshot: LeaderboardSnapshot, *, now: float | None = None, next_update_after: float = NEXT_UPDATE_AFTER
) -> Dict[str, Any]:
    now = time.time() if now is None else now
    doc = snapshot.to_dict()
    doc["generatedAt"] = iso_timestamp(now)
    doc["nextUpdateAfter"] = iso_timestamp(now + next_update_after)
    doc["metadata"] = {
        "totalMiners": snapshot.miner_count,
        "lastScannedBlock": snapshot.last_scanned_block,
        "isPartialUpdate": snapshot.partial,
    }
    return doc


def _history_name(now: float) -> str:
    stamp = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    return f"leaderboard-{stamp}.json"


def _write_atomic(path: Path, data: bytes) -> None:
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(data)
    tmp.replace(path)


def export_static(
    snapshot: LeaderboardSnapshot,
    directory: str | Path,
    *,
    now: float | None = None,
    history: bool = True,
) -> Path:
    """Write ``leaderboard.json`` (and a timestamped copy) into ``directory``."""

    now = time.time() if now is None else now
    root = Path(directory)
    root.mkdir(parents=True, exist_ok=True)
    payload = jsonutil.dumps_bytes(build_static_document(snapshot, now=now), indent=2)
    current = root / CURRENT_NAME
    _write_atomic(current, payload)
    if history:
        _write_atomic(root / _history_name(now), payload)
    logger.info("Wrote static leaderboard (%d miners) to %s", snapshot.miner_count, current)
    return current


class StaticExporter:
    """Publish hook writing each fresh snapshot to ``directory``."""

    def __init__(self, directory: str | Path, *, history: bool = True) -> None:
        self.directory = Path(directory)
        self.history = history

    async def __call__(self, snapshot: LeaderboardSnapshot) -> None:
        await asyncio.to_thread(export_static, snapshot, self.directory, history=self.history)


__all__ = ["build_static_document", "export_static", "StaticExporter", "CURRENT_NAME"]
