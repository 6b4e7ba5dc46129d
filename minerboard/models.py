"""Leaderboard value objects and their JSON wire form."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


def iso_timestamp(ts: float) -> str:
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def parse_int(value: Any) -> int:
    """Parse a non-negative integer that may arrive as a decimal string."""
    if isinstance(value, bool):
        raise ValueError("boolean is not a hashrate")
    if isinstance(value, int):
        n = value
    elif isinstance(value, str):
        text = value.strip()
        n = int(text, 16) if text.lower().startswith("0x") else int(text)
    else:
        raise ValueError(f"cannot parse {type(value).__name__} as integer")
    if n < 0:
        raise ValueError("hashrate must be non-negative")
    return n


@dataclass(frozen=True, slots=True)
class MinerRecord:
    address: str
    hashrate: int

    def to_dict(self, rank: int) -> Dict[str, Any]:
        return {"rank": rank, "address": self.address, "hashrate": str(self.hashrate)}


@dataclass(frozen=True, slots=True)
class LeaderboardSnapshot:
    miners: Tuple[MinerRecord, ...] = ()
    total_hashrate: int = 0
    generated_at: float = field(default_factory=time.time)
    partial: bool = False
    source: str = "live"
    total_source: str = "sum"
    last_scanned_block: Optional[int] = None

    @property
    def miner_count(self) -> int:
        return len(self.miners)

    def age(self, now: float | None = None) -> float:
        return max(0.0, (time.time() if now is None else now) - self.generated_at)

    def with_source(self, source: str) -> "LeaderboardSnapshot":
        return replace(self, source=source)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "miners": [m.to_dict(i + 1) for i, m in enumerate(self.miners)],
            "totalHashrate": str(self.total_hashrate),
            "lastUpdate": iso_timestamp(self.generated_at),
            "generatedAt": self.generated_at,
            "partial": self.partial,
            "source": self.source,
            "totalSource": self.total_source,
            "lastScannedBlock": self.last_scanned_block,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LeaderboardSnapshot":
        """Rebuild a snapshot from :meth:`to_dict` output.

        Entries keep their stored order.  ``hashrate`` may also appear as
        ``totalHashrate`` in documents written by older deployments.
        """

        miners = []
        for entry in data.get("miners") or []:
            if not isinstance(entry, Mapping):
                continue
            raw = entry.get("hashrate", entry.get("totalHashrate", 0))
            miners.append(MinerRecord(str(entry["address"]).lower(), parse_int(raw)))
        generated = parse_timestamp(data.get("generatedAt"))
        if generated is None:
            generated = parse_timestamp(data.get("lastUpdate")) or time.time()
        block = data.get("lastScannedBlock")
        return cls(
            miners=tuple(miners),
            total_hashrate=parse_int(data.get("totalHashrate", 0)),
            generated_at=generated,
            partial=bool(data.get("partial", False)),
            source=str(data.get("source", "cache")),
            total_source=str(data.get("totalSource", "sum")),
            last_scanned_block=int(block) if block is not None else None,
        )


PLACEHOLDER_MINERS: Tuple[Tuple[str, int], ...] = (
    ("0x1234567890123456789012345678901234567890", 1_000_000),
    ("0x2345678901234567890123456789012345678901", 750_000),
    ("0x3456789012345678901234567890123456789012", 500_000),
    ("0x4567890123456789012345678901234567890123", 250_000),
    ("0x5678901234567890123456789012345678901234", 100_000),
)


def placeholder_snapshot(now: float | None = None) -> LeaderboardSnapshot:
    """Fixed sample dataset served when neither RPC nor cache can answer."""

    miners: Iterable[MinerRecord] = (MinerRecord(a, h) for a, h in PLACEHOLDER_MINERS)
    return LeaderboardSnapshot(
        miners=tuple(miners),
        total_hashrate=sum(h for _, h in PLACEHOLDER_MINERS),
        generated_at=time.time() if now is None else now,
        partial=False,
        source="placeholder",
        total_source="sum",
    )


__all__ = [
    "MinerRecord",
    "LeaderboardSnapshot",
    "placeholder_snapshot",
    "PLACEHOLDER_MINERS",
    "iso_timestamp",
    "parse_int",
]
