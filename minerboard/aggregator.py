"""Turn fetched hashrates into ranked snapshots."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Sequence

from .cache import DurableCache
from .models import LeaderboardSnapshot, MinerRecord, parse_int

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregateResult:
    snapshot: Optional[LeaderboardSnapshot]
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.snapshot is not None


def aggregate(
    values: Mapping[str, int | str],
    order: Sequence[str] = (),
    network_total: int | None = None,
    *,
    partial: bool = False,
    last_scanned_block: int | None = None,
    now: float | None = None,
) -> AggregateResult:
    """Rank ``values`` by hashrate, ties broken by position in ``order``.

    ``network_total`` is taken as the total only for complete snapshots and
    only when it is not below the sum of the individual values; otherwise the
    sum is reported.
    """

    if not values:
        return AggregateResult(None, "no-addresses")

    position: Dict[str, int] = {}
    for addr in order:
        position.setdefault(addr.lower(), len(position))
    parsed: Dict[str, int] = {}
    for addr, raw in values.items():
        key = addr.lower()
        try:
            parsed[key] = parse_int(raw)
        except ValueError:
            logger.warning("Treating unparsable hashrate %r for %s as 0", raw, key)
            parsed[key] = 0
        position.setdefault(key, len(position))

    ranked = sorted(parsed.items(), key=lambda item: (-item[1], position[item[0]]))
    total = sum(parsed.values())
    total_source = "sum"
    if network_total is not None and not partial:
        if network_total >= total:
            total = network_total
            total_source = "contract"
        else:
            logger.info(
                "Contract total %d is below the sum of miners %d; reporting the sum",
                network_total,
                total,
            )

    snapshot = LeaderboardSnapshot(
        miners=tuple(MinerRecord(addr, value) for addr, value in ranked),
        total_hashrate=total,
        generated_at=time.time() if now is None else now,
        partial=partial,
        source="partial" if partial else "live",
        total_source=total_source,
        last_scanned_block=last_scanned_block,
    )
    return AggregateResult(snapshot)


def is_improvement(candidate: LeaderboardSnapshot, current: LeaderboardSnapshot | None) -> bool:
    """True when ``candidate`` may replace ``current`` as the served snapshot.

    A partial snapshot never replaces a complete live one. Otherwise the
    candidate must cover at least as many miners.
    """

    if current is None or current.source == "placeholder":
        return True
    if candidate.partial and current.source == "live" and not current.partial:
        return False
    return candidate.miner_count >= current.miner_count


class PartialCheckpointer:
    """Progress hook for :class:`HashrateFetcher` that stores partial snapshots."""

    def __init__(
        self,
        cache: DurableCache,
        order: Sequence[str],
        *,
        current: Callable[[], LeaderboardSnapshot | None],
        publish: Callable[[LeaderboardSnapshot], None],
        last_scanned_block: int | None = None,
    ) -> None:
        self.cache = cache
        self.order = list(order)
        self._current = current
        self._publish = publish
        self.last_scanned_block = last_scanned_block
        self.saved = 0

    async def __call__(self, values: Dict[str, int]) -> None:
        result = aggregate(
            values, self.order, partial=True, last_scanned_block=self.last_scanned_block
        )
        if result.snapshot is None:
            return
        snapshot = result.snapshot
        await self.cache.save_snapshot(snapshot.to_dict(), partial=True, timestamp=snapshot.generated_at)
        self.saved += 1
        if is_improvement(snapshot, self._current()):
            self._publish(snapshot)
            logger.info("Published partial leaderboard with %d miners", snapshot.miner_count)


__all__ = ["AggregateResult", "aggregate", "is_improvement", "PartialCheckpointer"]
