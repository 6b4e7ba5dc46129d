"""Refresh state machine tying scanner, fetcher, aggregator and cache together."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .aggregator import PartialCheckpointer, aggregate, is_improvement
from .cache import CacheEntry, DurableCache
from .endpoints import EndpointPool
from .errors import MinerboardError, RpcError
from .fetcher import HashrateFetcher
from .models import LeaderboardSnapshot, iso_timestamp, placeholder_snapshot
from .readers import ContractLeaderboardReader, NetworkTotalReader
from .scanner import EventScanner, ScanCheckpoint
from .state import ConnectionContext

logger = logging.getLogger(__name__)

PublishHook = Callable[[LeaderboardSnapshot], Awaitable[None]]


class RefreshState(str, enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    FETCHING = "fetching"
    AGGREGATING = "aggregating"
    PUBLISHING = "publishing"
    DEGRADED = "degraded"


class _Degraded(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class RefreshController:
    """Run at most one refresh cycle at a time and always have an answer.

    A failed cycle falls back to the newest cached snapshot that is younger
    than ``cache_absolute_max_age`` and then to :func:`placeholder_snapshot`.
    """

    def __init__(
        self,
        pool: EndpointPool,
        context: ConnectionContext,
        scanner: EventScanner,
        fetcher: HashrateFetcher,
        cache: DurableCache,
        *,
        total_reader: NetworkTotalReader | None = None,
        leaderboard_reader: ContractLeaderboardReader | None = None,
        min_refresh_interval: float = 60.0,
        freshness_window: float = 300.0,
        cache_max_age: float = 3600.0,
        cache_absolute_max_age: float = 7 * 24 * 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.pool = pool
        self.context = context
        self.scanner = scanner
        self.fetcher = fetcher
        self.cache = cache
        self.total_reader = total_reader
        self.leaderboard_reader = leaderboard_reader
        self.min_refresh_interval = float(min_refresh_interval)
        self.freshness_window = float(freshness_window)
        self.cache_max_age = float(cache_max_age)
        self.cache_absolute_max_age = float(cache_absolute_max_age)
        self._clock = clock

        self.state = RefreshState.IDLE
        self.cycles = 0
        self.last_error: str | None = None
        self.last_success: float | None = None
        self.publish_hooks: List[PublishHook] = []
        self._current: LeaderboardSnapshot | None = None
        self._placeholder: LeaderboardSnapshot | None = None
        self._checkpoint = ScanCheckpoint()
        self._last_attempt: float | None = None
        self._in_flight = False
        self._lock = asyncio.Lock()
        self._background: asyncio.Task[Any] | None = None

    # ------------------------------------------------------------------
    @property
    def current(self) -> LeaderboardSnapshot:
        if self._current is not None:
            return self._current
        if self._placeholder is None:
            self._placeholder = placeholder_snapshot(self._clock())
        return self._placeholder

    @property
    def checkpoint(self) -> ScanCheckpoint:
        return self._checkpoint

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def degraded(self) -> bool:
        return self.state is RefreshState.DEGRADED

    def _publish(self, snapshot: LeaderboardSnapshot) -> None:
        self._current = snapshot

    def _set_state(self, state: RefreshState) -> None:
        if state is not self.state:
            logger.debug("Refresh state %s -> %s", self.state.value, state.value)
            self.state = state

    # ------------------------------------------------------------------
    async def load_initial(self) -> LeaderboardSnapshot:
        """Restore checkpoint and snapshot from the durable cache."""

        payload = await self.cache.load_checkpoint()
        if payload:
            try:
                self._checkpoint = ScanCheckpoint.from_dict(payload)
            except (TypeError, ValueError) as exc:
                logger.warning("Ignoring unreadable scan checkpoint: %s", exc)
            else:
                logger.info(
                    "Resuming scan from block %s with %d known addresses",
                    self._checkpoint.last_scanned_block,
                    len(self._checkpoint.addresses),
                )
        snapshot = await self._load_cached_snapshot()
        if snapshot is not None:
            self._publish(snapshot)
        return self.current

    def _decode_entry(self, entry: CacheEntry | None) -> LeaderboardSnapshot | None:
        if entry is None:
            return None
        if entry.age(self._clock()) > self.cache_absolute_max_age:
            logger.info("Cached leaderboard is %.0fs old; too old to serve", entry.age(self._clock()))
            return None
        try:
            snapshot = LeaderboardSnapshot.from_dict(entry.payload)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed cached leaderboard: %s", exc)
            return None
        if not snapshot.miners:
            return None
        return snapshot.with_source("cache")

    async def _load_cached_snapshot(self) -> LeaderboardSnapshot | None:
        snapshot = self._decode_entry(await self.cache.load_snapshot())
        if snapshot is None:
            snapshot = self._decode_entry(await self.cache.load_snapshot(partial=True))
        return snapshot

    # ------------------------------------------------------------------
    def _should_skip(self, now: float) -> bool:
        if self._last_attempt is not None and now - self._last_attempt < self.min_refresh_interval:
            return True
        current = self._current
        return (
            current is not None
            and current.source == "live"
            and current.age(now) < self.freshness_window
        )

    async def refresh(self, force: bool = False) -> LeaderboardSnapshot:
        if self._in_flight:
            logger.debug("Refresh already running; serving current snapshot")
            return self.current
        now = self._clock()
        if not force and self._should_skip(now):
            return self.current

        self._in_flight = True
        try:
            async with self._lock:
                self._last_attempt = now
                self.cycles += 1
                try:
                    return await self._run_cycle()
                except _Degraded as exc:
                    return await self._degrade(exc.reason)
                except MinerboardError as exc:
                    return await self._degrade(f"{type(exc).__name__}: {exc}")
                except Exception as exc:
                    logger.exception("Unexpected refresh failure")
                    return await self._degrade(f"unexpected: {exc}")
        finally:
            self._in_flight = False

    async def _run_cycle(self) -> LeaderboardSnapshot:
        self._set_state(RefreshState.SCANNING)
        client = await self.pool.connect()
        checkpoint = self._checkpoint
        scan = await self.scanner.scan(checkpoint)
        if not scan.ok:
            raise _Degraded("scan-failed")

        values: Dict[str, int] = {}
        if self.leaderboard_reader is not None:
            try:
                for address, value in await self.leaderboard_reader.read(client):
                    values[address] = value
                    checkpoint.add(address)
            except RpcError as exc:
                logger.info("Contract leaderboard unavailable, reading per address: %s", exc)

        addresses = list(checkpoint.addresses)
        if not addresses:
            raise _Degraded("no-addresses")

        self._set_state(RefreshState.FETCHING)
        remaining = [a for a in addresses if a not in values]
        partial = False
        if remaining:
            progress = PartialCheckpointer(
                self.cache,
                addresses,
                current=lambda: self._current,
                publish=self._publish,
                last_scanned_block=checkpoint.last_scanned_block,
            )
            fetched = await self.fetcher.fetch(client, remaining, on_progress=progress)
            if fetched.succeeded == 0 and not values:
                raise _Degraded("fetch-failed")
            partial = fetched.interrupted
            # unread addresses stay out of a partial board instead of ranking at 0
            values.update(fetched.read_values if partial else fetched.values)

        self._set_state(RefreshState.AGGREGATING)
        network_total: Optional[int] = None
        if self.total_reader is not None and not partial:
            try:
                network_total = await self.total_reader.read(client)
            except RpcError as exc:
                logger.info("Network total unavailable, summing miners: %s", exc)
        result = aggregate(
            values,
            addresses,
            network_total,
            partial=partial,
            last_scanned_block=checkpoint.last_scanned_block,
            now=self._clock(),
        )
        if result.snapshot is None:
            raise _Degraded(result.reason)
        snapshot = result.snapshot

        self._set_state(RefreshState.PUBLISHING)
        if partial:
            await self.cache.save_snapshot(snapshot.to_dict(), partial=True, timestamp=snapshot.generated_at)
            await self.cache.save_checkpoint(checkpoint.to_dict())
            if is_improvement(snapshot, self._current):
                self._publish(snapshot)
            self.last_error = "fetch-interrupted"
            self._set_state(RefreshState.DEGRADED)
            return self.current

        await self.cache.save_snapshot(snapshot.to_dict(), timestamp=snapshot.generated_at)
        await self.cache.save_checkpoint(checkpoint.to_dict())
        self._publish(snapshot)
        self.last_success = snapshot.generated_at
        self.last_error = None
        await self._run_hooks(snapshot)
        self._set_state(RefreshState.IDLE)
        logger.info(
            "Leaderboard refreshed: %d miners, total %s (%s)",
            snapshot.miner_count,
            snapshot.total_hashrate,
            snapshot.total_source,
        )
        return snapshot

    async def _run_hooks(self, snapshot: LeaderboardSnapshot) -> None:
        for hook in self.publish_hooks:
            try:
                await hook(snapshot)
            except Exception:
                logger.exception("Publish hook %r failed", hook)

    async def _degrade(self, reason: str) -> LeaderboardSnapshot:
        self._set_state(RefreshState.DEGRADED)
        self.last_error = reason
        logger.warning("Refresh degraded (%s); falling back to cached data", reason)
        current = self._current
        if current is not None and current.source in {"live", "partial"}:
            if current.age(self._clock()) <= self.cache_absolute_max_age:
                return current
        cached = await self._load_cached_snapshot()
        if cached is not None:
            self._publish(cached)
            return cached
        if current is not None and current.source == "cache":
            return current
        placeholder = placeholder_snapshot(self._clock())
        self._placeholder = placeholder
        self._current = None
        logger.warning("No usable cache; serving placeholder leaderboard")
        return placeholder

    # ------------------------------------------------------------------
    def is_stale(self, now: float | None = None) -> bool:
        current = self.current
        if current.source == "placeholder":
            return True
        return current.age(self._clock() if now is None else now) > self.cache_max_age

    def maybe_refresh_in_background(self) -> bool:
        """Schedule a refresh when data is stale; never waits for it."""

        if self._in_flight or (self._background is not None and not self._background.done()):
            return False
        now = self._clock()
        current = self._current
        if current is not None and current.source == "live" and current.age(now) < self.freshness_window:
            return False
        if self._last_attempt is not None and now - self._last_attempt < self.min_refresh_interval:
            return False
        self._background = asyncio.create_task(self.refresh(), name="minerboard-refresh")
        self._background.add_done_callback(_log_task_error)
        return True

    async def status(self) -> Dict[str, Any]:
        now = self._clock()
        current = self.current
        conn = self.context.snapshot()
        return {
            "blockchain": "connected" if conn["connected"] else "disconnected",
            "connected": conn["connected"],
            "health": conn["health"],
            "endpoint": self.pool.current_url,
            "degraded": self.degraded,
            "stale": self.is_stale(now),
            "dataAge": int(current.age(now)),
            "source": current.source,
            "state": self.state.value,
            "refreshing": self._in_flight,
            "lastError": self.last_error,
            "lastSuccess": iso_timestamp(self.last_success) if self.last_success else None,
            "lastScannedBlock": self._checkpoint.last_scanned_block,
            "knownAddresses": len(self._checkpoint.addresses),
            "cache": await self.cache.status(),
        }

    async def close(self) -> None:
        if self._background is not None and not self._background.done():
            self._background.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._background


def _log_task_error(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background refresh failed: %s", exc)


class RefreshScheduler:
    """Call :meth:`RefreshController.refresh` every ``interval`` seconds."""

    def __init__(self, controller: RefreshController, interval: float = 120.0) -> None:
        self.controller = controller
        self.interval = float(interval)
        self._task: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await self.controller.refresh()
            except Exception:  # pragma: no cover - refresh already guards itself
                logger.exception("Scheduled refresh failed")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), self.interval)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="minerboard-scheduler")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None


__all__ = ["RefreshState", "RefreshController", "RefreshScheduler"]
