"""Periodic liveness probe feeding the connection health counter."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from .endpoints import EndpointPool
from .errors import AllEndpointsUnreachable, RpcError
from .state import ConnectionContext

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Probe the active endpoint every ``interval`` seconds."""

    def __init__(
        self,
        pool: EndpointPool,
        context: ConnectionContext,
        *,
        interval: float = 15.0,
        probe_timeout: float = 10.0,
    ) -> None:
        self.pool = pool
        self.context = context
        self.interval = float(interval)
        self.probe_timeout = float(probe_timeout)
        self._task: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def probe_once(self) -> bool:
        """Run a single probe, failing over when the active endpoint is down."""

        client = self.pool.current
        if client is None:
            try:
                await self.pool.connect()
            except AllEndpointsUnreachable:
                return False
            return True

        try:
            await client.block_number(timeout=self.probe_timeout)
        except RpcError as exc:
            self.context.record_probe(False)
            logger.info("Health probe failed on %s: %s", client.url, exc)
            if self.context.connected:
                return False
            # below the stability threshold: look for a better endpoint
            try:
                await self.pool.connect()
            except AllEndpointsUnreachable:
                pass
            return False
        self.context.record_probe(True)
        return True

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await self.probe_once()
            except Exception:  # pragma: no cover - keep the loop alive
                logger.exception("Unexpected error in health probe")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), self.interval)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="minerboard-health")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None


__all__ = ["HealthMonitor"]
