"""Assemble the pipeline from :class:`Settings` and run the HTTP service."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass

from aiohttp import web

from .api import create_app
from .cache import DurableCache, build_store
from .config import Settings
from .controller import RefreshController, RefreshScheduler
from .endpoints import EndpointPool
from .errors import ContractRevert, RpcError
from .fetcher import AdaptiveBatchTuner, HashrateFetcher
from .health import HealthMonitor
from .readers import ContractLeaderboardReader, NetworkTotalReader, default_hashrate_reader
from .retry import RetryPolicy
from .scanner import EventScanner
from .state import ConnectionContext
from .static_export import StaticExporter

logger = logging.getLogger(__name__)


@dataclass
class Service:
    settings: Settings
    context: ConnectionContext
    pool: EndpointPool
    cache: DurableCache
    controller: RefreshController
    monitor: HealthMonitor
    scheduler: RefreshScheduler

    async def start(self) -> None:
        await self.controller.load_initial()
        self.monitor.start()
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.monitor.stop()
        await self.controller.close()
        await self.pool.close()
        await self.cache.close()


def build_service(settings: Settings) -> Service:
    context = ConnectionContext(threshold=settings.health_threshold)
    pool = EndpointPool(
        settings.rpc_urls,
        context,
        connect_timeout=settings.connect_timeout,
        rpc_timeout=settings.rpc_timeout,
    )
    cache = DurableCache(build_store(settings.cache_url))

    scanner = EventScanner(
        pool.acquire,
        settings.contract_address,
        cache,
        block_chunk=settings.block_chunk,
        max_halvings=settings.max_halvings,
        persist_every=settings.persist_every,
        start_block=settings.start_block,
    )
    fetcher = HashrateFetcher(
        default_hashrate_reader(settings.contract_address),
        context,
        tuner=AdaptiveBatchTuner(
            settings.batch_size,
            settings.batch_delay,
            min_batch=settings.min_batch_size,
            max_batch=settings.max_batch_size,
        ),
        retry_policy=RetryPolicy(
            max_attempts=settings.read_attempts,
            delay=settings.read_retry_delay,
            retry_on=(RpcError,),
            give_up_on=(ContractRevert,),
        ),
        checkpoint_batches=settings.checkpoint_batches,
    )
    controller = RefreshController(
        pool,
        context,
        scanner,
        fetcher,
        cache,
        total_reader=NetworkTotalReader(settings.contract_address),
        leaderboard_reader=(
            ContractLeaderboardReader(settings.contract_address)
            if settings.use_contract_leaderboard
            else None
        ),
        min_refresh_interval=settings.min_refresh_interval,
        freshness_window=settings.freshness_window,
        cache_max_age=settings.cache_max_age,
        cache_absolute_max_age=settings.cache_absolute_max_age,
    )
    if settings.static_dir:
        controller.publish_hooks.append(StaticExporter(settings.static_dir))
    monitor = HealthMonitor(
        pool,
        context,
        interval=settings.health_interval,
        probe_timeout=settings.connect_timeout,
    )
    scheduler = RefreshScheduler(controller, interval=settings.refresh_interval)
    return Service(settings, context, pool, cache, controller, monitor, scheduler)


def prepare_app(service: Service) -> web.Application:
    app = create_app(service.controller, contract=service.settings.contract_address)

    async def _on_startup(_: web.Application) -> None:
        await service.start()

    async def _on_cleanup(_: web.Application) -> None:
        await service.stop()

    app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app


async def run_service(settings: Settings) -> None:
    service = build_service(settings)
    app = prepare_app(service)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=settings.host, port=settings.port)
    await site.start()
    logger.info(
        "minerboard listening on %s:%s (contract %s, %d RPC endpoints)",
        settings.host,
        settings.port,
        settings.contract_address,
        len(settings.rpc_urls),
    )

    stop_event = asyncio.Event()

    def _handle_signal(*_: object) -> None:
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _handle_signal)

    await stop_event.wait()
    logger.info("Shutting down minerboard")
    await runner.cleanup()


__all__ = ["Service", "build_service", "prepare_app", "run_service"]
