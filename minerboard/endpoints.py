"""Ordered RPC endpoint pool with cyclic failover."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Sequence

from .errors import AllEndpointsUnreachable, RpcError
from .logging_utils import warn_once_per
from .rpc import JsonRpcClient
from .state import ConnectionContext

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], JsonRpcClient]


class EndpointPool:
    """Hand out a working :class:`JsonRpcClient`, preferring the last good URL."""

    def __init__(
        self,
        urls: Sequence[str],
        context: ConnectionContext,
        *,
        connect_timeout: float = 10.0,
        rpc_timeout: float = 30.0,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        cleaned = [u for u in (s.strip() for s in urls) if u]
        if not cleaned:
            raise ValueError("EndpointPool requires at least one URL")
        self.urls: List[str] = cleaned
        self.context = context
        self.connect_timeout = float(connect_timeout)
        self._factory: ClientFactory = client_factory or (
            lambda url: JsonRpcClient(url, timeout=rpc_timeout)
        )
        self._clients: dict[str, JsonRpcClient] = {}
        self._current: JsonRpcClient | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> JsonRpcClient | None:
        return self._current

    @property
    def current_url(self) -> str:
        return self.urls[self.context.state.endpoint_index % len(self.urls)]

    def _client(self, url: str) -> JsonRpcClient:
        client = self._clients.get(url)
        if client is None:
            client = self._factory(url)
            self._clients[url] = client
        return client

    async def connect(self) -> JsonRpcClient:
        """Return a client whose endpoint answered ``eth_blockNumber``.

        Endpoints are tried cyclically beginning with the last successful one.
        Raises :class:`AllEndpointsUnreachable` after a full rotation.
        """

        async with self._lock:
            start = self.context.state.endpoint_index % len(self.urls)
            errors: list[str] = []
            for step in range(len(self.urls)):
                index = (start + step) % len(self.urls)
                url = self.urls[index]
                client = self._client(url)
                try:
                    head = await asyncio.wait_for(
                        client.block_number(timeout=self.connect_timeout),
                        self.connect_timeout,
                    )
                except asyncio.TimeoutError:
                    errors.append(f"{url}: connection timeout")
                    logger.warning("RPC endpoint %d/%d timed out: %s", index + 1, len(self.urls), url)
                    continue
                except RpcError as exc:
                    errors.append(f"{url}: {exc}")
                    logger.warning(
                        "RPC endpoint %d/%d failed: %s (%s)", index + 1, len(self.urls), url, exc
                    )
                    continue
                if step:
                    logger.info("Failed over to RPC endpoint %s (head=%d)", url, head)
                else:
                    logger.debug("Connected to RPC endpoint %s (head=%d)", url, head)
                self.context.mark_connected(index)
                self._current = client
                return client

            self._current = None
            self.context.mark_lost()
            warn_once_per(1.0, "all-endpoints-down", "All %d RPC endpoints unreachable", len(self.urls), logger=logger)
            raise AllEndpointsUnreachable("; ".join(errors) or "no endpoints attempted")

    async def acquire(self) -> JsonRpcClient:
        """Return the active client, connecting first when there is none."""
        if self._current is not None:
            return self._current
        return await self.connect()

    async def close(self) -> None:
        for client in list(self._clients.values()):
            await client.close()
        self._clients.clear()
        self._current = None


__all__ = ["EndpointPool"]
