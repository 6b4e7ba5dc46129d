"""Discover participant addresses from ``InitialFacilityPurchased`` logs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from . import abi
from .cache import DurableCache
from .errors import ContractRevert, ProviderLimitError, RpcError
from .retry import RetryPolicy, retry_async
from .rpc import JsonRpcClient

logger = logging.getLogger(__name__)

ClientProvider = Callable[[], Awaitable[JsonRpcClient]]

DEFAULT_WINDOW_RETRY = RetryPolicy(
    max_attempts=3,
    delay=1.0,
    backoff="exponential",
    max_delay=5.0,
    retry_on=(RpcError,),
    give_up_on=(ProviderLimitError, ContractRevert),
)


@dataclass
class ScanCheckpoint:
    """Highest fully processed block plus every address seen so far."""

    last_scanned_block: Optional[int] = None
    addresses: List[str] = field(default_factory=list)
    _seen: set[str] = field(default_factory=set, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        ordered: List[str] = []
        for addr in self.addresses:
            a = addr.lower()
            if a not in self._seen:
                self._seen.add(a)
                ordered.append(a)
        self.addresses = ordered

    def add(self, address: str) -> bool:
        a = address.lower()
        if a in self._seen:
            return False
        self._seen.add(a)
        self.addresses.append(a)
        return True

    def advance(self, block: int) -> None:
        if self.last_scanned_block is None or block > self.last_scanned_block:
            self.last_scanned_block = block

    def to_dict(self) -> Dict[str, Any]:
        return {"lastScannedBlock": self.last_scanned_block, "addresses": list(self.addresses)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "ScanCheckpoint":
        if not data:
            return cls()
        raw_block = data.get("lastScannedBlock")
        block = int(raw_block) if raw_block is not None else None
        addresses = [str(a) for a in data.get("addresses") or [] if isinstance(a, str)]
        return cls(last_scanned_block=block, addresses=addresses)


@dataclass
class ScanResult:
    checkpoint: ScanCheckpoint
    windows_scanned: int = 0
    windows_failed: int = 0
    new_addresses: int = 0
    ok: bool = True
    head: Optional[int] = None

    @property
    def complete(self) -> bool:
        return self.ok and self.windows_failed == 0


class EventScanner:
    """Walk the chain in fixed windows, halving a window on provider limits.

    Windows that keep failing are skipped; the checkpoint still advances past
    them so a scan never revisits blocks below it.
    """

    def __init__(
        self,
        client_provider: ClientProvider,
        contract: str,
        cache: DurableCache | None = None,
        *,
        block_chunk: int = 604_800,
        max_halvings: int = 4,
        persist_every: int = 100,
        start_block: int = 0,
        retry_policy: RetryPolicy = DEFAULT_WINDOW_RETRY,
    ) -> None:
        if block_chunk <= 0:
            raise ValueError("block_chunk must be positive")
        self.client_provider = client_provider
        self.contract = abi.normalize_address(contract)
        self.cache = cache
        self.block_chunk = int(block_chunk)
        self.max_halvings = max(0, int(max_halvings))
        self.persist_every = max(1, int(persist_every))
        self.start_block = max(0, int(start_block))
        self.retry_policy = retry_policy
        self.topic0 = abi.event_topic(abi.PLAYER_JOINED_EVENT)

    async def _persist(self, checkpoint: ScanCheckpoint) -> None:
        if self.cache is not None:
            await self.cache.save_checkpoint(checkpoint.to_dict())

    async def _fetch(self, client: JsonRpcClient, lo: int, hi: int) -> List[Dict[str, Any]]:
        return await retry_async(
            lambda: client.get_logs(
                address=self.contract, topics=[self.topic0], from_block=lo, to_block=hi
            ),
            self.retry_policy,
        )

    async def _scan_window(
        self, client: JsonRpcClient, lo: int, hi: int, depth: int = 0
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Return ``(logs, failed_subwindows)`` for ``[lo, hi]``."""

        try:
            return await self._fetch(client, lo, hi), 0
        except ProviderLimitError as exc:
            if depth >= self.max_halvings or hi <= lo:
                logger.warning(
                    "Abandoning blocks %d-%d after %d halvings: %s", lo, hi, depth, exc
                )
                return [], 1
            mid = lo + (hi - lo) // 2
            logger.debug("Provider limit on %d-%d, halving", lo, hi)
            left, failed_left = await self._scan_window(client, lo, mid, depth + 1)
            right, failed_right = await self._scan_window(client, mid + 1, hi, depth + 1)
            return left + right, failed_left + failed_right
        except RpcError as exc:
            logger.warning("Skipping blocks %d-%d: %s", lo, hi, exc)
            return [], 1

    def _extract(self, log: Mapping[str, Any]) -> Optional[str]:
        topics = log.get("topics") or []
        if len(topics) < 2:
            return None
        try:
            return abi.topic_to_address(topics[1])
        except ValueError:
            logger.debug("Ignoring log with malformed topic: %s", topics[1])
            return None

    async def scan(self, checkpoint: ScanCheckpoint | None = None) -> ScanResult:
        checkpoint = checkpoint if checkpoint is not None else ScanCheckpoint()
        result = ScanResult(checkpoint=checkpoint)
        try:
            client = await self.client_provider()
            head = await client.block_number()
        except Exception as exc:
            logger.warning("Event scan aborted before start: %s", exc)
            result.ok = False
            return result
        result.head = head

        if checkpoint.last_scanned_block is None:
            lo = self.start_block
        else:
            lo = max(checkpoint.last_scanned_block + 1, self.start_block)
        if lo > head:
            logger.debug("Scan checkpoint %s already at head %d", checkpoint.last_scanned_block, head)
            return result

        logger.info("Scanning blocks %d-%d in windows of %d", lo, head, self.block_chunk)
        since_persist = 0
        while lo <= head:
            hi = min(lo + self.block_chunk - 1, head)
            logs, failed = await self._scan_window(client, lo, hi)
            result.windows_scanned += 1
            if failed:
                result.windows_failed += 1
            for log in logs:
                address = self._extract(log)
                if address and checkpoint.add(address):
                    result.new_addresses += 1
                    since_persist += 1
            checkpoint.advance(hi)
            if since_persist >= self.persist_every:
                await self._persist(checkpoint)
                since_persist = 0
            lo = hi + 1

        await self._persist(checkpoint)
        logger.info(
            "Scan finished at block %d: %d new addresses (%d total), %d/%d windows failed",
            head,
            result.new_addresses,
            len(checkpoint.addresses),
            result.windows_failed,
            result.windows_scanned,
        )
        return result


__all__ = ["ScanCheckpoint", "ScanResult", "EventScanner"]
