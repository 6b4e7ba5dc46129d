"""Batched per-address hashrate reads with adaptive pacing."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import ContractRevert, RpcError
from .readers import AddressReader
from .retry import RetryPolicy, retry_async
from .rpc import JsonRpcClient
from .state import ConnectionContext

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Dict[str, int]], Awaitable[None]]

CONSECUTIVE_ERROR_THRESHOLD = 3
LARGE_SET_THRESHOLD = 1000
LARGE_SET_BATCHES = 100


class AdaptiveBatchTuner:
    """Adjust batch size and inter-batch delay from observed batch outcomes."""

    def __init__(
        self,
        batch_size: int = 10,
        delay: float = 1.0,
        *,
        min_batch: int = 5,
        max_batch: int = 50,
        min_delay: float = 0.1,
        max_delay: float = 10.0,
        good_latency: float = 1.0,
        poor_latency: float = 5.0,
        good_success: float = 0.9,
        poor_success: float = 0.7,
    ) -> None:
        if min_batch > max_batch:
            raise ValueError("min_batch must not exceed max_batch")
        self.min_batch = min_batch
        self.max_batch = max_batch
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.good_latency = good_latency
        self.poor_latency = poor_latency
        self.good_success = good_success
        self.poor_success = poor_success
        self.batch_size = self._clamp_batch(batch_size)
        self.delay = self._clamp_delay(delay)

    def _clamp_batch(self, value: float) -> int:
        return int(max(self.min_batch, min(self.max_batch, round(value))))

    def _clamp_delay(self, value: float) -> float:
        return max(self.min_delay, min(self.max_delay, value))

    def scale_for(self, total: int) -> None:
        """Raise the batch size for very large address sets."""
        if total > LARGE_SET_THRESHOLD:
            needed = math.ceil(total / LARGE_SET_BATCHES)
            if needed > self.batch_size:
                self.batch_size = self._clamp_batch(needed)
                logger.info("Large address set (%d): batch size raised to %d", total, self.batch_size)

    def record(self, succeeded: int, attempted: int, latency: float) -> None:
        if attempted <= 0:
            return
        rate = succeeded / attempted
        if rate >= self.good_success and latency <= self.good_latency:
            self.batch_size = self._clamp_batch(self.batch_size * 1.5)
            self.delay = self._clamp_delay(self.delay * 0.75)
        elif rate < self.poor_success or latency > self.poor_latency:
            self.batch_size = self._clamp_batch(self.batch_size * 0.5)
            self.delay = self._clamp_delay(self.delay * 2.0)
        else:
            # nudge toward the middle of the latency band
            target = (self.good_latency + self.poor_latency) / 2
            factor = 1.1 if latency < target else 0.9
            self.batch_size = self._clamp_batch(self.batch_size * factor)
            self.delay = self._clamp_delay(self.delay / factor)


@dataclass
class FetchResult:
    values: Dict[str, int] = field(default_factory=dict)
    succeeded: int = 0
    failed: int = 0
    batches: int = 0
    interrupted: bool = False
    skipped: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.succeeded > 0 or not self.values

    @property
    def read_values(self) -> Dict[str, int]:
        """Values for addresses that were attempted, without the zero fill."""
        skipped = set(self.skipped)
        return {a: v for a, v in self.values.items() if a not in skipped}


class HashrateFetcher:
    def __init__(
        self,
        reader: AddressReader,
        context: ConnectionContext,
        *,
        tuner: AdaptiveBatchTuner | None = None,
        retry_policy: RetryPolicy | None = None,
        checkpoint_batches: int = 10,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.reader = reader
        self.context = context
        self.tuner = tuner or AdaptiveBatchTuner()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=5,
            delay=1.0,
            retry_on=(RpcError,),
            give_up_on=(ContractRevert,),
        )
        self.checkpoint_batches = max(1, int(checkpoint_batches))
        self._sleep = sleep
        self._consecutive_errors = 0

    async def _read_one(self, client: JsonRpcClient, address: str) -> Tuple[str, Optional[int]]:
        try:
            value = await retry_async(
                lambda: self.reader.read(client, address),
                self.retry_policy,
                sleep=self._sleep,
            )
        except RpcError as exc:
            logger.debug("Hashrate read failed for %s: %s", address, exc)
            return address, None
        return address, value

    def _note(self, ok: bool) -> None:
        if ok:
            self._consecutive_errors = 0
            return
        self._consecutive_errors += 1
        if self._consecutive_errors >= CONSECUTIVE_ERROR_THRESHOLD:
            logger.warning(
                "%d consecutive hashrate read failures; lowering connection health",
                self._consecutive_errors,
            )
            self.context.penalize()
            self._consecutive_errors = 0

    async def fetch(
        self,
        client: JsonRpcClient,
        addresses: Sequence[str],
        on_progress: ProgressCallback | None = None,
    ) -> FetchResult:
        """Read every address; failures and skipped addresses map to 0."""

        result = FetchResult()
        pending: List[str] = list(dict.fromkeys(a.lower() for a in addresses))
        self.tuner.scale_for(len(pending))
        self._consecutive_errors = 0
        index = 0

        while index < len(pending):
            if self.context.lost:
                logger.warning(
                    "Connection lost; stopping fetch with %d of %d addresses read",
                    index,
                    len(pending),
                )
                result.interrupted = True
                break

            batch = pending[index : index + self.tuner.batch_size]
            started = time.monotonic()
            outcomes = await asyncio.gather(*(self._read_one(client, a) for a in batch))
            latency = time.monotonic() - started

            ok_count = 0
            for address, value in outcomes:
                self._note(value is not None)
                if value is None:
                    result.values[address] = 0
                    result.failed += 1
                else:
                    result.values[address] = value
                    result.succeeded += 1
                    ok_count += 1
            result.batches += 1
            index += len(batch)
            self.tuner.record(ok_count, len(batch), latency)
            logger.debug(
                "Batch %d: %d/%d ok in %.2fs (next size=%d delay=%.2fs)",
                result.batches,
                ok_count,
                len(batch),
                latency,
                self.tuner.batch_size,
                self.tuner.delay,
            )

            if on_progress is not None and result.batches % self.checkpoint_batches == 0:
                await on_progress(dict(result.values))
            if index < len(pending):
                await self._sleep(self.tuner.delay)

        result.skipped = pending[index:]
        for address in result.skipped:
            result.values.setdefault(address, 0)
        logger.info(
            "Fetched hashrate for %d addresses (%d failed, %d batches%s)",
            len(result.values),
            result.failed,
            result.batches,
            ", interrupted" if result.interrupted else "",
        )
        return result


__all__ = ["AdaptiveBatchTuner", "FetchResult", "HashrateFetcher"]
