"""In-process JSON-RPC double used across the test suite."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from minerboard import abi
from minerboard.cache import DurableCache, MemoryStore
from minerboard.controller import RefreshController
from minerboard.endpoints import EndpointPool
from minerboard.errors import ContractRevert, ProviderLimitError, RpcError
from minerboard.fetcher import HashrateFetcher
from minerboard.readers import ContractLeaderboardReader, NetworkTotalReader, default_hashrate_reader
from minerboard.scanner import EventScanner
from minerboard.state import ConnectionContext

CONTRACT = "0x09ee83d8fa0f3f03f2aefad6a82353c1e5de5705"

SEL_PLAYER = abi.function_selector(abi.PLAYER_HASHRATE_FN)
SEL_MINERS = abi.function_selector(abi.MINERS_FN)
SEL_TOTAL = abi.function_selector(abi.TOTAL_HASHRATE_FN)
SEL_BOARD = abi.function_selector(abi.GET_LEADERBOARD_FN)


def addr(n: int) -> str:
    return "0x" + format(n, "040x")


def word(value: int) -> str:
    return format(value, "064x")


def encode_board(entries: Sequence[Tuple[str, int]]) -> str:
    body = word(32) + word(len(entries))
    for address, value in entries:
        body += abi.encode_address(address) + word(value)
    return "0x" + body


class FakeRpc:
    """Mimics the :class:`minerboard.rpc.JsonRpcClient` surface.

    ``events`` is a list of ``(block, address)`` pairs.  ``max_range`` makes
    ``get_logs`` reject windows spanning more blocks than that with a
    provider limit error.  ``failing_ranges`` raise a plain RPC error for any
    window overlapping them.
    """

    def __init__(
        self,
        url: str = "https://rpc.test",
        *,
        head: int = 1_000,
        events: Iterable[Tuple[int, str]] = (),
        hashrates: Optional[Mapping[str, int]] = None,
        total: Optional[int] = None,
        board: Optional[Sequence[Tuple[str, int]]] = None,
        max_range: Optional[int] = None,
        failing_ranges: Sequence[Tuple[int, int]] = (),
        primary_reverts: bool = False,
        failing_addresses: Iterable[str] = (),
        down: bool = False,
    ) -> None:
        self.url = url
        self.head = head
        self.events = list(events)
        self.hashrates = {k.lower(): v for k, v in (hashrates or {}).items()}
        self.total = total
        self.board = board
        self.max_range = max_range
        self.failing_ranges = list(failing_ranges)
        self.primary_reverts = primary_reverts
        self.failing_addresses: Set[str] = {a.lower() for a in failing_addresses}
        self.down = down
        self.calls: Dict[str, int] = {}
        self.log_queries: List[Tuple[int, int]] = []
        self.closed = False

    def _count(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        if self.down:
            raise RpcError("connection refused", retryable=True)

    async def block_number(self, *, timeout: float | None = None) -> int:
        self._count("eth_blockNumber")
        return self.head

    async def chain_id(self, *, timeout: float | None = None) -> int:
        self._count("eth_chainId")
        return 2741

    async def get_logs(
        self,
        *,
        address: str,
        topics: Sequence[Optional[str]],
        from_block: int,
        to_block: int,
        timeout: float | None = None,
    ) -> List[Dict[str, Any]]:
        self._count("eth_getLogs")
        self.log_queries.append((from_block, to_block))
        for lo, hi in self.failing_ranges:
            if from_block <= hi and to_block >= lo:
                raise RpcError("upstream timeout", retryable=True)
        if self.max_range is not None and to_block - from_block + 1 > self.max_range:
            raise ProviderLimitError("query returned more than 10000 results")
        return [
            {
                "blockNumber": hex(block),
                "topics": [topics[0], "0x" + "0" * 24 + who[2:].lower()],
                "data": "0x",
            }
            for block, who in self.events
            if from_block <= block <= to_block
        ]

    async def eth_call(
        self, to: str, data: str, *, block: str = "latest", timeout: float | None = None
    ) -> str:
        self._count("eth_call")
        selector = data[:10]
        if selector == SEL_TOTAL:
            if self.total is None:
                raise ContractRevert("execution reverted")
            return "0x" + word(self.total)
        if selector == SEL_BOARD:
            if self.board is None:
                raise ContractRevert("execution reverted")
            return encode_board(self.board)
        who = "0x" + data[-40:]
        if selector == SEL_PLAYER and self.primary_reverts:
            raise ContractRevert("execution reverted")
        if selector in (SEL_PLAYER, SEL_MINERS):
            self.calls[selector] = self.calls.get(selector, 0) + 1
            if who in self.failing_addresses:
                raise RpcError("rate limit", retryable=True)
            return "0x" + word(self.hashrates.get(who, 0))
        raise ContractRevert("unknown selector")

    async def close(self) -> None:
        self.closed = True


A, B, C = addr(0xA), addr(0xB), addr(0xC)


async def no_sleep(_delay: float) -> None:
    return None


def abc_rpc(**kwargs: Any) -> FakeRpc:
    """B and C tie at 300 and B is discovered first; A trails at 100."""
    return FakeRpc(
        head=100,
        events=[(10, B), (20, C), (30, A)],
        hashrates={A: 100, B: 300, C: 300},
        **kwargs,
    )


def build_controller(
    rpcs: Sequence[FakeRpc], cache: Any = None, *, board_reader: bool = False, **kwargs: Any
) -> RefreshController:
    ctx = ConnectionContext()
    by_url = {r.url: r for r in rpcs}
    pool = EndpointPool(list(by_url), ctx, client_factory=lambda url: by_url[url])
    cache = cache or DurableCache(MemoryStore())
    scanner = EventScanner(pool.acquire, CONTRACT, cache, block_chunk=10_000)
    fetcher = HashrateFetcher(default_hashrate_reader(CONTRACT), ctx, sleep=no_sleep)
    return RefreshController(
        pool,
        ctx,
        scanner,
        fetcher,
        cache,
        total_reader=NetworkTotalReader(CONTRACT),
        leaderboard_reader=ContractLeaderboardReader(CONTRACT) if board_reader else None,
        **kwargs,
    )
