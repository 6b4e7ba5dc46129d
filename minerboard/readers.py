"""Per-address contract reads with ranked fallback accessors."""

from __future__ import annotations

import logging
from typing import List, Protocol, Sequence, Tuple

from . import abi
from .errors import ContractRevert, RpcError
from .rpc import JsonRpcClient

logger = logging.getLogger(__name__)


class AddressReader(Protocol):
    name: str

    async def read(self, client: JsonRpcClient, address: str) -> int:
        ...


class ContractUintReader:
    """``eth_call`` of a ``fn(address) returns (uint256)`` view."""

    def __init__(self, contract: str, signature: str) -> None:
        self.contract = abi.normalize_address(contract)
        self.signature = signature
        self.name = signature.split("(", 1)[0]

    async def read(self, client: JsonRpcClient, address: str) -> int:
        data = abi.encode_call(self.signature, address)
        raw = await client.eth_call(self.contract, data)
        try:
            return abi.decode_uint256(raw)
        except ValueError as exc:
            raise ContractRevert(f"{self.name}: undecodable return data") from exc


class RankedReader:
    """Try each reader in order; a reader that reverts is skipped afterwards.

    Only :class:`ContractRevert` marks a reader unavailable.  Transport errors
    propagate so the caller's retry policy can deal with them.
    """

    def __init__(self, readers: Sequence[AddressReader]) -> None:
        if not readers:
            raise ValueError("RankedReader needs at least one reader")
        self.readers: List[AddressReader] = list(readers)
        self._unavailable: set[str] = set()
        self.name = "ranked(" + ",".join(r.name for r in self.readers) + ")"

    @property
    def unavailable(self) -> frozenset[str]:
        return frozenset(self._unavailable)

    def reset(self) -> None:
        self._unavailable.clear()

    async def read(self, client: JsonRpcClient, address: str) -> int:
        last: RpcError | None = None
        for reader in self.readers:
            if reader.name in self._unavailable:
                continue
            try:
                return await reader.read(client, address)
            except ContractRevert as exc:
                if reader.name not in self._unavailable:
                    logger.info("Accessor %s unavailable: %s", reader.name, exc)
                self._unavailable.add(reader.name)
                last = exc
        raise last or ContractRevert("no hashrate accessor available")


def default_hashrate_reader(contract: str) -> RankedReader:
    return RankedReader(
        [
            ContractUintReader(contract, abi.PLAYER_HASHRATE_FN),
            ContractUintReader(contract, abi.MINERS_FN),
        ]
    )


class NetworkTotalReader:
    def __init__(self, contract: str) -> None:
        self.contract = abi.normalize_address(contract)

    async def read(self, client: JsonRpcClient) -> int:
        raw = await client.eth_call(self.contract, abi.function_selector(abi.TOTAL_HASHRATE_FN))
        return abi.decode_uint256(raw)


class ContractLeaderboardReader:
    """Read the contract's own ``getLeaderboard()`` when it exposes one."""

    def __init__(self, contract: str) -> None:
        self.contract = abi.normalize_address(contract)

    async def read(self, client: JsonRpcClient) -> List[Tuple[str, int]]:
        raw = await client.eth_call(self.contract, abi.function_selector(abi.GET_LEADERBOARD_FN))
        try:
            return abi.decode_address_uint_tuples(raw)
        except ValueError as exc:
            raise ContractRevert(f"getLeaderboard: {exc}") from exc


__all__ = [
    "AddressReader",
    "ContractUintReader",
    "RankedReader",
    "NetworkTotalReader",
    "ContractLeaderboardReader",
    "default_hashrate_reader",
]
