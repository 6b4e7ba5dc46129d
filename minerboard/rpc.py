"""Async JSON-RPC client for EVM-style endpoints."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import aiohttp

from . import jsonutil
from .errors import ContractRevert, ProviderLimitError, RpcError, RpcTimeout

logger = logging.getLogger(__name__)

_RETRYABLE_MARKERS = (
    "timeout",
    "timed out",
    "too many requests",
    "rate limit",
    "temporarily unavailable",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "connection reset",
    "internal error",
)

_LIMIT_MARKERS = (
    "query returned more than",
    "more than 10000 results",
    "too many results",
    "block range",
    "range is too large",
    "limit exceeded",
    "response size",
    "exceed maximum block range",
    "log response size exceeded",
)

_REVERT_MARKERS = ("execution reverted", "revert", "invalid opcode")


def classify_error(message: str, *, code: int | None = None, status: int | None = None) -> RpcError:
    """Map a provider error message onto the :mod:`minerboard.errors` taxonomy."""

    text = message.lower()
    if any(marker in text for marker in _LIMIT_MARKERS):
        return ProviderLimitError(message, code=code, status=status)
    if code == 3 or any(marker in text for marker in _REVERT_MARKERS):
        return ContractRevert(message, code=code, status=status)
    retryable = status in (429, 502, 503, 504) or any(m in text for m in _RETRYABLE_MARKERS)
    return RpcError(message, code=code, status=status, retryable=retryable)


def _quantity(method: str, result: Any) -> int:
    if not isinstance(result, str):
        raise RpcError(f"invalid {method} result {result!r}", retryable=True)
    try:
        return int(result, 16)
    except ValueError as exc:
        raise RpcError(f"invalid {method} result {result!r}", retryable=True) from exc


class JsonRpcClient:
    """Shared aiohttp session posting JSON-RPC 2.0 requests to one endpoint."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
        user_agent: str = "minerboard/0.3",
    ) -> None:
        self.url = url
        self.timeout = float(timeout)
        self._session = session
        self._owns_session = session is None
        self._session_lock = asyncio.Lock()
        self._user_agent = user_agent
        self._ids = itertools.count(1)

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"JsonRpcClient({self.url!r})"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._session is None or self._session.closed:
                headers = {
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    "User-Agent": self._user_agent,
                }
                self._session = aiohttp.ClientSession(headers=headers)
                self._owns_session = True
            return self._session

    async def close(self) -> None:
        async with self._session_lock:
            if self._owns_session and self._session is not None and not self._session.closed:
                await self._session.close()
            self._session = None

    async def call(self, method: str, params: Sequence[Any] | None = None, *, timeout: float | None = None) -> Any:
        """Invoke ``method`` and return its ``result`` field.

        The whole round trip is raced against ``timeout``; expiry raises
        :class:`RpcTimeout` so callers can treat it as any other failure.
        """

        deadline = self.timeout if timeout is None else float(timeout)
        try:
            return await asyncio.wait_for(self._call(method, list(params or [])), deadline)
        except asyncio.TimeoutError as exc:
            raise RpcTimeout(f"{method} timed out after {deadline:.1f}s on {self.url}") from exc

    async def _call(self, method: str, params: List[Any]) -> Any:
        session = await self._ensure_session()
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            async with session.post(self.url, data=jsonutil.dumps_bytes(payload)) as resp:
                raw = await resp.read()
                status = resp.status
        except aiohttp.ClientError as exc:
            raise RpcError(f"transport error: {exc}", retryable=True) from exc

        if status >= 400:
            snippet = raw[:200].decode("utf-8", "replace")
            raise classify_error(f"HTTP {status}: {snippet}", status=status)

        try:
            data = jsonutil.loads(raw)
        except Exception as exc:
            raise RpcError(f"invalid JSON-RPC response: {raw[:200]!r}", retryable=True) from exc

        if isinstance(data, Mapping) and data.get("error"):
            err = data["error"]
            if isinstance(err, Mapping):
                message = str(err.get("message") or err)
                extra = err.get("data")
                if isinstance(extra, str) and extra:
                    message = f"{message}: {extra}"
                code = err.get("code")
                raise classify_error(message, code=code if isinstance(code, int) else None)
            raise classify_error(str(err))
        if not isinstance(data, Mapping):
            raise RpcError(f"unexpected JSON-RPC payload type {type(data).__name__}")
        return data.get("result")

    # convenience wrappers -------------------------------------------------
    async def block_number(self, *, timeout: float | None = None) -> int:
        result = await self.call("eth_blockNumber", [], timeout=timeout)
        return _quantity("eth_blockNumber", result)

    async def chain_id(self, *, timeout: float | None = None) -> int:
        result = await self.call("eth_chainId", [], timeout=timeout)
        return _quantity("eth_chainId", result)

    async def get_logs(
        self,
        *,
        address: str,
        topics: Sequence[Optional[str]],
        from_block: int,
        to_block: int,
        timeout: float | None = None,
    ) -> List[Dict[str, Any]]:
        params = {
            "address": address,
            "topics": list(topics),
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }
        result = await self.call("eth_getLogs", [params], timeout=timeout)
        if result is None:
            return []
        if not isinstance(result, list):
            raise RpcError(f"eth_getLogs returned {type(result).__name__}")
        return [entry for entry in result if isinstance(entry, dict)]

    async def eth_call(
        self,
        to: str,
        data: str,
        *,
        block: str = "latest",
        timeout: float | None = None,
    ) -> str:
        result = await self.call("eth_call", [{"to": to, "data": data}, block], timeout=timeout)
        if not isinstance(result, str):
            raise RpcError(f"eth_call returned {type(result).__name__}")
        if result in ("0x", ""):
            # empty return data: function missing on the target contract
            raise ContractRevert(f"empty return data for {data[:10]}")
        return result


__all__ = ["JsonRpcClient", "classify_error"]
