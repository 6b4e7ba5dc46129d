"""Exception hierarchy shared by the refresh pipeline."""

from __future__ import annotations


class MinerboardError(Exception):
    """Base class for all errors raised by :mod:`minerboard`."""


class ConfigError(MinerboardError):
    """Raised when configuration values cannot be parsed or validated."""


class RpcError(MinerboardError):
    """Raised when a JSON-RPC request fails."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        status: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status
        self.retryable = retryable


class RpcTimeout(RpcError):
    """Raised when an RPC call does not complete within its deadline."""

    def __init__(self, message: str = "rpc timeout") -> None:
        super().__init__(message, retryable=True)


class ProviderLimitError(RpcError):
    """Raised when the provider rejects a log query as too large."""


class ContractRevert(RpcError):
    """Raised when a view call reverts or the function does not exist."""


class AllEndpointsUnreachable(MinerboardError):
    """Raised when no configured RPC endpoint answers."""


class CacheBackendError(MinerboardError):
    """Raised by key/value adapters when the backing store fails."""


__all__ = [
    "MinerboardError",
    "ConfigError",
    "RpcError",
    "RpcTimeout",
    "ProviderLimitError",
    "ContractRevert",
    "AllEndpointsUnreachable",
    "CacheBackendError",
]
