"""Mining leaderboard republisher for an on-chain hashrate contract."""

from __future__ import annotations

__version__ = "0.3.0"

__all__ = ["__version__"]
