"""Runtime configuration for the leaderboard service.

Values are resolved from environment variables first, then from an optional
TOML file (``MINERBOARD_CONFIG``), then from the defaults below.  The file is
validated with :class:`SettingsModel` before use.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_RPC_URLS: tuple[str, ...] = (
    "https://api.mainnet.abs.xyz",
    "https://abstract.drpc.org",
)
DEFAULT_CONTRACT_ADDRESS = "0x09Ee83D8fA0f3F03f2aefad6a82353c1e5DE5705"
# one week of ~1s blocks
DEFAULT_BLOCK_CHUNK = 604_800


class SettingsModel(BaseModel):
    """Schema for the optional TOML configuration file."""

    model_config = ConfigDict(extra="forbid")

    rpc_urls: Optional[List[str]] = None
    contract_address: Optional[str] = None
    start_block: Optional[int] = None
    block_chunk: Optional[int] = None
    max_halvings: Optional[int] = None
    persist_every: Optional[int] = None
    min_refresh_interval: Optional[float] = None
    freshness_window: Optional[float] = None
    refresh_interval: Optional[float] = None
    cache_max_age: Optional[float] = None
    cache_absolute_max_age: Optional[float] = None
    cache_url: Optional[str] = None
    health_interval: Optional[float] = None
    health_threshold: Optional[int] = None
    connect_timeout: Optional[float] = None
    rpc_timeout: Optional[float] = None
    batch_size: Optional[int] = None
    batch_delay: Optional[float] = None
    min_batch_size: Optional[int] = None
    max_batch_size: Optional[int] = None
    read_attempts: Optional[int] = None
    read_retry_delay: Optional[float] = None
    checkpoint_batches: Optional[int] = None
    use_contract_leaderboard: Optional[bool] = None
    static_dir: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None

    @field_validator("rpc_urls")
    @classmethod
    def _urls_non_empty(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return value
        cleaned = [u.strip() for u in value if isinstance(u, str) and u.strip()]
        if not cleaned:
            raise ValueError("rpc_urls must contain at least one URL")
        for url in cleaned:
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"unsupported rpc url scheme: {url}")
        return cleaned

    @field_validator("contract_address")
    @classmethod
    def _address_shape(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        text = value.strip()
        if not text.startswith("0x") or len(text) != 42:
            raise ValueError("contract_address must be a 0x-prefixed 20-byte hex string")
        return text

    @field_validator(
        "block_chunk",
        "persist_every",
        "batch_size",
        "min_batch_size",
        "max_batch_size",
        "read_attempts",
        "checkpoint_batches",
        "health_threshold",
    )
    @classmethod
    def _positive_int(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("must be positive")
        return value


def load_config_file(path: str | os.PathLike[str]) -> dict[str, Any]:
    """Read and validate a TOML configuration file."""

    file = Path(path)
    try:
        with file.open("rb") as fh:
            raw = tomllib.load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {file}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid TOML in {file}: {exc}") from exc

    section = raw.get("minerboard", raw)
    try:
        model = SettingsModel.model_validate(section)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration in {file}: {exc}") from exc
    return model.model_dump(exclude_none=True)


def _split_urls(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass
class Settings:
    """Tunables for the scan / fetch / cache pipeline."""

    rpc_urls: tuple[str, ...] = DEFAULT_RPC_URLS
    contract_address: str = DEFAULT_CONTRACT_ADDRESS
    start_block: int = 0
    block_chunk: int = DEFAULT_BLOCK_CHUNK
    max_halvings: int = 4
    persist_every: int = 100
    min_refresh_interval: float = 60.0
    freshness_window: float = 300.0
    refresh_interval: float = 120.0
    cache_max_age: float = 3600.0
    cache_absolute_max_age: float = 7 * 24 * 3600.0
    cache_url: str = "memory://"
    health_interval: float = 15.0
    health_threshold: int = 2
    connect_timeout: float = 10.0
    rpc_timeout: float = 30.0
    batch_size: int = 10
    batch_delay: float = 1.0
    min_batch_size: int = 5
    max_batch_size: int = 50
    read_attempts: int = 5
    read_retry_delay: float = 1.0
    checkpoint_batches: int = 10
    use_contract_leaderboard: bool = False
    static_dir: str = "static"
    host: str = "0.0.0.0"
    port: int = 3000

    @classmethod
    def from_env(cls, cfg: Mapping[str, Any] | None = None) -> "Settings":
        """Create settings using environment variables and an optional dict."""

        cfg = dict(cfg or {})
        env = os.getenv

        def _pick(name: str, key: str, default: Any, cast: Callable[[Any], Any]) -> Any:
            raw = env(name)
            if raw is None or raw.strip() == "":
                raw = cfg.get(key, default)
            try:
                return cast(raw)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"invalid value for {name}: {raw!r}") from exc

        urls: list[str] = []
        if env("RPC_URLS"):
            urls = _split_urls(env("RPC_URLS") or "")
        else:
            primary = env("RPC_URL")
            alternate = env("RPC_URL_ALTERNATE")
            if primary or alternate:
                urls = [u for u in (primary, alternate) if u]
                # keep the remaining defaults as later fallbacks
                urls.extend(u for u in cfg.get("rpc_urls", DEFAULT_RPC_URLS) if u not in urls)
            else:
                urls = list(cfg.get("rpc_urls", DEFAULT_RPC_URLS))
        if not urls:
            raise ConfigError("at least one RPC URL must be configured")

        settings = cls(
            rpc_urls=tuple(urls),
            contract_address=_pick(
                "CONTRACT_ADDRESS", "contract_address", DEFAULT_CONTRACT_ADDRESS, str
            ).strip(),
            start_block=_pick("START_BLOCK", "start_block", 0, int),
            block_chunk=_pick("BLOCK_SCAN_CHUNK", "block_chunk", DEFAULT_BLOCK_CHUNK, int),
            max_halvings=_pick("BLOCK_SCAN_MAX_HALVINGS", "max_halvings", 4, int),
            persist_every=_pick("SCAN_PERSIST_EVERY", "persist_every", 100, int),
            min_refresh_interval=_pick(
                "MIN_REFRESH_INTERVAL", "min_refresh_interval", 60.0, float
            ),
            freshness_window=_pick("FRESHNESS_WINDOW", "freshness_window", 300.0, float),
            refresh_interval=_pick("REFRESH_INTERVAL", "refresh_interval", 120.0, float),
            cache_max_age=_pick("CACHE_MAX_AGE", "cache_max_age", 3600.0, float),
            cache_absolute_max_age=_pick(
                "CACHE_ABSOLUTE_MAX_AGE", "cache_absolute_max_age", 7 * 24 * 3600.0, float
            ),
            cache_url=_pick("CACHE_URL", "cache_url", "memory://", str).strip(),
            health_interval=_pick("HEALTH_INTERVAL", "health_interval", 15.0, float),
            health_threshold=_pick("HEALTH_THRESHOLD", "health_threshold", 2, int),
            connect_timeout=_pick("CONNECT_TIMEOUT", "connect_timeout", 10.0, float),
            rpc_timeout=_pick("RPC_TIMEOUT", "rpc_timeout", 30.0, float),
            batch_size=_pick("BATCH_SIZE", "batch_size", 10, int),
            batch_delay=_pick("BATCH_DELAY", "batch_delay", 1.0, float),
            min_batch_size=_pick("MIN_BATCH_SIZE", "min_batch_size", 5, int),
            max_batch_size=_pick("MAX_BATCH_SIZE", "max_batch_size", 50, int),
            read_attempts=_pick("READ_ATTEMPTS", "read_attempts", 5, int),
            read_retry_delay=_pick("READ_RETRY_DELAY", "read_retry_delay", 1.0, float),
            checkpoint_batches=_pick("CHECKPOINT_BATCHES", "checkpoint_batches", 10, int),
            use_contract_leaderboard=_pick(
                "USE_CONTRACT_LEADERBOARD", "use_contract_leaderboard", False, _parse_bool
            ),
            static_dir=_pick("STATIC_DIR", "static_dir", "static", str),
            host=_pick("HOST", "host", "0.0.0.0", str),
            port=_pick("PORT", "port", 3000, int),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.min_batch_size > self.max_batch_size:
            raise ConfigError("min_batch_size must not exceed max_batch_size")
        if self.block_chunk <= 0:
            raise ConfigError("block_chunk must be positive")
        if self.cache_absolute_max_age < self.cache_max_age:
            raise ConfigError("cache_absolute_max_age must be >= cache_max_age")
        if self.read_attempts <= 0:
            raise ConfigError("read_attempts must be positive")
        self.batch_size = max(self.min_batch_size, min(self.max_batch_size, self.batch_size))


def load_settings(path: str | os.PathLike[str] | None = None) -> Settings:
    """Return :class:`Settings` merged from ``path`` (or ``MINERBOARD_CONFIG``) and env."""

    cfg: dict[str, Any] = {}
    source = path or os.getenv("MINERBOARD_CONFIG")
    if source:
        cfg = load_config_file(source)
        logger.info("Loaded configuration file %s", source)
    return Settings.from_env(cfg)


__all__ = ["Settings", "SettingsModel", "load_settings", "load_config_file"]
