import os
import sys

import pytest

_HERE = os.path.dirname(__file__)
sys.path.insert(0, _HERE)
sys.path.insert(0, os.path.dirname(_HERE))

from minerboard.logging_utils import reset_warn_once_cache  # noqa: E402

_ENV_VARS = (
    "RPC_URL",
    "RPC_URL_ALTERNATE",
    "RPC_URLS",
    "CONTRACT_ADDRESS",
    "START_BLOCK",
    "BLOCK_SCAN_CHUNK",
    "MIN_REFRESH_INTERVAL",
    "FRESHNESS_WINDOW",
    "REFRESH_INTERVAL",
    "CACHE_MAX_AGE",
    "CACHE_ABSOLUTE_MAX_AGE",
    "CACHE_URL",
    "HEALTH_INTERVAL",
    "CONNECT_TIMEOUT",
    "RPC_TIMEOUT",
    "BATCH_SIZE",
    "BATCH_DELAY",
    "USE_CONTRACT_LEADERBOARD",
    "STATIC_DIR",
    "MINERBOARD_CONFIG",
    "HOST",
    "PORT",
    "LOG_LEVEL",
    "LOG_JSON",
    "LOG_FILE",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_warn_once_cache()
    yield
