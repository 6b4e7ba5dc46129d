"""Process-wide connection state with hysteresis."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict

logger = logging.getLogger(__name__)

HEALTH_MAX = 5
DEFAULT_THRESHOLD = 2


@dataclass
class ConnectionState:
    connected: bool = False
    health: int = 0
    endpoint_index: int = 0
    lost: bool = False
    last_probe_at: float | None = None
    last_change_at: float | None = None


class ConnectionContext:
    """Owner of :class:`ConnectionState`.

    ``connected`` only becomes true once ``health`` climbs above
    ``threshold`` and drops back to false as soon as a failure leaves it at or
    below ``threshold``.  Total loss of every endpoint resets health to zero.
    """

    def __init__(self, *, threshold: int = DEFAULT_THRESHOLD, health_max: int = HEALTH_MAX) -> None:
        if not 0 <= threshold < health_max:
            raise ValueError("threshold must be within [0, health_max)")
        self.threshold = threshold
        self.health_max = health_max
        self._state = ConnectionState()
        self._lock = threading.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state.connected

    @property
    def lost(self) -> bool:
        return self._state.lost

    def _set_connected(self, value: bool) -> None:
        if self._state.connected != value:
            self._state.connected = value
            self._state.last_change_at = time.time()
            if value:
                logger.info("RPC connection stable (health=%d)", self._state.health)
            else:
                logger.warning("RPC connection marked down (health=%d)", self._state.health)

    def record_probe(self, ok: bool) -> ConnectionState:
        with self._lock:
            state = self._state
            state.last_probe_at = time.time()
            if ok:
                state.health = min(self.health_max, state.health + 1)
                state.lost = False
                if state.health > self.threshold:
                    self._set_connected(True)
            else:
                state.health = max(0, state.health - 1)
                if state.health <= self.threshold:
                    self._set_connected(False)
            return state

    def penalize(self) -> ConnectionState:
        """Apply a failed-probe penalty without an actual probe."""
        logger.debug("Applying health penalty after repeated read failures")
        return self.record_probe(False)

    def mark_connected(self, index: int) -> ConnectionState:
        with self._lock:
            self._state.endpoint_index = index
        return self.record_probe(True)

    def mark_lost(self) -> ConnectionState:
        with self._lock:
            self._state.health = 0
            self._state.lost = True
            self._set_connected(False)
            return self._state

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return asdict(self._state)


__all__ = ["ConnectionState", "ConnectionContext", "HEALTH_MAX", "DEFAULT_THRESHOLD"]
