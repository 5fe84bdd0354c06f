"""
Per-agent nonce sequencing.

Nonces issued here are ordering hints for the ledger. They are not a replay
control: the Treasury contract rejects reused nonces on its own, and that
check is the only uniqueness guarantee. Seeding from wall-clock milliseconds
makes a collision with nonces consumed before a restart unlikely, not
impossible.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .schema import normalize_address

logger = logging.getLogger(__name__)


class NonceAllocator:
    """Monotonic nonce counters keyed by agent address.

    Allocation for one agent is serialized by that agent's lock; different
    agents never contend with each other.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._counters: dict[str, int] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, agent: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(agent)
            if lock is None:
                lock = threading.Lock()
                self._locks[agent] = lock
            return lock

    def next_nonce(self, agent_address: str) -> str:
        agent = normalize_address(agent_address)
        with self._lock_for(agent):
            last = self._counters.get(agent)
            if last is None:
                value = int(self._clock() * 1000)
                logger.debug("Seeded nonce counter for %s at %d", agent, value)
            else:
                value = last + 1
            self._counters[agent] = value
        return str(value)

    def peek(self, agent_address: str) -> Optional[str]:
        """Last nonce issued for an agent, or None if none was issued."""
        agent = normalize_address(agent_address)
        with self._lock_for(agent):
            last = self._counters.get(agent)
        return None if last is None else str(last)
