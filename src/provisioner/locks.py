"""Named-resource mutex registry.

Mutations that touch a shared parent (a subnet write rewrites its virtual
network, a route table association rewrites the subnet) must not run
concurrently. Each such parent is identified by a (category, name) key and
guarded by an asyncio.Lock handed out from a LockRegistry.

The registry is injected into every orchestrator; there is no module-level
state. Entries are created on first use and never removed: the key space is
bounded by the distinct resource names touched in one run.

Multi-lock acquisition always follows one canonical order (category rank,
then case-folded name) so two callers needing overlapping sets cannot
deadlock.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import AsyncIterator, Iterable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from enum import Enum

from .errors import LockTimeoutError

logger = logging.getLogger(__name__)


class LockCategory(str, Enum):
    """Lock categories, declared outermost first.

    Definition order is the acquisition order used by hold_all.
    """

    KEY_VAULT = "key_vault"
    NETWORK_SECURITY_GROUP = "network_security_group"
    ROUTE_TABLE = "route_table"
    VIRTUAL_NETWORK = "virtual_network"
    SUBNET = "subnet"
    NETWORK_INTERFACE = "network_interface"
    VIRTUAL_NETWORK_PEERING = "virtual_network_peering"

    @property
    def rank(self) -> int:
        return list(LockCategory).index(self)


@dataclass(frozen=True)
class LockKey:
    """A (category, name) pair. Names compare case-insensitively.

    The category may be given by value ("virtual_network").
    """

    category: LockCategory
    name: str

    def __post_init__(self) -> None:
        # ValueError for an unknown category
        object.__setattr__(self, "category", LockCategory(self.category))

    @property
    def normalized(self) -> tuple[int, str]:
        return (self.category.rank, self.name.casefold())

    def __str__(self) -> str:
        return f"{self.category.value}:{self.name}"


class LockRegistry:
    """Registry of named asyncio locks.

    Args:
        timeout_seconds: Maximum wait per acquisition. 0 waits forever.
    """

    def __init__(self, timeout_seconds: float = 0.0) -> None:
        self._timeout_seconds = timeout_seconds
        self._locks: dict[tuple[int, str], asyncio.Lock] = {}
        # Guards insert-if-absent on the map itself
        self._registry_lock = threading.Lock()

    def _get(self, key: LockKey) -> asyncio.Lock:
        normalized = key.normalized
        with self._registry_lock:
            lock = self._locks.get(normalized)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[normalized] = lock
            return lock

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    async def lock(self, name: str, category: LockCategory | str) -> None:
        """Acquire the lock for (category, name).

        Raises:
            LockTimeoutError: If a timeout is configured and exceeded.
        """
        key = LockKey(category, name)
        lock = self._get(key)
        start = time.monotonic()

        if lock.locked():
            logger.debug("Waiting for lock", extra={"lock_key": str(key)})

        if self._timeout_seconds > 0:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._timeout_seconds)
            except asyncio.TimeoutError as e:
                raise LockTimeoutError(str(key), self._timeout_seconds) from e
        else:
            await lock.acquire()

        logger.debug(
            "Acquired lock",
            extra={"lock_key": str(key), "wait_seconds": round(time.monotonic() - start, 3)},
        )

    def unlock(self, name: str, category: LockCategory | str) -> None:
        """Release the lock for (category, name).

        Raises:
            RuntimeError: If the lock is not held.
        """
        key = LockKey(category, name)
        self._get(key).release()
        logger.debug("Released lock", extra={"lock_key": str(key)})

    @asynccontextmanager
    async def hold(self, name: str, category: LockCategory | str) -> AsyncIterator[None]:
        """Hold a single named lock for the duration of the block."""
        await self.lock(name, category)
        try:
            yield
        finally:
            self.unlock(name, category)

    @asynccontextmanager
    async def hold_all(self, keys: Iterable[LockKey]) -> AsyncIterator[list[LockKey]]:
        """Hold several locks, acquired in canonical order.

        Duplicate keys (including case-only differences) are acquired once.
        Locks are released in reverse order, including when acquisition of a
        later lock fails.

        Yields:
            The de-duplicated keys in acquisition order.
        """
        unique: dict[tuple[int, str], LockKey] = {}
        for key in keys:
            unique.setdefault(key.normalized, key)
        ordered = [unique[k] for k in sorted(unique)]

        acquired: list[LockKey] = []
        try:
            for key in ordered:
                await self.lock(key.name, key.category)
                acquired.append(key)
            yield ordered
        finally:
            for key in reversed(acquired):
                self.unlock(key.name, key.category)

    def hold_many(
        self, category: LockCategory | str, names: Iterable[str]
    ) -> AbstractAsyncContextManager[list[LockKey]]:
        """Hold one lock per name within a single category."""
        return self.hold_all(LockKey(category, name) for name in names)
