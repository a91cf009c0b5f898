"""
Keyed mutual exclusion for read-check-write units of work.

Within one process, contest capacity, real-money wallets and virtual wallets
are each guarded by an asyncio lock keyed by resource. Across processes the
database guards (row locks, conditional updates, unique keys) still hold.

Nesting order: contest -> wallet -> vwallet. Never acquire an earlier
namespace while holding a later one.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from uuid import UUID


def contest_key(contest_id: UUID) -> str:
    return f"contest:{contest_id}"


def wallet_key(user_id: UUID) -> str:
    return f"wallet:{user_id}"


def vwallet_key(contest_id: UUID, user_id: UUID) -> str:
    return f"vwallet:{contest_id}:{user_id}"


_NAMESPACE_ORDER = {"contest": 0, "wallet": 1, "vwallet": 2}


def _lock_order(key: str) -> tuple[int, str]:
    return (_NAMESPACE_ORDER.get(key.split(":", 1)[0], len(_NAMESPACE_ORDER)), key)


class KeyedLocks:
    """Re-entrant (per task) asyncio locks addressed by string key."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._owners: dict[str, tuple[asyncio.Task, int]] = {}

    async def _acquire(self, key: str) -> None:
        task = asyncio.current_task()
        owner = self._owners.get(key)
        if owner and owner[0] is task:
            self._owners[key] = (task, owner[1] + 1)
            return
        lock = self._locks.setdefault(key, asyncio.Lock())
        await lock.acquire()
        self._owners[key] = (task, 1)

    def _release(self, key: str) -> None:
        task, depth = self._owners[key]
        if depth > 1:
            self._owners[key] = (task, depth - 1)
            return
        del self._owners[key]
        self._locks[key].release()

    def is_held(self, key: str) -> bool:
        owner = self._owners.get(key)
        return bool(owner and owner[0] is asyncio.current_task())

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        """Acquire every key (in namespace order, deduplicated) for the duration of the block."""
        acquired: list[str] = []
        try:
            for key in sorted(set(keys), key=_lock_order):
                await self._acquire(key)
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._release(key)


_locks: Optional[KeyedLocks] = None


def get_locks() -> KeyedLocks:
    """Get the process-wide lock registry, creating it on first use."""
    global _locks
    if _locks is None:
        _locks = KeyedLocks()
    return _locks
