"""In-process keyed mutual exclusion for single-writer sections"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.holders = 0


class KeyedLock:
    """
    One asyncio.Lock per key, created on demand.

    Entries are dropped once no coroutine holds or waits on them, so the
    registry only grows with the number of keys in flight.
    """

    def __init__(self, name: str):
        self.name = name
        self._entries: Dict[str, _Entry] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._entries.pop(key, None)

    def locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)


# Process-wide registries: one writer per payment request, one per account
payment_request_locks = KeyedLock("payment_request")
account_locks = KeyedLock("account")
