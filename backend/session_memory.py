# backend/session_memory.py

"""
Shared in-memory session store for the scheduling bot.

Sessions live for the lifetime of the process only. The store is bounded:
idle sessions expire after `ttl_seconds`, and once `max_sessions` is reached
the least recently used one is dropped.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict

from dialog import Session


@dataclass
class _Entry:
    session: Session
    touched_at: float


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class SessionStore:
    def __init__(
        self,
        max_sessions: int = 10000,
        ttl_seconds: float = 1800,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.max_sessions = max_sessions
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._locks: Dict[str, _KeyLock] = {}

    def __len__(self) -> int:
        self._purge_expired()
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not self._expired(entry)

    def get(self, key: str) -> Session:
        """Return the live session for `key`, creating a fresh one if needed."""
        self._purge_expired()
        entry = self._entries.get(key)
        if entry is not None:
            entry.touched_at = self._clock()
            self._entries.move_to_end(key)
            return entry.session

        session = Session(key=key)
        self._insert(key, session)
        logging.info(f"[SESSION CREATED] {key}")
        return session

    def save(self, key: str, session: Session) -> None:
        self._insert(key, session)

    def discard(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            logging.info(f"[SESSION DISCARDED] {key}")

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        """
        Hold exclusive access to one session key.

        Events for the same key queue up behind each other; different keys
        never block one another. The lock object is dropped once nobody is
        holding or waiting on it.
        """
        key_lock = self._locks.get(key)
        if key_lock is None:
            key_lock = self._locks[key] = _KeyLock()
        key_lock.users += 1
        try:
            async with key_lock.lock:
                yield
        finally:
            key_lock.users -= 1
            if key_lock.users == 0:
                self._locks.pop(key, None)

    def _insert(self, key: str, session: Session) -> None:
        self._entries[key] = _Entry(session=session, touched_at=self._clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_sessions:
            evicted, _ = self._entries.popitem(last=False)
            logging.info(f"[SESSION EVICTED] {evicted} (capacity {self.max_sessions})")

    def _expired(self, entry: _Entry) -> bool:
        return self._clock() - entry.touched_at > self.ttl_seconds

    def _purge_expired(self) -> None:
        # Entries are kept in touch order, so expired ones sit at the front.
        while self._entries:
            key, entry = next(iter(self._entries.items()))
            if not self._expired(entry):
                break
            del self._entries[key]
            logging.info(f"[SESSION EXPIRED] {key}")
