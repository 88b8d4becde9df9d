"""Two-tier cache for slow-changing gateway data (currency lists, estimates).

Reads go to a bounded in-process LRU first and fall back to the
``nowpayments_cache`` table, promoting hits back into memory for the time
the row has left. The persisted tier is best-effort: every error there is
logged and turned into a miss, so the cache never breaks its caller.
"""

import logging
import os
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from dotenv import load_dotenv
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from server.db import session as db_session
from server.db.base import CacheEntry

load_dotenv()

DEFAULT_TTL = 300


class CacheKeys:
    """Key builders so every caller names the same data the same way."""

    @staticmethod
    def currencies() -> str:
        return "nowpayments:currencies"

    @staticmethod
    def payout_currencies() -> str:
        return "nowpayments:payout-currencies"

    @staticmethod
    def estimate(currency_from: str, currency_to: str, amount) -> str:
        return f"nowpayments:estimate:{currency_from.lower()}:{currency_to.lower()}:{amount}"


class CacheTTL:
    CURRENCIES = 24 * 60 * 60
    ESTIMATES = 5 * 60


def _utc_naive(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


class MemoryTier:
    """Bounded LRU map with an absolute expiry per entry."""

    def __init__(self, max_entries: int = 1024, clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Tuple[bool, Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return False, None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            self.misses += 1
            return False, None
        self._entries.move_to_end(key)
        self.hits += 1
        return True, value

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = (value, self._clock() + ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
            self.evictions += 1

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        stale = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


class CacheStore:
    """Interface of the persisted tier. Implementations may raise freely."""

    async def get(self, key: str, now: datetime) -> Optional[Tuple[Any, datetime]]:
        raise NotImplementedError

    async def set(self, key: str, value: Any, expires_at: datetime, now: datetime) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def clear(self) -> None:
        raise NotImplementedError

    async def purge_expired(self, now: datetime) -> int:
        raise NotImplementedError


class DatabaseCacheStore(CacheStore):
    """Persisted tier over the ``nowpayments_cache`` table."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def _session(self):
        # Берём SessionLocal в момент вызова, чтобы тесты могли его подменить
        factory = self._session_factory or db_session.SessionLocal
        return factory()

    async def get(self, key, now):
        async with self._session() as db:
            result = await db.execute(
                select(CacheEntry.cache_data, CacheEntry.expires_at).where(
                    CacheEntry.cache_key == key,
                    CacheEntry.expires_at > now,
                )
            )
            row = result.first()
        if row is None:
            return None
        return row.cache_data, row.expires_at

    async def set(self, key, value, expires_at, now):
        values = {
            "cache_key": key,
            "cache_data": value,
            "expires_at": expires_at,
            "updated_at": now,
        }
        async with self._session() as db:
            dialect = db.get_bind().dialect.name
            if dialect == "postgresql":
                stmt = pg_insert(CacheEntry).values(**values)
            elif dialect == "sqlite":
                stmt = sqlite_insert(CacheEntry).values(**values)
            else:
                stmt = None

            if stmt is not None:
                stmt = stmt.on_conflict_do_update(
                    index_elements=[CacheEntry.cache_key],
                    set_={
                        "cache_data": stmt.excluded.cache_data,
                        "expires_at": stmt.excluded.expires_at,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                await db.execute(stmt)
            else:
                await db.merge(CacheEntry(**values))
            await db.commit()

    async def delete(self, key):
        async with self._session() as db:
            await db.execute(delete(CacheEntry).where(CacheEntry.cache_key == key))
            await db.commit()

    async def clear(self):
        async with self._session() as db:
            await db.execute(delete(CacheEntry))
            await db.commit()

    async def purge_expired(self, now):
        async with self._session() as db:
            result = await db.execute(delete(CacheEntry).where(CacheEntry.expires_at <= now))
            await db.commit()
        return result.rowcount or 0


class TwoTierCache:
    def __init__(
        self,
        memory: Optional[MemoryTier] = None,
        store: Optional[CacheStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self.memory = memory or MemoryTier(clock=clock)
        self.store = store

    def _now(self) -> datetime:
        return _utc_naive(self._clock())

    async def get(
        self,
        key: str,
        ttl: Optional[float] = None,
        memory_only: bool = False,
        force_refresh: bool = False,
    ) -> Any:
        """Return the cached value for ``key`` or ``None`` when absent.

        ``ttl`` is accepted for symmetry with :meth:`set`; the remaining
        lifetime of a promoted entry always comes from the stored expiry.
        """
        if force_refresh:
            return None

        found, value = self.memory.get(key)
        if found:
            logging.debug("Cache HIT (memory): %s", key)
            return value

        if memory_only or self.store is None:
            logging.debug("Cache MISS (memory-only): %s", key)
            return None

        now = self._now()
        try:
            row = await self.store.get(key, now)
        except Exception:
            logging.exception("Cache read failed for key %s", key)
            return None

        if row is None:
            logging.debug("Cache MISS (database): %s", key)
            return None

        value, expires_at = row
        remaining = (expires_at - now).total_seconds()
        if remaining <= 0:
            logging.debug("Cache EXPIRED (database): %s", key)
            return None

        self.memory.set(key, value, remaining)
        logging.debug("Cache HIT (database): %s, promoted for %.0fs", key, remaining)
        return value

    async def set(self, key: str, value: Any, ttl: float = DEFAULT_TTL, memory_only: bool = False) -> None:
        self.memory.set(key, value, ttl)
        if memory_only or self.store is None:
            return

        now = self._now()
        expires_at = now + timedelta(seconds=ttl)
        try:
            await self.store.set(key, value, expires_at, now)
        except Exception:
            # Память остаётся источником правды до рестарта процесса
            logging.exception("Cache write failed for key %s", key)

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: float = DEFAULT_TTL,
        force_refresh: bool = False,
    ) -> Any:
        """Read-through helper: return the cached value or compute and store it."""
        value = await self.get(key, force_refresh=force_refresh)
        if value is not None:
            return value
        value = await factory()
        await self.set(key, value, ttl=ttl)
        return value

    async def delete(self, key: str) -> None:
        self.memory.delete(key)
        if self.store is None:
            return
        try:
            await self.store.delete(key)
        except Exception:
            logging.exception("Cache delete failed for key %s", key)

    async def clear(self) -> None:
        self.memory.clear()
        if self.store is None:
            return
        try:
            await self.store.clear()
        except Exception:
            logging.exception("Cache clear failed")

    async def purge_expired(self) -> int:
        """Drop expired entries from both tiers; returns persisted rows removed."""
        dropped = self.memory.purge_expired()
        if dropped:
            logging.info("Cache sweep: %s stale memory entries removed", dropped)
        if self.store is None:
            return 0
        try:
            removed = await self.store.purge_expired(self._now())
        except Exception:
            logging.exception("Cache sweep failed")
            return 0
        logging.info("Cache sweep: %s expired rows removed", removed)
        return removed

    def stats(self) -> Dict[str, Any]:
        return {
            "memory": {
                "keys": len(self.memory),
                "max_entries": self.memory.max_entries,
                "hits": self.memory.hits,
                "misses": self.memory.misses,
                "evictions": self.memory.evictions,
            },
            "persisted": self.store is not None,
        }


cache = TwoTierCache(
    memory=MemoryTier(max_entries=int(os.getenv("CACHE_MEMORY_MAX_ENTRIES", "1024"))),
    store=DatabaseCacheStore(),
)
