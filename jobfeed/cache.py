from abc import ABC, abstractmethod
from datetime import timedelta
import asyncio
import logging
import time

from sqlalchemy import func

from .database import DatabaseManager, SearchCacheEntry, utcnow
from .models import fingerprint

logger = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 4
MAX_CACHE_ENTRIES = 10000


class SearchCache(ABC):
    """Fingerprint-keyed cache of result ids.

    A cache that cannot answer is treated as empty: backend errors are
    logged and reported as a miss. Expiry is checked on read; `maintain`
    drops expired entries and the least popular ones past `max_entries`.
    """

    def __init__(self, default_ttl_hours=DEFAULT_TTL_HOURS, max_entries=MAX_CACHE_ENTRIES):
        self.default_ttl_hours = default_ttl_hours
        self.max_entries = max_entries

    async def get(self, spec):
        key = fingerprint(spec)
        try:
            ids = await self._get(key)
        except Exception as e:
            logger.error(f"[Cache] read failed for {key[:12]}: {e}")
            return None
        if ids:
            logger.info(f"[Cache] HIT {key[:12]} ({len(ids)} ids)")
            return ids
        logger.debug(f"[Cache] MISS {key[:12]}")
        return None

    async def set(self, spec, ids, ttl_hours=None) -> bool:
        if not ids:
            return False
        key = fingerprint(spec)
        ttl = self.default_ttl_hours if ttl_hours is None else ttl_hours
        try:
            await self._set(key, spec, list(ids), ttl)
        except Exception as e:
            logger.error(f"[Cache] write failed for {key[:12]}: {e}")
            return False
        return True

    async def invalidate(self, spec):
        try:
            await self._delete(fingerprint(spec))
        except Exception as e:
            logger.error(f"[Cache] invalidate failed: {e}")

    async def maintain(self) -> int:
        """Expired entries first, then the size cap; returns entries removed."""
        removed = 0
        try:
            removed += await self.clear_expired()
            removed += await self.enforce_size_limit()
        except Exception as e:
            logger.error(f"[Cache] maintenance failed: {e}")
        return removed

    @abstractmethod
    async def _get(self, key):
        pass

    @abstractmethod
    async def _set(self, key, spec, ids, ttl_hours):
        pass

    @abstractmethod
    async def _delete(self, key):
        pass

    @abstractmethod
    async def clear_expired(self) -> int:
        pass

    @abstractmethod
    async def enforce_size_limit(self) -> int:
        """Evicts least-hit entries, oldest first among equals, down to `max_entries`."""

    @abstractmethod
    async def popular(self, limit=10):
        """Live entries by hit count: [{'search_params': ..., 'hit_count': n}]."""

    @abstractmethod
    async def stats(self):
        pass


class MemoryCache(SearchCache):
    """In-process backend; every write also enforces the size cap."""

    def __init__(self, default_ttl_hours=DEFAULT_TTL_HOURS, max_entries=MAX_CACHE_ENTRIES):
        super().__init__(default_ttl_hours, max_entries)
        # key -> [ids, expires_at, hits, created_at, params], times are monotonic
        self._entries = {}

    async def _get(self, key):
        entry = self._entries.get(key)
        if entry is None or time.monotonic() >= entry[1]:
            return None
        entry[2] += 1
        return list(entry[0])

    async def _set(self, key, spec, ids, ttl_hours):
        now = time.monotonic()
        self._entries[key] = [ids, now + ttl_hours * 3600, 0, now, spec.to_params()]
        await self.enforce_size_limit()

    async def _delete(self, key):
        self._entries.pop(key, None)

    async def clear_expired(self) -> int:
        now = time.monotonic()
        expired = [k for k, entry in self._entries.items() if entry[1] <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def enforce_size_limit(self) -> int:
        excess = len(self._entries) - self.max_entries
        if excess <= 0:
            return 0
        victims = sorted(self._entries, key=lambda k: (self._entries[k][2], self._entries[k][3]))[:excess]
        for key in victims:
            del self._entries[key]
        logger.info(f"[Cache] Evicted {len(victims)} least popular entries.")
        return len(victims)

    async def popular(self, limit=10):
        now = time.monotonic()
        live = [entry for entry in self._entries.values() if entry[1] > now]
        live.sort(key=lambda entry: entry[2], reverse=True)
        return [{'search_params': entry[4], 'hit_count': entry[2]} for entry in live[:limit]]

    async def stats(self):
        now = time.monotonic()
        return {
            'total_entries': len(self._entries),
            'active_entries': sum(1 for entry in self._entries.values() if entry[1] > now),
            'total_hits': sum(entry[2] for entry in self._entries.values()),
        }


class DatabaseCache(SearchCache):
    """`search_cache` table backend."""

    def __init__(self, db: DatabaseManager, default_ttl_hours=DEFAULT_TTL_HOURS, max_entries=MAX_CACHE_ENTRIES):
        super().__init__(default_ttl_hours, max_entries)
        self.db = db

    async def _get(self, key):
        ids = await asyncio.to_thread(self._read, key)
        if ids:
            # Hit counter is observability only; the reader never waits on it
            future = asyncio.get_running_loop().run_in_executor(None, self._record_hit, key)
            future.add_done_callback(self._log_hit_failure)
        return ids

    def _read(self, key):
        with self.db.session_scope() as session:
            entry = session.query(SearchCacheEntry).filter_by(search_key=key).first()
            if entry is None or entry.expires_at <= utcnow():
                return None
            return list(entry.job_ids or [])

    def _record_hit(self, key):
        with self.db.session_scope() as session:
            session.query(SearchCacheEntry).filter_by(search_key=key).update(
                {SearchCacheEntry.hit_count: SearchCacheEntry.hit_count + 1}, synchronize_session=False)

    @staticmethod
    def _log_hit_failure(future):
        if not future.cancelled() and future.exception() is not None:
            logger.warning(f"[Cache] hit counter update failed: {future.exception()}")

    async def _set(self, key, spec, ids, ttl_hours):
        await asyncio.to_thread(self._write, key, spec, ids, ttl_hours)

    def _write(self, key, spec, ids, ttl_hours):
        now = utcnow()
        expires_at = now + timedelta(hours=ttl_hours)
        with self.db.session_scope() as session:
            entry = session.query(SearchCacheEntry).filter_by(search_key=key).first()
            if entry is None:
                session.add(SearchCacheEntry(search_key=key, search_params=spec.to_params(), job_ids=ids,
                                             hit_count=0, created_at=now, expires_at=expires_at))
            else:
                entry.search_params = spec.to_params()
                entry.job_ids = ids
                entry.hit_count = 0
                entry.created_at = now
                entry.expires_at = expires_at

    async def _delete(self, key):
        await asyncio.to_thread(self._remove, key)

    def _remove(self, key):
        with self.db.session_scope() as session:
            session.query(SearchCacheEntry).filter_by(search_key=key).delete(synchronize_session=False)

    async def clear_expired(self) -> int:
        def purge():
            with self.db.session_scope() as session:
                return session.query(SearchCacheEntry).filter(
                    SearchCacheEntry.expires_at <= utcnow()).delete(synchronize_session=False)

        deleted = await asyncio.to_thread(purge)
        if deleted:
            logger.info(f"[Cache] Removed {deleted} expired entries.")
        return deleted

    async def enforce_size_limit(self) -> int:
        def evict():
            with self.db.session_scope() as session:
                excess = session.query(func.count(SearchCacheEntry.id)).scalar() - self.max_entries
                if excess <= 0:
                    return 0
                victims = [row.id for row in session.query(SearchCacheEntry.id)
                           .order_by(SearchCacheEntry.hit_count.asc(), SearchCacheEntry.created_at.asc(),
                                     SearchCacheEntry.id.asc())
                           .limit(excess)]
                return session.query(SearchCacheEntry).filter(SearchCacheEntry.id.in_(victims)).delete(
                    synchronize_session=False)

        evicted = await asyncio.to_thread(evict)
        if evicted:
            logger.info(f"[Cache] Evicted {evicted} least popular entries.")
        return evicted

    async def popular(self, limit=10):
        def fetch():
            with self.db.session_scope() as session:
                rows = (session.query(SearchCacheEntry.search_params, SearchCacheEntry.hit_count)
                        .filter(SearchCacheEntry.expires_at > utcnow())
                        .order_by(SearchCacheEntry.hit_count.desc())
                        .limit(limit).all())
                return [{'search_params': params, 'hit_count': hits} for params, hits in rows]

        return await asyncio.to_thread(fetch)

    async def stats(self):
        def collect():
            with self.db.session_scope() as session:
                entries = session.query(SearchCacheEntry).all()
                now = utcnow()
                return {
                    'total_entries': len(entries),
                    'active_entries': sum(1 for e in entries if e.expires_at > now),
                    'total_hits': sum(e.hit_count or 0 for e in entries),
                }

        return await asyncio.to_thread(collect)


def build_cache(settings, db=None) -> SearchCache:
    if settings.cache_backend == 'memory' or db is None:
        return MemoryCache(settings.cache_ttl_hours, settings.cache_max_entries)
    return DatabaseCache(db, settings.cache_ttl_hours, settings.cache_max_entries)
