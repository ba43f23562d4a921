"""
Freshness-aware read path over a ProfileStore.

Reads are served from the store while records are younger than max_age.
Stale or missing keys are deleted locally, re-fetched through an upstream
and merged back. Keys that cannot be resolved in time come back with a
pending marker instead of being dropped.
"""

from typing import Callable, Dict, Iterable, List, Optional
from datetime import datetime, timedelta
import asyncio
import logging

from .errors import FetchError, TransportError
from .records import CacheEntry, EntryStatus, ProfileRecord, utcnow, validate_key
from .store import ProfileStore

logger = logging.getLogger(__name__)


class Upstream:
    """Source of fresh records for keys the cache cannot serve."""

    # True when fetched records are already written to the cache's store
    persists_results: bool = False

    async def fetch(self, keys: List[str], timeout: float) -> Dict[str, Optional[ProfileRecord]]:
        """
        Request keys and wait up to timeout seconds.

        Returns a record per key, or None for keys that are still pending.
        """
        raise NotImplementedError


class DispatcherUpstream(Upstream):
    """Fetch through a Dispatcher running in the same process."""

    persists_results = True

    def __init__(self, dispatcher):
        self.dispatcher = dispatcher

    async def fetch(self, keys: List[str], timeout: float) -> Dict[str, Optional[ProfileRecord]]:
        futures = {key: self.dispatcher.watch(key) for key in keys}
        try:
            for key in keys:
                await self.dispatcher.enqueue(key)
            if timeout > 0:
                await asyncio.wait(list(futures.values()), timeout=timeout)
        finally:
            results = {}
            for key, future in futures.items():
                if future.done() and not future.cancelled():
                    results[key] = future.result()
                else:
                    self.dispatcher.unwatch(key, future)
                    future.cancel()
                    results[key] = None
        return results


class FreshnessCache:
    """
    Time-to-live cache in front of a ProfileStore.

    Concurrent misses on the same key share one upstream fetch.

    Example:
        cache = FreshnessCache(store, DispatcherUpstream(dispatcher), max_age=timedelta(days=7))
        entries = await cache.read(["alice", "bob"], timeout=5.0)
        for entry in entries:
            print(entry.key, entry.status.value)
    """

    def __init__(
        self,
        store: ProfileStore,
        upstream: Upstream,
        max_age: timedelta = timedelta(days=7),
        fetch_timeout: float = 0.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.upstream = upstream
        self.max_age = max_age
        self.fetch_timeout = fetch_timeout
        self.clock = clock or utcnow
        self._inflight: Dict[str, asyncio.Future] = {}

    def is_stale(self, record: ProfileRecord, now: datetime) -> bool:
        return record.is_stale(now, self.max_age)

    async def read(self, keys: Iterable[str], timeout: Optional[float] = None) -> List[CacheEntry]:
        """
        Resolve keys to cache entries, in input order without duplicates.

        Args:
            keys: Subject keys
            timeout: Seconds to wait for re-fetches (defaults to fetch_timeout)

        Raises:
            ValidationError: if any key is empty
            PersistenceError: if the store fails
        """
        keys = list(dict.fromkeys(validate_key(k) for k in keys))
        timeout = self.fetch_timeout if timeout is None else timeout

        # single staleness decision for the whole cycle
        now = self.clock()
        stored = await self.store.query(keys)

        fresh: Dict[str, ProfileRecord] = {}
        missing: List[str] = []
        for key in keys:
            record = stored.get(key)
            if record is not None and not self.is_stale(record, now):
                fresh[key] = record
            else:
                missing.append(key)

        fetched: Dict[str, ProfileRecord] = {}
        if missing:
            logger.info(f"Missing or outdated profiles: {missing}")
            for key in missing:
                if key in stored:
                    await self.store.delete_if_stale(key, self.max_age, now)
            fetched = await self._fetch(missing, timeout)

        entries = []
        for key in keys:
            if key in fresh:
                entries.append(CacheEntry(key, EntryStatus.FRESH, fresh[key]))
            elif fetched.get(key) is not None:
                entries.append(CacheEntry(key, EntryStatus.FETCHED, fetched[key]))
            else:
                entries.append(CacheEntry(key, EntryStatus.PENDING))
        return entries

    async def read_one(self, key: str, timeout: Optional[float] = None) -> CacheEntry:
        entries = await self.read([key], timeout=timeout)
        return entries[0]

    async def _fetch(self, keys: List[str], timeout: float) -> Dict[str, ProfileRecord]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        waiting: Dict[str, asyncio.Future] = {}
        owned: List[str] = []
        for key in keys:
            future = self._inflight.get(key)
            if future is None:
                future = loop.create_future()
                self._inflight[key] = future
                owned.append(key)
            waiting[key] = future

        if owned:
            await self._fetch_owned(owned, timeout)

        # owned fetch and joined fetches share one deadline
        joined = [f for f in waiting.values() if not f.done()]
        remaining = deadline - loop.time()
        if joined and remaining > 0:
            await asyncio.wait(joined, timeout=remaining)

        return {
            key: future.result()
            for key, future in waiting.items()
            if future.done() and not future.cancelled() and future.result() is not None
        }

    async def _fetch_owned(self, keys: List[str], timeout: float) -> None:
        results: Dict[str, Optional[ProfileRecord]] = {}
        try:
            try:
                fetched = await self.upstream.fetch(keys, timeout)
            except (FetchError, TransportError) as e:
                logger.warning(f"Upstream fetch failed for {keys}: {e}")
                fetched = {}
            records = [r for r in fetched.values() if r is not None]
            if records and not self.upstream.persists_results:
                for record in records:
                    await self.store.upsert(record)
            if records:
                results = await self.store.query([r.key for r in records])
        finally:
            for key in keys:
                future = self._inflight.pop(key, None)
                if future is not None and not future.done():
                    future.set_result(results.get(key))
