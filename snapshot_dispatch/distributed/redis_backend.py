"""
Redis backend for profile persistence.

Layout per key:
- {prefix}:profile:{key}  hash with "attributes" (JSON) and "last_updated" (ISO)
- {prefix}:history:{key}  hash mapping each observed value to its capture time

History uses HSETNX, so a value is recorded once per key no matter how
often it is observed. Conditional writes run inside WATCH/MULTI
transactions.
"""

import json
from typing import Callable, Dict, Iterable, Optional
from datetime import datetime, timedelta
import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..core.errors import PersistenceError
from ..core.records import HistoryEntry, ProfileRecord, is_stale, parse_timestamp, utcnow
from ..core.store import DEFAULT_HISTORY_ATTRIBUTE, ProfileStore

logger = logging.getLogger(__name__)


class RedisProfileStore(ProfileStore):
    """
    Redis-backed profile store.

    Example:
        store = RedisProfileStore("redis://localhost:6379/0")
        await store.connect()

        await store.upsert(record)
        records = await store.query(["alice", "bob"])
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "snapshots",
        history_attribute: str = DEFAULT_HISTORY_ATTRIBUTE,
        clock: Optional[Callable[[], datetime]] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.history_attribute = history_attribute
        self.clock = clock or utcnow
        self._client: Optional[redis.Redis] = client

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._client is None:
            self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await self._client.ping()
        except RedisError as e:
            raise PersistenceError(f"Cannot reach Redis at {self.redis_url}: {e}") from e
        logger.info(f"Profile store connected to Redis at {self.redis_url}")

    async def close(self) -> None:
        """Disconnect from Redis."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _profile_key(self, key: str) -> str:
        return f"{self.prefix}:profile:{key}"

    def _history_key(self, key: str) -> str:
        return f"{self.prefix}:history:{key}"

    async def upsert(self, record: ProfileRecord) -> ProfileRecord:
        """Replace the profile hash and record a novel history value."""
        profile_key = self._profile_key(record.key)
        history_key = self._history_key(record.key)
        value = self.tracked_value(record)
        attributes = json.dumps(record.attributes)

        async def _write(pipe) -> None:
            now = self.clock()
            previous = parse_timestamp(await pipe.hget(profile_key, "last_updated"))
            last_updated = previous if previous and previous > now else now
            pipe.multi()
            pipe.hset(profile_key, mapping={
                "attributes": attributes,
                "last_updated": last_updated.isoformat(),
            })
            if value is not None:
                pipe.hsetnx(history_key, value, (record.last_updated or now).isoformat())

        try:
            await self._client.transaction(_write, profile_key)
            stored = await self.query([record.key])
        except RedisError as e:
            raise PersistenceError(f"Failed to store profile {record.key}: {e}") from e

        logger.debug(f"Upserted profile {record.key}")
        return stored[record.key]

    async def query(self, keys: Iterable[str]) -> Dict[str, ProfileRecord]:
        """Load profile and history hashes for keys in one round trip."""
        keys = list(dict.fromkeys(keys))
        if not keys:
            return {}

        try:
            async with self._client.pipeline(transaction=False) as pipe:
                for key in keys:
                    pipe.hgetall(self._profile_key(key))
                    pipe.hgetall(self._history_key(key))
                replies = await pipe.execute()
        except RedisError as e:
            raise PersistenceError(f"Failed to query profiles {keys}: {e}") from e

        records = {}
        for i, key in enumerate(keys):
            profile, history = replies[2 * i], replies[2 * i + 1]
            if not profile:
                continue
            entries = [
                HistoryEntry(key=key, value=value, captured_at=parse_timestamp(captured_at))
                for value, captured_at in history.items()
            ]
            entries.sort(key=lambda e: e.captured_at)
            records[key] = ProfileRecord(
                key=key,
                attributes=json.loads(profile.get("attributes") or "{}"),
                last_updated=parse_timestamp(profile.get("last_updated")),
                history=entries,
            )
        return records

    async def delete_if_stale(self, key: str, max_age: timedelta, now: datetime) -> bool:
        """
        Delete the profile hash if it is stale relative to now.

        The check and the delete share one WATCH, so a concurrent upsert
        that refreshes the record makes the transaction retry and skip
        the delete.
        """
        profile_key = self._profile_key(key)

        async def _delete(pipe) -> bool:
            last_updated = await pipe.hget(profile_key, "last_updated")
            if last_updated is None:
                return False
            if not is_stale(parse_timestamp(last_updated), now, max_age):
                return False
            pipe.multi()
            pipe.delete(profile_key)
            return True

        try:
            deleted = await self._client.transaction(
                _delete, profile_key, value_from_callable=True
            )
        except RedisError as e:
            raise PersistenceError(f"Failed to delete stale profile {key}: {e}") from e

        if deleted:
            logger.debug(f"Deleted stale profile {key}")
        return deleted
