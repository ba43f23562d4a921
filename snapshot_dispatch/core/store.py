"""
Profile persistence.

A store keeps:
- One profile row per key (attributes + last_updated)
- An append-only history of the tracked attribute, unique per (key, value)
"""

from typing import Callable, Dict, Iterable, List, Optional
from datetime import datetime, timedelta
import copy
import logging

from .records import HistoryEntry, ProfileRecord, is_stale, utcnow

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_ATTRIBUTE = "display_name"


class ProfileStore:
    """
    Interface for profile persistence.

    Concrete implementations keep data in memory or in Redis. Backend
    failures are raised as PersistenceError.
    """

    history_attribute: str = DEFAULT_HISTORY_ATTRIBUTE

    async def upsert(self, record: ProfileRecord) -> ProfileRecord:
        """Replace the profile row, append a novel history value, stamp last_updated."""
        raise NotImplementedError

    async def query(self, keys: Iterable[str]) -> Dict[str, ProfileRecord]:
        """Return profile + history for every stored key among keys."""
        raise NotImplementedError

    async def delete_if_stale(self, key: str, max_age: timedelta, now: datetime) -> bool:
        """Delete the profile row only if it is stale relative to now."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release backend resources."""

    def tracked_value(self, record: ProfileRecord) -> Optional[str]:
        value = record.attributes.get(self.history_attribute)
        if value is None or value == "":
            return None
        return str(value)


class InMemoryProfileStore(ProfileStore):
    """
    In-process store for tests and single-process deployments.

    Every operation runs without awaiting, so each one is atomic with
    respect to other coroutines on the loop.
    """

    def __init__(
        self,
        history_attribute: str = DEFAULT_HISTORY_ATTRIBUTE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.history_attribute = history_attribute
        self.clock = clock or utcnow
        self._profiles: Dict[str, ProfileRecord] = {}
        self._history: Dict[str, List[HistoryEntry]] = {}

    async def upsert(self, record: ProfileRecord) -> ProfileRecord:
        now = self.clock()
        existing = self._profiles.get(record.key)
        last_updated = now
        if existing and existing.last_updated and existing.last_updated > now:
            last_updated = existing.last_updated

        self._profiles[record.key] = ProfileRecord(
            key=record.key,
            attributes=copy.deepcopy(record.attributes),
            last_updated=last_updated,
        )

        # history dates a value by when it was observed
        captured_at = record.last_updated or now
        value = self.tracked_value(record)
        if value is not None:
            entries = self._history.setdefault(record.key, [])
            if all(entry.value != value for entry in entries):
                entries.append(HistoryEntry(key=record.key, value=value, captured_at=captured_at))

        logger.debug(f"Upserted profile {record.key}")
        return self._joined(record.key)

    async def query(self, keys: Iterable[str]) -> Dict[str, ProfileRecord]:
        return {
            key: self._joined(key)
            for key in dict.fromkeys(keys)
            if key in self._profiles
        }

    async def delete_if_stale(self, key: str, max_age: timedelta, now: datetime) -> bool:
        profile = self._profiles.get(key)
        if profile is None or not is_stale(profile.last_updated, now, max_age):
            return False
        del self._profiles[key]
        logger.debug(f"Deleted stale profile {key}")
        return True

    def _joined(self, key: str) -> ProfileRecord:
        profile = self._profiles[key]
        return ProfileRecord(
            key=key,
            attributes=copy.deepcopy(profile.attributes),
            last_updated=profile.last_updated,
            history=sorted(self._history.get(key, []), key=lambda e: e.captured_at),
        )

    def __len__(self) -> int:
        return len(self._profiles)
