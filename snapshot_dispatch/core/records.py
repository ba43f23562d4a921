"""
Record types shared by the dispatcher, the cache and the stores.

Records are:
- Serialized for transmission between dispatcher and workers
- Persisted by a ProfileStore
- Classified fresh or stale by the freshness policy
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta, timezone
from enum import Enum
import json

from .errors import ValidationError


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def validate_key(key: Any) -> str:
    """Return the key stripped of whitespace, or raise ValidationError."""
    if not isinstance(key, str) or not key.strip():
        raise ValidationError(f"Key is required, got {key!r}")
    return key.strip()


def is_stale(last_updated: Optional[datetime], now: datetime, max_age: timedelta) -> bool:
    """
    Freshness rule.

    A record is stale once its age reaches max_age; a record with no
    timestamp is always stale.
    """
    if last_updated is None:
        return True
    return now - last_updated >= max_age


@dataclass
class HistoryEntry:
    """One observed value of the tracked attribute."""
    key: str
    value: str
    captured_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "captured_at": self.captured_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            key=data["key"],
            value=data["value"],
            captured_at=parse_timestamp(data["captured_at"]),
        )


@dataclass
class ProfileRecord:
    """Latest known snapshot of a subject."""
    key: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    last_updated: Optional[datetime] = None
    history: List[HistoryEntry] = field(default_factory=list)

    def is_stale(self, now: datetime, max_age: timedelta) -> bool:
        return is_stale(self.last_updated, now, max_age)

    def history_values(self) -> List[str]:
        return [entry.value for entry in self.history]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "attributes": self.attributes,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "history": [entry.to_dict() for entry in self.history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProfileRecord":
        if not isinstance(data, dict):
            raise ValidationError(f"Record must be an object, got {type(data).__name__}")
        attributes = data.get("attributes") or {}
        if not isinstance(attributes, dict):
            raise ValidationError("Record attributes must be an object")
        return cls(
            key=validate_key(data.get("key")),
            attributes=attributes,
            last_updated=parse_timestamp(data.get("last_updated")),
            history=[HistoryEntry.from_dict(h) for h in data.get("history", [])],
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> "ProfileRecord":
        return cls.from_dict(json.loads(json_str))


@dataclass
class TaskOutcome:
    """What a worker reported for one key: a record or an error."""
    key: str
    record: Optional[ProfileRecord] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.record is not None

    @classmethod
    def success(cls, record: ProfileRecord) -> "TaskOutcome":
        return cls(key=record.key, record=record)

    @classmethod
    def failure(cls, key: str, error: str) -> "TaskOutcome":
        return cls(key=key, error=error or "unknown error")


class EntryStatus(Enum):
    """How a cache read resolved a key."""
    FRESH = "fresh"        # served from the store
    FETCHED = "fetched"    # fetched during this read
    PENDING = "pending"    # enqueued or failed, retry later


@dataclass
class CacheEntry:
    """One key of a cache read response."""
    key: str
    status: EntryStatus
    record: Optional[ProfileRecord] = None

    @property
    def pending(self) -> bool:
        return self.status == EntryStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        if self.record is None:
            return {
                "key": self.key,
                "attributes": None,
                "last_updated": None,
                "history": [],
                "status": self.status.value,
                "pending": True,
            }
        data = self.record.to_dict()
        data["status"] = self.status.value
        data["pending"] = self.pending
        return data
