"""
Wire messages exchanged between the dispatcher and its workers.

Dispatcher -> worker:  {"key": "<key>"}
Worker -> dispatcher:  {"key": "<key>", "result": {...record...}}
                       {"key": "<key>", "error": "<message>"}
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..core.errors import ValidationError
from ..core.records import ProfileRecord, TaskOutcome, validate_key

# WebSocket close code sent to workers with bad credentials
UNAUTHORIZED_CLOSE_CODE = 1008
UNAUTHORIZED_REASON = "Unauthorized"


def _decode(json_str: str) -> Dict[str, Any]:
    try:
        data = json.loads(json_str)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Message is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("Message must be a JSON object")
    return data


def read_key(json_str: str) -> Optional[str]:
    """Best-effort task key of a message that failed to parse, or None."""
    try:
        return validate_key(_decode(json_str).get("key"))
    except ValidationError:
        return None


@dataclass
class TaskMessage:
    """A unit of work sent to a worker."""
    key: str

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskMessage":
        return cls(key=validate_key(data.get("key")))

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> "TaskMessage":
        return cls.from_dict(_decode(json_str))


@dataclass
class ResultMessage:
    """A worker's reply for one key: a record or an error string."""
    key: str
    result: Optional[ProfileRecord] = None
    error: Optional[str] = None

    def __post_init__(self):
        if (self.result is None) == (self.error is None):
            raise ValidationError("Result message needs exactly one of result or error")
        if self.result is not None and self.result.key != self.key:
            raise ValidationError(
                f"Result record key {self.result.key!r} does not match task key {self.key!r}"
            )

    def to_dict(self) -> Dict[str, Any]:
        if self.error is not None:
            return {"key": self.key, "error": self.error}
        return {"key": self.key, "result": self.result.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResultMessage":
        key = validate_key(data.get("key"))
        if data.get("error") is not None:
            return cls(key=key, error=str(data["error"]))
        result = data.get("result")
        if result is None:
            raise ValidationError(f"Result message for {key} has neither result nor error")
        if isinstance(result, dict) and "key" not in result:
            result = {**result, "key": key}
        try:
            record = ProfileRecord.from_dict(result)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Result record for {key} is malformed: {e!r}") from e
        return cls(key=key, result=record)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> "ResultMessage":
        return cls.from_dict(_decode(json_str))

    def to_outcome(self) -> TaskOutcome:
        if self.error is not None:
            return TaskOutcome.failure(self.key, self.error)
        return TaskOutcome.success(self.result)
