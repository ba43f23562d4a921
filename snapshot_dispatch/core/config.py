"""
Process configuration for the dispatcher and for workers.

Both are read from a JSON file; a few fields can be overridden through
environment variables, optionally loaded from a .env file.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import timedelta
from pathlib import Path
import json
import os
import logging

from dotenv import load_dotenv

from .errors import ConfigurationError
from .registry import Credential
from .store import DEFAULT_HISTORY_ATTRIBUTE

logger = logging.getLogger(__name__)


def _read_json(path) -> Dict[str, Any]:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file not found: {path}") from e
    except ValueError as e:
        raise ConfigurationError(f"Config file {path} is not valid JSON: {e}") from e


def _credentials(data: Dict[str, Any], name: str) -> List[Credential]:
    try:
        return [Credential.from_dict(c) for c in data.get(name, [])]
    except (KeyError, TypeError) as e:
        raise ConfigurationError(f"Invalid entry in {name!r}: {e}") from e


@dataclass
class DispatcherConfig:
    """Settings for the dispatcher server and its gateway."""
    host: str = "0.0.0.0"
    port: int = 4000
    max_tasks_per_worker: int = 5
    max_age_days: float = 7.0
    workers: List[Credential] = field(default_factory=list)
    gateways: List[Credential] = field(default_factory=list)
    redis_url: Optional[str] = None  # None = in-memory store
    prefix: str = "snapshots"
    history_attribute: str = DEFAULT_HISTORY_ATTRIBUTE
    fetch_timeout: float = 10.0
    heartbeat: float = 30.0
    max_attempts: Optional[int] = None  # None = retry forever
    log_level: str = "INFO"

    def __post_init__(self):
        if self.max_tasks_per_worker < 1:
            raise ConfigurationError("max_tasks_per_worker must be at least 1")
        if self.max_age_days <= 0:
            raise ConfigurationError("max_age_days must be positive")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")

    @property
    def max_age(self) -> timedelta:
        return timedelta(days=self.max_age_days)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "max_tasks_per_worker": self.max_tasks_per_worker,
            "max_age_days": self.max_age_days,
            "workers": [c.to_dict() for c in self.workers],
            "gateways": [c.to_dict() for c in self.gateways],
            "redis_url": self.redis_url,
            "prefix": self.prefix,
            "history_attribute": self.history_attribute,
            "fetch_timeout": self.fetch_timeout,
            "heartbeat": self.heartbeat,
            "max_attempts": self.max_attempts,
            "log_level": self.log_level,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DispatcherConfig":
        try:
            return cls(
                host=data.get("host", "0.0.0.0"),
                port=int(data.get("port", 4000)),
                max_tasks_per_worker=int(data.get("max_tasks_per_worker", 5)),
                max_age_days=float(data.get("max_age_days", 7.0)),
                workers=_credentials(data, "workers"),
                gateways=_credentials(data, "gateways"),
                redis_url=data.get("redis_url"),
                prefix=data.get("prefix", "snapshots"),
                history_attribute=data.get("history_attribute", DEFAULT_HISTORY_ATTRIBUTE),
                fetch_timeout=float(data.get("fetch_timeout", 10.0)),
                heartbeat=float(data.get("heartbeat", 30.0)),
                max_attempts=(
                    int(data["max_attempts"]) if data.get("max_attempts") is not None else None
                ),
                log_level=data.get("log_level", "INFO"),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid dispatcher config: {e}") from e

    @classmethod
    def load(cls, path=None) -> "DispatcherConfig":
        """Load from a JSON file (optional) and apply environment overrides."""
        load_dotenv()
        data = _read_json(path) if path else {}
        if os.getenv("SNAPSHOT_REDIS_URL"):
            data["redis_url"] = os.getenv("SNAPSHOT_REDIS_URL")
        if os.getenv("SNAPSHOT_PORT"):
            data["port"] = os.getenv("SNAPSHOT_PORT")
        if os.getenv("SNAPSHOT_LOG_LEVEL"):
            data["log_level"] = os.getenv("SNAPSHOT_LOG_LEVEL")
        config = cls.from_dict(data)
        if not config.workers:
            logger.warning("No worker credentials configured; every worker will be rejected")
        return config


@dataclass
class WorkerConfig:
    """Settings for a remote worker process."""
    server_url: str
    identity: str
    secret: str
    fetcher: Optional[str] = None  # "package.module:callable"
    reconnect_delay: float = 5.0
    fetch_timeout: Optional[float] = None
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkerConfig":
        try:
            return cls(
                server_url=data["server_url"],
                identity=data["identity"],
                secret=data["secret"],
                fetcher=data.get("fetcher"),
                reconnect_delay=float(data.get("reconnect_delay", 5.0)),
                fetch_timeout=(
                    float(data["fetch_timeout"]) if data.get("fetch_timeout") is not None else None
                ),
                log_level=data.get("log_level", "INFO"),
            )
        except KeyError as e:
            raise ConfigurationError(f"Worker config is missing {e}") from e
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid worker config: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "server_url": self.server_url,
            "identity": self.identity,
            "secret": self.secret,
            "fetcher": self.fetcher,
            "reconnect_delay": self.reconnect_delay,
            "fetch_timeout": self.fetch_timeout,
            "log_level": self.log_level,
        }

    @classmethod
    def load(cls, path) -> "WorkerConfig":
        load_dotenv()
        data = _read_json(path)
        if os.getenv("SNAPSHOT_SERVER_URL"):
            data["server_url"] = os.getenv("SNAPSHOT_SERVER_URL")
        if os.getenv("SNAPSHOT_LOG_LEVEL"):
            data["log_level"] = os.getenv("SNAPSHOT_LOG_LEVEL")
        return cls.from_dict(data)
