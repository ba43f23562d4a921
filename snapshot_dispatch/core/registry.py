"""
Worker registry for connected fetch workers.

The registry:
- Authenticates worker credentials against a fixed allow-list
- Tracks each live connection as a Worker with its own in-flight key set
- Indexes which worker holds which key
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set
from datetime import datetime
from enum import Enum
import hmac
import uuid
import logging

from .errors import AuthError
from .records import utcnow

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Lifecycle of a worker connection on the dispatcher side."""
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"  # terminal


class WorkerConnection:
    """
    Transport to one worker.

    The server wraps a WebSocket in this interface; tests use in-memory
    fakes. Implementations raise TransportError when the peer is gone.
    """

    async def send_task(self, key: str) -> None:
        raise NotImplementedError

    async def close(self, code: int = 1000, reason: str = "") -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class Credential:
    """An identity/secret pair on the allow-list."""
    identity: str
    secret: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        return cls(identity=str(data["identity"]), secret=str(data["secret"]))

    def to_dict(self) -> Dict[str, Any]:
        return {"identity": self.identity, "secret": self.secret}


class CredentialAllowList:
    """Fixed set of accepted credentials."""

    def __init__(self, credentials: Iterable[Credential] = ()):
        self._secrets: Dict[str, List[str]] = {}
        for cred in credentials:
            self._secrets.setdefault(cred.identity, []).append(cred.secret)

    def __bool__(self) -> bool:
        return bool(self._secrets)

    def check(self, identity: Optional[str], secret: Optional[str]) -> bool:
        if not identity or secret is None:
            return False
        candidates = self._secrets.get(identity, [])
        matched = False
        for candidate in candidates:
            if hmac.compare_digest(candidate.encode(), secret.encode()):
                matched = True
        return matched


@dataclass
class Worker:
    """A live connection slot."""
    worker_id: str
    identity: str
    connection: WorkerConnection
    assigned_keys: Set[str] = field(default_factory=set)
    state: ConnectionState = ConnectionState.AUTHENTICATED
    connected_at: datetime = field(default_factory=utcnow)

    @property
    def load(self) -> int:
        return len(self.assigned_keys)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "identity": self.identity,
            "state": self.state.value,
            "assigned_keys": sorted(self.assigned_keys),
            "load": self.load,
            "connected_at": self.connected_at.isoformat(),
        }


class WorkerRegistry:
    """
    Registry of connected workers.

    Not safe for concurrent mutation on its own; the Dispatcher serializes
    every call that changes assignments.

    Example:
        registry = WorkerRegistry(CredentialAllowList([Credential("m1", "pw")]))
        registry.authenticate("m1", "pw")
        worker = registry.register("m1", connection)
        registry.activate(worker.worker_id)
    """

    def __init__(self, allow_list: Optional[CredentialAllowList] = None):
        self.allow_list = allow_list if allow_list is not None else CredentialAllowList()
        self._workers: Dict[str, Worker] = {}
        self._owners: Dict[str, str] = {}

    def authenticate(self, identity: Optional[str], secret: Optional[str]) -> str:
        """Return the identity if the pair is allowed, else raise AuthError."""
        if not self.allow_list.check(identity, secret):
            logger.warning(f"Worker authentication failed for: {identity}")
            raise AuthError(f"Invalid credentials for {identity!r}")
        logger.info(f"Worker authentication successful for: {identity}")
        return identity

    def register(self, identity: str, connection: WorkerConnection) -> Worker:
        """Create a Worker for an authenticated connection."""
        worker = Worker(
            worker_id=f"worker-{uuid.uuid4().hex[:8]}",
            identity=identity,
            connection=connection,
        )
        self._workers[worker.worker_id] = worker
        logger.info(f"Worker connected {identity}, id: {worker.worker_id}")
        return worker

    def activate(self, worker_id: str) -> None:
        worker = self._workers.get(worker_id)
        if worker and worker.state == ConnectionState.AUTHENTICATED:
            worker.state = ConnectionState.ACTIVE

    def remove(self, worker_id: str) -> Optional[Worker]:
        """Drop a worker and release its key index entries."""
        worker = self._workers.pop(worker_id, None)
        if worker is None:
            return None
        worker.state = ConnectionState.DISCONNECTED
        for key in worker.assigned_keys:
            if self._owners.get(key) == worker_id:
                del self._owners[key]
        return worker

    def assign(self, worker_id: str, keys: Iterable[str]) -> None:
        worker = self._workers[worker_id]
        for key in keys:
            worker.assigned_keys.add(key)
            self._owners[key] = worker_id

    def release(self, worker_id: str, key: str) -> bool:
        """Remove key from the worker's in-flight set; False if it did not hold it."""
        worker = self._workers.get(worker_id)
        if worker is None or key not in worker.assigned_keys:
            return False
        worker.assigned_keys.discard(key)
        if self._owners.get(key) == worker_id:
            del self._owners[key]
        return True

    def owner_of(self, key: str) -> Optional[str]:
        return self._owners.get(key)

    def get_worker(self, worker_id: str) -> Optional[Worker]:
        return self._workers.get(worker_id)

    def list_workers(self, state: Optional[ConnectionState] = None) -> List[Worker]:
        """Workers in registration order, optionally filtered by state."""
        workers = list(self._workers.values())
        if state:
            workers = [w for w in workers if w.state == state]
        return workers

    def active_workers(self) -> List[Worker]:
        return self.list_workers(ConnectionState.ACTIVE)

    def __len__(self) -> int:
        return len(self._workers)

    def to_dict(self) -> Dict[str, Any]:
        return {"workers": [w.to_dict() for w in self._workers.values()]}
