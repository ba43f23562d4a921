# Snapshot dispatch
# Core module exports

from .dispatcher import Dispatcher
from .registry import WorkerRegistry, Worker, WorkerConnection, Credential, CredentialAllowList
from .freshness import FreshnessCache, DispatcherUpstream, Upstream
from .store import ProfileStore, InMemoryProfileStore

__all__ = [
    "Dispatcher",
    "WorkerRegistry",
    "Worker",
    "WorkerConnection",
    "Credential",
    "CredentialAllowList",
    "FreshnessCache",
    "DispatcherUpstream",
    "Upstream",
    "ProfileStore",
    "InMemoryProfileStore",
]
