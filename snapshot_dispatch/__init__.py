"""
Snapshot Dispatch
=================

Distributes "fetch a subject's profile snapshot" tasks to remote workers,
caches results with a freshness policy, and serves cached or freshly
fetched records.

Quick Start
-----------

In-process (no Redis required):

    from snapshot_dispatch import (
        Dispatcher,
        DispatcherUpstream,
        FreshnessCache,
        InMemoryProfileStore,
    )

    store = InMemoryProfileStore()
    dispatcher = Dispatcher(store=store, max_tasks_per_worker=5)
    cache = FreshnessCache(store, DispatcherUpstream(dispatcher))

    await dispatcher.enqueue("alice")
    entries = await cache.read(["alice", "bob"])

Distributed (dispatcher server + remote workers):

    from snapshot_dispatch import DispatcherConfig
    from snapshot_dispatch.distributed import DispatcherServer, WorkerClient

    # On the dispatcher machine:
    server = DispatcherServer(DispatcherConfig.load("server.config.json"))
    await server.start()

    # On worker machines:
    client = WorkerClient("ws://dispatcher:4000", identity="minion1", secret="pw")

    @client.fetcher
    async def fetch_profile(key):
        return {"attributes": {"display_name": "Alice"}}

    await client.run_forever()
"""

__version__ = "0.1.0"

# Core exports
from snapshot_dispatch.core import (
    Dispatcher,
    WorkerRegistry,
    FreshnessCache,
    DispatcherUpstream,
    ProfileStore,
    InMemoryProfileStore,
)

from snapshot_dispatch.core.config import DispatcherConfig, WorkerConfig
from snapshot_dispatch.core.records import (
    CacheEntry,
    EntryStatus,
    HistoryEntry,
    ProfileRecord,
    TaskOutcome,
)
from snapshot_dispatch.core.retry import BoundedRetry, RetryPolicy, UnboundedRetry
from snapshot_dispatch.core.errors import (
    SnapshotDispatchError,
    AuthError,
    TransportError,
    FetchError,
    ValidationError,
    PersistenceError,
    ConfigurationError,
)

__all__ = [
    # Version
    "__version__",
    # Dispatch
    "Dispatcher",
    "WorkerRegistry",
    "RetryPolicy",
    "UnboundedRetry",
    "BoundedRetry",
    # Cache and storage
    "FreshnessCache",
    "DispatcherUpstream",
    "ProfileStore",
    "InMemoryProfileStore",
    # Records
    "ProfileRecord",
    "HistoryEntry",
    "TaskOutcome",
    "CacheEntry",
    "EntryStatus",
    # Config
    "DispatcherConfig",
    "WorkerConfig",
    # Errors
    "SnapshotDispatchError",
    "AuthError",
    "TransportError",
    "FetchError",
    "ValidationError",
    "PersistenceError",
    "ConfigurationError",
]
