"""
Pytest configuration and shared fixtures.
"""

import pytest

from snapshot_dispatch.core.dispatcher import Dispatcher
from snapshot_dispatch.core.registry import Credential, CredentialAllowList, WorkerRegistry
from snapshot_dispatch.core.store import InMemoryProfileStore

from tests.fakes import FakeConnection, ManualClock


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(clock):
    return InMemoryProfileStore(clock=clock)


@pytest.fixture
def allow_list():
    return CredentialAllowList([
        Credential("minion1", "secret1"),
        Credential("minion2", "secret2"),
    ])


@pytest.fixture
def dispatcher(store, allow_list):
    """Dispatcher with the capacity used throughout the scenarios: 2 per worker."""
    return Dispatcher(
        store=store,
        max_tasks_per_worker=2,
        registry=WorkerRegistry(allow_list),
    )


@pytest.fixture
def connect(dispatcher):
    """Factory that attaches a fake worker connection to the dispatcher."""
    async def _connect(identity: str = "minion1", fail: bool = False):
        connection = FakeConnection(fail=fail)
        worker = await dispatcher.add_worker(identity, connection)
        return worker, connection
    return _connect
