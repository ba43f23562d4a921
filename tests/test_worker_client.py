"""
Tests for the remote worker client, against a real dispatcher server.
"""

import asyncio
from datetime import datetime, timezone

import pytest
from aiohttp import WSCloseCode, test_utils

from snapshot_dispatch.core.config import DispatcherConfig
from snapshot_dispatch.core.errors import FetchError
from snapshot_dispatch.core.records import ProfileRecord
from snapshot_dispatch.core.registry import Credential
from snapshot_dispatch.distributed.server import DispatcherServer
from snapshot_dispatch.distributed.worker_client import (
    ClientState,
    FetchResult,
    WorkerClient,
    to_record,
)

from tests.fakes import wait_until

WORKERS = [Credential("minion1", "secret1")]


def make_server() -> DispatcherServer:
    return DispatcherServer(DispatcherConfig(max_tasks_per_worker=2, workers=WORKERS, fetch_timeout=0.0))


def base_url(test_server: test_utils.TestServer) -> str:
    return str(test_server.make_url("/")).rstrip("/")


async def fetch_profile(key: str):
    await asyncio.sleep(0)
    return {"attributes": {"display_name": key.title()}}


@pytest.mark.asyncio
async def test_fetches_and_reports_result():
    server = make_server()
    async with test_utils.TestServer(server.create_app()) as ts:
        client = WorkerClient(base_url(ts), "minion1", "secret1", fetch=fetch_profile)
        await client.start()
        try:
            assert await wait_until(lambda: len(server.dispatcher.registry.active_workers()) == 1)
            await server.dispatcher.enqueue("alice")

            assert await wait_until(lambda: not server.dispatcher.is_pending("alice"))
            records = await server.store.query(["alice"])
            assert records["alice"].attributes == {"display_name": "Alice"}
            assert client.state == ClientState.CONNECTED
        finally:
            await client.stop()


@pytest.mark.asyncio
async def test_failed_fetch_is_retried():
    server = make_server()
    calls = []

    async def flaky(key):
        calls.append(key)
        if len(calls) == 1:
            raise RuntimeError("profile page did not load")
        return FetchResult(attributes={"display_name": "Bob"})

    async with test_utils.TestServer(server.create_app()) as ts:
        client = WorkerClient(base_url(ts), "minion1", "secret1", fetch=flaky)
        await client.start()
        try:
            await server.dispatcher.enqueue("bob")
            assert await wait_until(lambda: not server.dispatcher.is_pending("bob"))
        finally:
            await client.stop()

    assert calls == ["bob", "bob"]


@pytest.mark.asyncio
async def test_unencodable_result_is_reported_as_failure():
    server = DispatcherServer(DispatcherConfig(
        max_tasks_per_worker=1, workers=WORKERS, fetch_timeout=0.0, max_attempts=1,
    ))

    async def fetch(key):
        if key == "alice":
            return {"attributes": {"joined": datetime(2012, 3, 1, tzinfo=timezone.utc)}}
        return {"attributes": {"display_name": key.title()}}

    async with test_utils.TestServer(server.create_app()) as ts:
        client = WorkerClient(base_url(ts), "minion1", "secret1", fetch=fetch)
        await client.start()
        try:
            await server.dispatcher.enqueue("alice")
            await server.dispatcher.enqueue("bob")

            assert await wait_until(lambda: not server.dispatcher.is_pending("bob"))
            assert server.dispatcher.dead_letters == ["alice"]
            assert not server.dispatcher.is_pending("alice")
            assert list(await server.store.query(["alice", "bob"])) == ["bob"]
        finally:
            await client.stop()


@pytest.mark.asyncio
async def test_sync_fetch_runs_in_executor():
    server = make_server()

    def blocking_fetch(key):
        return {"display_name": key.upper()}

    async with test_utils.TestServer(server.create_app()) as ts:
        client = WorkerClient(base_url(ts), "minion1", "secret1", fetch=blocking_fetch)
        await client.start()
        try:
            await server.dispatcher.enqueue("carol")
            assert await wait_until(lambda: not server.dispatcher.is_pending("carol"))
            records = await server.store.query(["carol"])
            assert records["carol"].attributes == {"display_name": "CAROL"}
        finally:
            await client.stop()


@pytest.mark.asyncio
async def test_bad_credentials_stop_the_client():
    server = make_server()
    async with test_utils.TestServer(server.create_app()) as ts:
        client = WorkerClient(base_url(ts), "minion1", "wrong", fetch=fetch_profile, reconnect_delay=0.05)
        await asyncio.wait_for(client.run_forever(), timeout=2)

        assert client.auth_failed
        assert not client.is_running
        assert client._reconnect_task is None
        assert len(server.dispatcher.registry) == 0
        await client.stop()


@pytest.mark.asyncio
async def test_reconnects_after_server_closes_connection():
    server = make_server()
    async with test_utils.TestServer(server.create_app()) as ts:
        client = WorkerClient(base_url(ts), "minion1", "secret1", fetch=fetch_profile, reconnect_delay=0.05)
        await client.start()
        try:
            assert await wait_until(lambda: len(server.dispatcher.registry) == 1)
            first = server.dispatcher.registry.list_workers()[0]

            await first.connection.close(WSCloseCode.GOING_AWAY, "restarting")

            assert await wait_until(lambda: any(
                w.worker_id != first.worker_id for w in server.dispatcher.registry.active_workers()
            ))
            assert not client.auth_failed
            assert client.state == ClientState.CONNECTED
        finally:
            await client.stop()


@pytest.mark.asyncio
async def test_single_reconnect_loop_while_server_is_down():
    port = test_utils.unused_port()
    client = WorkerClient(f"http://127.0.0.1:{port}", "minion1", "secret1", fetch=fetch_profile, reconnect_delay=10)

    await client.start()
    first = client._reconnect_task
    client._schedule_reconnect()
    client._schedule_reconnect()

    assert first is not None
    assert client._reconnect_task is first
    assert client.state == ClientState.DISCONNECTED

    await client.stop()
    await asyncio.sleep(0)
    assert first.done()


@pytest.mark.asyncio
async def test_start_requires_fetch_capability():
    client = WorkerClient("http://127.0.0.1:1", "minion1", "secret1")
    with pytest.raises(ValueError):
        await client.start()


@pytest.mark.asyncio
async def test_fetcher_decorator_registers_capability():
    client = WorkerClient("http://127.0.0.1:1", "minion1", "secret1")

    @client.fetcher
    async def fetch(key):
        return {"display_name": "Dave"}

    record = await client.execute("dave")
    assert record.attributes == {"display_name": "Dave"}


@pytest.mark.asyncio
async def test_execute_times_out():
    async def slow(key):
        await asyncio.sleep(1)

    client = WorkerClient("http://127.0.0.1:1", "minion1", "secret1", fetch=slow, fetch_timeout=0.05)
    with pytest.raises(asyncio.TimeoutError):
        await client.execute("erin")


@pytest.mark.asyncio
async def test_execute_rejects_empty_result():
    async def nothing(key):
        return None

    client = WorkerClient("http://127.0.0.1:1", "minion1", "secret1", fetch=nothing)
    with pytest.raises(FetchError):
        await client.execute("erin")


def test_to_record_variants():
    observed = datetime(2024, 5, 1, tzinfo=timezone.utc)

    from_result = to_record("alice", FetchResult({"display_name": "Alice"}, observed_at=observed))
    assert from_result.last_updated == observed

    nested = to_record("alice", {"attributes": {"display_name": "Alice"}, "observed_at": observed.isoformat()})
    assert nested.attributes == {"display_name": "Alice"}
    assert nested.last_updated == observed

    flat = to_record("alice", {"key": "alice", "display_name": "Alice", "joined": "2012"})
    assert flat.attributes == {"display_name": "Alice", "joined": "2012"}

    record = ProfileRecord("alice", {"display_name": "Alice"})
    assert to_record("alice", record) is record


def test_to_record_rejects_unknown_types():
    with pytest.raises(FetchError):
        to_record("alice", "Alice")
    with pytest.raises(FetchError):
        to_record("alice", ProfileRecord("bob"))
