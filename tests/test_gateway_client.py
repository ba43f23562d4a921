"""
Tests for a remote freshness cache reading through the dispatcher gateway.
"""

import pytest
from aiohttp import test_utils

from snapshot_dispatch.core.config import DispatcherConfig
from snapshot_dispatch.core.errors import TransportError
from snapshot_dispatch.core.freshness import FreshnessCache
from snapshot_dispatch.core.records import EntryStatus, ProfileRecord
from snapshot_dispatch.core.registry import Credential
from snapshot_dispatch.core.store import InMemoryProfileStore
from snapshot_dispatch.distributed.gateway_client import GatewayUpstream
from snapshot_dispatch.distributed.server import DispatcherServer

GATEWAYS = [Credential("proxy", "pw")]


def make_server() -> DispatcherServer:
    return DispatcherServer(DispatcherConfig(gateways=GATEWAYS, fetch_timeout=0.0))


def base_url(test_server: test_utils.TestServer) -> str:
    return str(test_server.make_url("/")).rstrip("/")


@pytest.mark.asyncio
async def test_submit_queues_key():
    server = make_server()
    async with test_utils.TestServer(server.create_app()) as ts:
        upstream = GatewayUpstream(base_url(ts), identity="proxy", secret="pw")
        try:
            assert await upstream.submit("alice") is True
            assert await upstream.submit("alice") is False
        finally:
            await upstream.close()

    assert server.dispatcher.queued_keys() == ["alice"]


@pytest.mark.asyncio
async def test_wrong_credentials_raise_transport_error():
    server = make_server()
    async with test_utils.TestServer(server.create_app()) as ts:
        upstream = GatewayUpstream(base_url(ts), identity="proxy", secret="nope")
        try:
            with pytest.raises(TransportError):
                await upstream.get_record("alice")
        finally:
            await upstream.close()


@pytest.mark.asyncio
async def test_pending_until_dispatcher_has_record():
    server = make_server()
    async with test_utils.TestServer(server.create_app()) as ts:
        upstream = GatewayUpstream(base_url(ts), identity="proxy", secret="pw", poll_interval=0.05)
        try:
            assert await upstream.fetch(["alice"], timeout=0.2) == {"alice": None}
            assert server.dispatcher.queued_keys() == ["alice"]

            await server.store.upsert(ProfileRecord("alice", {"display_name": "Alice"}))
            results = await upstream.fetch(["alice"], timeout=0.2)

            assert results["alice"].attributes == {"display_name": "Alice"}
            assert results["alice"].history_values() == ["Alice"]
        finally:
            await upstream.close()


@pytest.mark.asyncio
async def test_remote_cache_stores_fetched_records():
    server = make_server()
    await server.store.upsert(ProfileRecord("bob", {"display_name": "Bob"}))

    async with test_utils.TestServer(server.create_app()) as ts:
        upstream = GatewayUpstream(base_url(ts), identity="proxy", secret="pw", poll_interval=0.05)
        local = InMemoryProfileStore()
        cache = FreshnessCache(local, upstream, fetch_timeout=0.2)
        try:
            first = await cache.read(["bob", "carol"])
            second = await cache.read(["bob"])
        finally:
            await upstream.close()

    assert [e.status for e in first] == [EntryStatus.FETCHED, EntryStatus.PENDING]
    assert second[0].status == EntryStatus.FRESH
    assert len(local) == 1


@pytest.mark.asyncio
async def test_unreachable_gateway_leaves_keys_pending():
    upstream = GatewayUpstream(f"http://127.0.0.1:{test_utils.unused_port()}")
    cache = FreshnessCache(InMemoryProfileStore(), upstream, fetch_timeout=0.1)
    try:
        entries = await cache.read(["alice"])
    finally:
        await upstream.close()

    assert entries[0].pending
