"""
Tests for the dispatcher server: worker WebSocket endpoint and HTTP gateway.
"""

import pytest
from aiohttp import BasicAuth, WSMsgType, test_utils

from snapshot_dispatch.core.config import DispatcherConfig
from snapshot_dispatch.core.errors import AuthError
from snapshot_dispatch.core.freshness import DispatcherUpstream, FreshnessCache
from snapshot_dispatch.core.registry import Credential
from snapshot_dispatch.core.store import InMemoryProfileStore
from snapshot_dispatch.distributed.server import SERVER_KEY, DispatcherServer, parse_basic_auth

from tests.fakes import wait_until

WORKERS = [Credential("minion1", "secret1"), Credential("minion2", "secret2")]


def make_server(**overrides) -> DispatcherServer:
    settings = {"max_tasks_per_worker": 2, "workers": WORKERS, "fetch_timeout": 0.0}
    settings.update(overrides)
    return DispatcherServer(DispatcherConfig(**settings))


def client_for(server: DispatcherServer) -> test_utils.TestClient:
    return test_utils.TestClient(test_utils.TestServer(server.create_app()))


def test_parse_basic_auth():
    header = BasicAuth("minion1", "secret1").encode()
    assert parse_basic_auth(header) == ("minion1", "secret1")

    with pytest.raises(AuthError):
        parse_basic_auth(None)
    with pytest.raises(AuthError):
        parse_basic_auth("Bearer abc")


def test_keeps_injected_empty_store_and_cache():
    store = InMemoryProfileStore()
    server = DispatcherServer(DispatcherConfig(workers=WORKERS), store=store)

    assert len(store) == 0
    assert server.store is store
    assert server.dispatcher.store is store
    assert server.dispatcher.registry.authenticate("minion1", "secret1") == "minion1"

    cache = FreshnessCache(store, DispatcherUpstream(server.dispatcher))
    rewired = DispatcherServer(DispatcherConfig(), store=store, dispatcher=server.dispatcher, cache=cache)
    assert rewired.cache is cache
    assert rewired.dispatcher is server.dispatcher


def test_app_exposes_server():
    server = make_server()
    assert server.create_app()[SERVER_KEY] is server


@pytest.mark.asyncio
async def test_post_task_enqueues():
    server = make_server()
    async with client_for(server) as client:
        response = await client.post("/task", json={"key": "alice"})
        assert response.status == 200
        assert await response.json() == {"success": True, "key": "alice", "queued": True}

        again = await client.post("/task", json={"key": "alice"})
        assert (await again.json())["queued"] is False

    assert server.dispatcher.queued_keys() == ["alice"]


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{}, {"key": ""}, {"key": "   "}, ["alice"]])
async def test_post_task_requires_key(body):
    server = make_server()
    async with client_for(server) as client:
        response = await client.post("/task", json=body)
        assert response.status == 400
        assert (await response.json())["error"] == "Key is required"


@pytest.mark.asyncio
async def test_post_task_rejects_non_json():
    async with client_for(make_server()) as client:
        response = await client.post("/task", data="key=alice")
        assert response.status == 400


@pytest.mark.asyncio
async def test_gateway_credentials_enforced():
    server = make_server(gateways=[Credential("portal", "pw")])
    async with client_for(server) as client:
        assert (await client.post("/task", json={"key": "alice"})).status == 401
        assert (await client.get("/record/alice")).status == 401

        bad = await client.post("/task", json={"key": "alice"}, auth=BasicAuth("portal", "nope"))
        assert bad.status == 401

        ok = await client.post("/task", json={"key": "alice"}, auth=BasicAuth("portal", "pw"))
        assert ok.status == 200


@pytest.mark.asyncio
async def test_worker_round_trip_then_fresh_read():
    server = make_server()
    async with client_for(server) as client:
        ws = await client.ws_connect("/ws", auth=BasicAuth("minion1", "secret1"))

        await client.post("/task", json={"key": "alice"})
        assert await ws.receive_json(timeout=2) == {"key": "alice"}

        await ws.send_json({"key": "alice", "result": {"attributes": {"display_name": "Alice"}}})
        assert await wait_until(lambda: not server.dispatcher.is_pending("alice"))

        response = await client.get("/record/alice")
        data = await response.json()
        assert data["status"] == "fresh"
        assert data["pending"] is False
        assert data["attributes"] == {"display_name": "Alice"}
        assert [h["value"] for h in data["history"]] == ["Alice"]

        await ws.close()


@pytest.mark.asyncio
async def test_worker_failure_is_redelivered():
    server = make_server()
    async with client_for(server) as client:
        ws = await client.ws_connect("/ws", auth=BasicAuth("minion1", "secret1"))
        await client.post("/task", json={"key": "bob"})
        assert await ws.receive_json(timeout=2) == {"key": "bob"}

        await ws.send_json({"key": "bob", "error": "page timed out"})

        assert await ws.receive_json(timeout=2) == {"key": "bob"}
        await ws.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("result", [
    {"attributes": "not-a-dict"},
    {"attributes": {"display_name": "Alice"}, "history": [{"value": "Alice"}]},
    {"attributes": {"display_name": "Alice"}, "last_updated": "yesterday"},
])
async def test_malformed_result_is_redelivered(result):
    server = make_server(max_tasks_per_worker=1)
    async with client_for(server) as client:
        ws = await client.ws_connect("/ws", auth=BasicAuth("minion1", "secret1"))
        await client.post("/task", json={"key": "alice"})
        await client.post("/task", json={"key": "bob"})
        assert await ws.receive_json(timeout=2) == {"key": "alice"}

        await ws.send_json({"key": "alice", "result": result})

        assert await ws.receive_json(timeout=2) == {"key": "bob"}
        assert server.dispatcher.queued_keys() == ["alice"]
        assert await server.store.query(["alice"]) == {}
        await ws.close()


@pytest.mark.asyncio
async def test_malformed_worker_message_is_ignored():
    server = make_server()
    async with client_for(server) as client:
        ws = await client.ws_connect("/ws", auth=BasicAuth("minion1", "secret1"))
        await ws.send_str("not json")
        await ws.send_json({"key": "alice"})
        await ws.send_json({"key": "bob", "result": {"attributes": "not-a-dict"}})

        response = await client.post("/task", json={"key": "alice"})
        assert (await response.json())["queued"] is True
        assert await ws.receive_json(timeout=2) == {"key": "alice"}
        assert server.dispatcher.queued_keys() == []
        await ws.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("auth", [BasicAuth("minion1", "wrong"), BasicAuth("stranger", "secret1"), None])
async def test_unauthorized_worker_is_closed(auth):
    server = make_server()
    async with client_for(server) as client:
        ws = await client.ws_connect("/ws", auth=auth)
        msg = await ws.receive(timeout=2)

        assert msg.type == WSMsgType.CLOSE
        assert msg.data == 1008
        assert msg.extra == "Unauthorized"
        assert len(server.dispatcher.registry) == 0


@pytest.mark.asyncio
async def test_disconnect_requeues_in_flight_key():
    server = make_server()
    async with client_for(server) as client:
        ws = await client.ws_connect("/ws", auth=BasicAuth("minion1", "secret1"))
        await client.post("/task", json={"key": "alice"})
        assert await ws.receive_json(timeout=2) == {"key": "alice"}

        await ws.close()

        assert await wait_until(lambda: server.dispatcher.queued_keys() == ["alice"])
        assert len(server.dispatcher.registry) == 0

        other = await client.ws_connect("/ws", auth=BasicAuth("minion2", "secret2"))
        assert await other.receive_json(timeout=2) == {"key": "alice"}
        await other.close()


@pytest.mark.asyncio
async def test_unknown_record_is_pending_and_enqueued():
    server = make_server()
    async with client_for(server) as client:
        response = await client.get("/record/carol")
        data = await response.json()

    assert data["pending"] is True
    assert data["attributes"] is None
    assert server.dispatcher.queued_keys() == ["carol"]


@pytest.mark.asyncio
async def test_records_batch():
    server = make_server()
    async with client_for(server) as client:
        assert (await client.get("/records")).status == 400

        response = await client.get("/records", params=[("keys", "alice"), ("keys", "bob")])
        data = await response.json()

    assert [entry["key"] for entry in data] == ["alice", "bob"]
    assert all(entry["pending"] for entry in data)


@pytest.mark.asyncio
async def test_status():
    server = make_server()
    async with client_for(server) as client:
        await client.post("/task", json={"key": "alice"})
        data = await (await client.get("/status")).json()

    assert data["queue_length"] == 1
    assert data["queued_keys"] == ["alice"]
    assert data["max_tasks_per_worker"] == 2
    assert data["workers"] == []
