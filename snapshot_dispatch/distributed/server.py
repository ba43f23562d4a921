"""
Dispatcher server: worker WebSocket endpoint plus the HTTP gateway.

Routes:
- GET  /ws              worker connections (Basic auth handshake)
- POST /task            enqueue a key, respond immediately
- GET  /record/{key}    fresh record, or enqueue and return a pending record
- GET  /records?keys=   batch freshness read
- GET  /status          queue and worker overview
"""

from typing import Optional
import logging

from aiohttp import BasicAuth, WSCloseCode, WSMsgType, hdrs, web

from ..core.config import DispatcherConfig
from ..core.dispatcher import Dispatcher
from ..core.errors import AuthError, PersistenceError, TransportError, ValidationError
from ..core.freshness import DispatcherUpstream, FreshnessCache
from ..core.records import TaskOutcome, validate_key
from ..core.registry import CredentialAllowList, WorkerConnection, WorkerRegistry
from ..core.retry import BoundedRetry, UnboundedRetry
from ..core.store import InMemoryProfileStore, ProfileStore
from .protocol import ResultMessage, TaskMessage, UNAUTHORIZED_REASON, read_key
from .redis_backend import RedisProfileStore

logger = logging.getLogger(__name__)


def parse_basic_auth(header: Optional[str]):
    """Return (identity, secret) from an Authorization header, or raise AuthError."""
    if not header:
        raise AuthError("Missing Authorization header")
    try:
        auth = BasicAuth.decode(header)
    except ValueError as e:
        raise AuthError(f"Malformed Authorization header: {e}") from e
    return auth.login, auth.password


class WebSocketConnection(WorkerConnection):
    """WorkerConnection over an aiohttp server-side WebSocket."""

    def __init__(self, ws: web.WebSocketResponse):
        self.ws = ws

    async def send_task(self, key: str) -> None:
        if self.ws.closed:
            raise TransportError("WebSocket is closed")
        try:
            await self.ws.send_str(TaskMessage(key).to_json())
        except (ConnectionResetError, RuntimeError) as e:
            raise TransportError(str(e)) from e

    async def close(self, code: int = WSCloseCode.OK, reason: str = "") -> None:
        await self.ws.close(code=code, message=reason.encode())


class DispatcherServer:
    """
    Hosts a Dispatcher behind aiohttp.

    Example:
        config = DispatcherConfig.load("server.config.json")
        server = DispatcherServer(config)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(
        self,
        config: Optional[DispatcherConfig] = None,
        store: Optional[ProfileStore] = None,
        dispatcher: Optional[Dispatcher] = None,
        cache: Optional[FreshnessCache] = None,
    ):
        self.config = config or DispatcherConfig()
        self.store = store if store is not None else self._create_store()

        if dispatcher is None:
            retry_policy = (
                BoundedRetry(self.config.max_attempts)
                if self.config.max_attempts
                else UnboundedRetry()
            )
            dispatcher = Dispatcher(
                store=self.store,
                max_tasks_per_worker=self.config.max_tasks_per_worker,
                registry=WorkerRegistry(CredentialAllowList(self.config.workers)),
                retry_policy=retry_policy,
            )
        self.dispatcher = dispatcher

        if cache is None:
            cache = FreshnessCache(
                store=self.store,
                upstream=DispatcherUpstream(self.dispatcher),
                max_age=self.config.max_age,
                fetch_timeout=self.config.fetch_timeout,
            )
        self.cache = cache
        self.gateway_allow_list = CredentialAllowList(self.config.gateways)
        self._runner: Optional[web.AppRunner] = None

    def _create_store(self) -> ProfileStore:
        if self.config.redis_url:
            return RedisProfileStore(
                self.config.redis_url,
                prefix=self.config.prefix,
                history_attribute=self.config.history_attribute,
            )
        logger.info("No redis_url configured, using in-memory profile store")
        return InMemoryProfileStore(history_attribute=self.config.history_attribute)

    def create_app(self) -> web.Application:
        app = web.Application()
        app[SERVER_KEY] = self
        app.router.add_get("/ws", self.handle_worker)
        app.router.add_post("/task", self.handle_task)
        app.router.add_get("/record/{key}", self.handle_record)
        app.router.add_get("/records", self.handle_records)
        app.router.add_get("/status", self.handle_status)
        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_startup(self, app: web.Application) -> None:
        if isinstance(self.store, RedisProfileStore):
            await self.store.connect()

    async def _on_cleanup(self, app: web.Application) -> None:
        for worker in self.dispatcher.registry.list_workers():
            await worker.connection.close(WSCloseCode.GOING_AWAY, "Server shutdown")
        await self.store.close()

    async def start(self) -> web.AppRunner:
        runner = web.AppRunner(self.create_app())
        await runner.setup()
        site = web.TCPSite(runner, self.config.host, self.config.port)
        await site.start()
        self._runner = runner
        logger.info(f"Dispatcher running on port {self.config.port}")
        return runner

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Dispatcher stopped")

    # Worker endpoint

    async def handle_worker(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=self.config.heartbeat or None)
        await ws.prepare(request)

        try:
            identity, secret = parse_basic_auth(request.headers.get(hdrs.AUTHORIZATION))
            self.dispatcher.registry.authenticate(identity, secret)
        except AuthError as e:
            logger.error(f"Unauthorized WebSocket connection attempt: {e}")
            await ws.close(
                code=WSCloseCode.POLICY_VIOLATION,
                message=UNAUTHORIZED_REASON.encode(),
            )
            return ws

        worker = await self.dispatcher.add_worker(identity, WebSocketConnection(ws))
        worker_id = worker.worker_id

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_worker_message(worker_id, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.error(f"Error with worker {worker_id}: {ws.exception()}")
                    break
        finally:
            await self.dispatcher.on_worker_disconnect(worker_id)

        return ws

    async def _handle_worker_message(self, worker_id: str, data: str) -> None:
        try:
            outcome = ResultMessage.from_json(data).to_outcome()
        except ValidationError as e:
            key = read_key(data)
            if key is None or self.dispatcher.registry.owner_of(key) != worker_id:
                logger.warning(f"Ignoring malformed message from worker {worker_id}: {e}")
                return
            logger.warning(f"Malformed result for {key} from worker {worker_id}: {e}")
            outcome = TaskOutcome.failure(key, str(e))

        logger.debug(f"Result received from worker {worker_id} for {outcome.key}")
        try:
            await self.dispatcher.on_worker_result(worker_id, outcome)
        except PersistenceError as e:
            logger.error(f"Result for {outcome.key} from {worker_id} was not stored: {e}")

    # Gateway

    def _check_gateway_auth(self, request: web.Request) -> None:
        if not self.gateway_allow_list:
            return
        try:
            identity, secret = parse_basic_auth(request.headers.get(hdrs.AUTHORIZATION))
        except AuthError:
            raise web.HTTPUnauthorized(reason=UNAUTHORIZED_REASON)
        if not self.gateway_allow_list.check(identity, secret):
            logger.warning(f"Gateway authentication failed for: {identity}")
            raise web.HTTPUnauthorized(reason=UNAUTHORIZED_REASON)

    async def handle_task(self, request: web.Request) -> web.Response:
        self._check_gateway_auth(request)
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Body must be JSON"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Key is required"}, status=400)

        try:
            key = validate_key(body.get("key"))
        except ValidationError:
            return web.json_response({"error": "Key is required"}, status=400)

        logger.info(f"Profile request received for: {key}")
        admitted = await self.dispatcher.enqueue(key)
        return web.json_response({"success": True, "key": key, "queued": admitted})

    async def handle_record(self, request: web.Request) -> web.Response:
        self._check_gateway_auth(request)
        key = request.match_info.get("key", "")
        try:
            entry = await self.cache.read_one(key, timeout=0)
        except ValidationError:
            return web.json_response({"error": "Key is required"}, status=400)
        except PersistenceError as e:
            logger.error(f"Failed to read record {key}: {e}")
            return web.json_response({"error": "Failed to read record"}, status=500)
        return web.json_response(entry.to_dict())

    async def handle_records(self, request: web.Request) -> web.Response:
        self._check_gateway_auth(request)
        keys = request.query.getall("keys", [])
        if not keys:
            return web.json_response({"error": "Keys are required"}, status=400)
        try:
            entries = await self.cache.read(keys)
        except ValidationError as e:
            return web.json_response({"error": str(e)}, status=400)
        except PersistenceError as e:
            logger.error(f"Failed to read records {keys}: {e}")
            return web.json_response({"error": "Failed to fetch profiles"}, status=500)
        return web.json_response([entry.to_dict() for entry in entries])

    async def handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self.dispatcher.status())


SERVER_KEY = web.AppKey("server", DispatcherServer)
