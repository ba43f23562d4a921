"""
Remote worker that executes fetch tasks for the dispatcher.

Workers:
- Hold one authenticated WebSocket to the dispatcher
- Run the fetch capability for every key they receive
- Report a record or an error back over the same connection
- Reconnect after a fixed delay when the connection drops
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional
from datetime import datetime
from enum import Enum
import asyncio
import logging

import aiohttp
from aiohttp import WSCloseCode, WSMsgType

from ..core.errors import FetchError, ValidationError
from ..core.records import ProfileRecord, parse_timestamp, utcnow
from .protocol import ResultMessage, TaskMessage

logger = logging.getLogger(__name__)


class ClientState(Enum):
    """Connection state of a worker client."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class FetchResult:
    """What the fetch capability returns for a key."""
    attributes: Dict[str, Any]
    observed_at: datetime = field(default_factory=utcnow)


def to_record(key: str, result: Any) -> ProfileRecord:
    """Normalize a fetch capability's return value into a ProfileRecord."""
    if isinstance(result, ProfileRecord):
        if result.key != key:
            raise FetchError(key, f"fetch returned a record for {result.key!r}")
        return result
    if isinstance(result, FetchResult):
        return ProfileRecord(key=key, attributes=result.attributes, last_updated=result.observed_at)
    if isinstance(result, dict):
        if "attributes" in result:
            attributes = result["attributes"]
        else:
            attributes = {k: v for k, v in result.items() if k not in ("key", "observed_at")}
        observed_at = result.get("observed_at")
        if isinstance(observed_at, str):
            observed_at = parse_timestamp(observed_at)
        return ProfileRecord(key=key, attributes=attributes, last_updated=observed_at or utcnow())
    raise FetchError(key, f"fetch returned {type(result).__name__}, expected a snapshot")


class WorkerClient:
    """
    A worker that fetches snapshots on behalf of the dispatcher.

    Example:
        client = WorkerClient(
            "ws://localhost:4000",
            identity="minion1",
            secret="secret",
        )

        @client.fetcher
        async def fetch_profile(key):
            return {"attributes": {"display_name": "Alice"}}

        await client.run_forever()
    """

    def __init__(
        self,
        server_url: str,
        identity: str,
        secret: str,
        fetch: Optional[Callable] = None,
        reconnect_delay: float = 5.0,
        fetch_timeout: Optional[float] = None,
        heartbeat: Optional[float] = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.identity = identity
        self.secret = secret
        self.reconnect_delay = reconnect_delay
        self.fetch_timeout = fetch_timeout
        self.heartbeat = heartbeat
        self._fetch = fetch

        self.state = ClientState.DISCONNECTED
        self.auth_failed = False
        self._running = False
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._listen_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._inflight: Dict[str, asyncio.Task] = {}
        self._stopped: Optional[asyncio.Event] = None

    def fetcher(self, func: Callable) -> Callable:
        """Decorator to register the fetch capability."""
        self._fetch = func
        return func

    @property
    def url(self) -> str:
        return f"{self.server_url}/ws"

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def current_load(self) -> int:
        return len(self._inflight)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    # Lifecycle

    async def start(self) -> None:
        """Connect, scheduling reconnects in the background on failure."""
        if self._running:
            return
        if self._fetch is None:
            raise ValueError("No fetch capability registered")

        self._running = True
        self.auth_failed = False
        self._stopped = asyncio.Event()
        if not await self._connect() and not self.auth_failed:
            self._schedule_reconnect()

    async def run_forever(self) -> None:
        """Start and block until stopped or rejected by the dispatcher."""
        await self.start()
        if self._stopped is not None:
            await self._stopped.wait()

    async def stop(self) -> None:
        """Close the connection and cancel in-flight fetches."""
        if not self._running and self._ws is None and not (self._session and self._owns_session):
            return
        logger.info(f"Stopping worker {self.identity}...")
        self._running = False

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._cancel_inflight()

        if self._ws is not None:
            await self._ws.close()
        if self._listen_task and not self._listen_task.done():
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass

        if self._session and self._owns_session:
            await self._session.close()
            self._session = None

        self.state = ClientState.DISCONNECTED
        if self._stopped is not None:
            self._stopped.set()
        logger.info(f"Worker {self.identity} stopped")

    # Connection

    async def _connect(self) -> bool:
        """One connection attempt; True once connected."""
        if self.state != ClientState.DISCONNECTED:
            return False

        self.state = ClientState.CONNECTING
        logger.info(f"Connecting to server at {self.url}...")
        try:
            ws = await self._get_session().ws_connect(
                self.url,
                auth=aiohttp.BasicAuth(self.identity, self.secret),
                heartbeat=self.heartbeat,
            )
        except aiohttp.WSServerHandshakeError as e:
            self.state = ClientState.DISCONNECTED
            if e.status in (401, 403):
                self._fail_auth(f"handshake rejected with HTTP {e.status}")
            else:
                logger.error(f"WebSocket handshake failed: {e}")
            return False
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            self.state = ClientState.DISCONNECTED
            logger.error(f"Connection to {self.url} failed: {e}")
            return False

        self._ws = ws
        self.state = ClientState.CONNECTED
        logger.info(f"Connected to server as {self.identity}")
        self._listen_task = asyncio.create_task(self._listen(ws))
        return True

    async def _listen(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._on_message(ws, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.error(f"WebSocket error: {ws.exception()}")
                    break
        finally:
            if not ws.closed:
                await ws.close()
            self._ws = None
            self.state = ClientState.DISCONNECTED
            self._cancel_inflight()

        if not self._running:
            return
        if ws.close_code == WSCloseCode.POLICY_VIOLATION:
            self._fail_auth("closed by dispatcher as unauthorized")
            return
        logger.error(f"Connection closed (code: {ws.close_code}). Attempting to reconnect...")
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        """Start the reconnect loop unless a connection or reconnect already exists."""
        if not self._running:
            return
        if self.state != ClientState.DISCONNECTED:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        logger.info(f"Reconnecting in {self.reconnect_delay} seconds...")
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while self._running and self.state == ClientState.DISCONNECTED:
            await asyncio.sleep(self.reconnect_delay)
            if not self._running:
                return
            if await self._connect() or self.auth_failed:
                return

    def _fail_auth(self, reason: str) -> None:
        logger.error(f"Authentication failed for {self.identity}: {reason}. Not reconnecting.")
        self.auth_failed = True
        self._running = False
        if self._stopped is not None:
            self._stopped.set()

    # Tasks

    def _on_message(self, ws: aiohttp.ClientWebSocketResponse, data: str) -> None:
        try:
            task = TaskMessage.from_json(data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed task message: {e}")
            return

        if task.key in self._inflight:
            logger.debug(f"Task {task.key} is already running")
            return

        logger.info(f"Received task: {task.key}")
        runner = asyncio.create_task(self._run_task(ws, task.key))
        self._inflight[task.key] = runner
        runner.add_done_callback(lambda done: self._forget(task.key, done))

    def _forget(self, key: str, runner: asyncio.Task) -> None:
        if self._inflight.get(key) is runner:
            del self._inflight[key]

    async def _run_task(self, ws: aiohttp.ClientWebSocketResponse, key: str) -> None:
        try:
            record = await self.execute(key)
            payload = ResultMessage(key=key, result=record).to_json()
            logger.info(f"Fetch result for {key} ready")
        except asyncio.TimeoutError:
            logger.error(f"Fetch for {key} timed out after {self.fetch_timeout}s")
            payload = ResultMessage(key=key, error=f"Fetch timed out after {self.fetch_timeout}s").to_json()
        except Exception as e:
            logger.error(f"Error fetching profile for {key}: {e}")
            payload = ResultMessage(key=key, error=str(e) or e.__class__.__name__).to_json()

        if ws.closed:
            logger.warning(f"Connection closed before result for {key} could be sent")
            return
        try:
            await ws.send_str(payload)
        except (ConnectionResetError, RuntimeError) as e:
            logger.warning(f"Failed to send result for {key}: {e}")

    async def execute(self, key: str) -> ProfileRecord:
        """Run the fetch capability for one key."""
        func = self._fetch
        if asyncio.iscoroutinefunction(func):
            pending = func(key)
        else:
            # Run sync function in thread pool
            loop = asyncio.get_running_loop()
            pending = loop.run_in_executor(None, func, key)

        result = await asyncio.wait_for(pending, timeout=self.fetch_timeout)
        if result is None:
            raise FetchError(key, "fetch returned no snapshot")
        return to_record(key, result)

    def _cancel_inflight(self) -> None:
        for runner in list(self._inflight.values()):
            runner.cancel()
        self._inflight.clear()
