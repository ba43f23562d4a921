"""
HTTP upstream for a FreshnessCache that lives away from the dispatcher.

A remote cache keeps its own store and asks the dispatcher's gateway for
records it cannot serve, polling until they are fresh or the wait runs out.
"""

from typing import Dict, List, Optional
import asyncio
import logging

import aiohttp

from ..core.errors import TransportError
from ..core.freshness import Upstream
from ..core.records import ProfileRecord

logger = logging.getLogger(__name__)


class GatewayUpstream(Upstream):
    """
    Fetch records through the dispatcher's HTTP gateway.

    Example:
        upstream = GatewayUpstream("http://dispatcher:4000", identity="proxy", secret="pw")
        cache = FreshnessCache(InMemoryProfileStore(), upstream, fetch_timeout=10.0)
        entries = await cache.read(["alice"])
        await upstream.close()
    """

    def __init__(
        self,
        server_url: str,
        identity: Optional[str] = None,
        secret: Optional[str] = None,
        poll_interval: float = 0.5,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.auth = aiohttp.BasicAuth(identity, secret or "") if identity else None
        self.poll_interval = poll_interval
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    async def submit(self, key: str) -> bool:
        """POST /task; returns whether the dispatcher queued the key."""
        session = self._get_session()
        try:
            async with session.post(
                f"{self.server_url}/task", json={"key": key}, auth=self.auth
            ) as response:
                response.raise_for_status()
                data = await response.json()
        except aiohttp.ClientError as e:
            raise TransportError(f"Failed to submit {key}: {e}") from e
        return bool(data.get("queued"))

    async def get_record(self, key: str) -> Optional[ProfileRecord]:
        """GET /record/{key}; None while the dispatcher reports it pending."""
        session = self._get_session()
        try:
            async with session.get(f"{self.server_url}/record/{key}", auth=self.auth) as response:
                response.raise_for_status()
                data = await response.json()
        except aiohttp.ClientError as e:
            raise TransportError(f"Failed to fetch record {key}: {e}") from e
        if data.get("pending") or data.get("last_updated") is None:
            return None
        return ProfileRecord.from_dict(data)

    async def fetch(self, keys: List[str], timeout: float) -> Dict[str, Optional[ProfileRecord]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        results: Dict[str, Optional[ProfileRecord]] = {key: None for key in keys}
        pending = list(keys)

        while pending:
            records = await asyncio.gather(*(self.get_record(key) for key in pending))
            for key, record in zip(pending, records):
                results[key] = record
            pending = [key for key in pending if results[key] is None]
            if not pending or loop.time() + self.poll_interval > deadline:
                break
            await asyncio.sleep(self.poll_interval)

        if pending:
            logger.info(f"Profiles still pending upstream: {pending}")
        return results
