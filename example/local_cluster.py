"""
Example: Dispatcher and Workers on One Machine

This example demonstrates:
- Running the dispatcher server with an in-memory store
- Two workers with a simulated fetch capability, one of them flaky
- Reading records through the freshness cache while tasks are retried

Run this example in one terminal:
    python local_cluster.py

Or split it across terminals:
1. Terminal 1 (Dispatcher): python local_cluster.py dispatcher
2. Terminal 2 (Worker 1):   python local_cluster.py worker minion1
3. Terminal 3 (Worker 2):   python local_cluster.py worker minion2
"""

import asyncio
import random
import sys
import logging

from snapshot_dispatch import DispatcherConfig
from snapshot_dispatch.core.registry import Credential
from snapshot_dispatch.distributed import DispatcherServer, FetchResult, WorkerClient

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SERVER_URL = "ws://localhost:4000"
WORKERS = [Credential("minion1", "secret1"), Credential("minion2", "secret2")]


# Fetch capability
async def fetch_profile(key: str) -> FetchResult:
    """Simulates scraping a profile page."""
    await asyncio.sleep(random.uniform(0.5, 1.5))
    if random.random() < 0.3:
        raise RuntimeError(f"Timed out loading profile page for {key}")
    return FetchResult(attributes={
        "display_name": key.capitalize(),
        "joined_date": "March 2012",
    })


def make_config() -> DispatcherConfig:
    return DispatcherConfig(port=4000, max_tasks_per_worker=2, workers=WORKERS, fetch_timeout=5.0)


async def run_dispatcher() -> None:
    server = DispatcherServer(make_config())
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


async def run_worker(identity: str) -> None:
    cred = next(c for c in WORKERS if c.identity == identity)
    client = WorkerClient(SERVER_URL, cred.identity, cred.secret, fetch=fetch_profile, reconnect_delay=2.0)
    await client.run_forever()


async def run_all() -> None:
    server = DispatcherServer(make_config())
    await server.start()

    clients = [
        WorkerClient(SERVER_URL, c.identity, c.secret, fetch=fetch_profile, reconnect_delay=2.0)
        for c in WORKERS
    ]
    for client in clients:
        await client.start()

    keys = ["alice", "bob", "carol", "dave", "erin", "frank"]
    entries = await server.cache.read(keys, timeout=10.0)
    for entry in entries:
        logger.info(f"{entry.key}: {entry.status.value} {entry.record.attributes if entry.record else ''}")

    logger.info(f"Dispatcher status: {server.dispatcher.status()}")

    for client in clients:
        await client.stop()
    await server.stop()


def main():
    if len(sys.argv) < 2:
        asyncio.run(run_all())
    elif sys.argv[1] == "dispatcher":
        asyncio.run(run_dispatcher())
    elif sys.argv[1] == "worker" and len(sys.argv) > 2:
        asyncio.run(run_worker(sys.argv[2]))
    else:
        print(__doc__)


if __name__ == "__main__":
    main()
