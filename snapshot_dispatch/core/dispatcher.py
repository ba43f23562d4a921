"""
Dispatcher for snapshot fetch tasks.

The dispatcher:
- Admits keys into a deduplicated queue
- Assigns queued keys to workers with spare capacity
- Persists successful results and requeues failures
- Reclaims in-flight keys when a worker disconnects
"""

from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set, Tuple
import asyncio
import logging

from .errors import PersistenceError, TransportError
from .records import ProfileRecord, TaskOutcome, validate_key
from .registry import Worker, WorkerConnection, WorkerRegistry
from .retry import RetryPolicy, UnboundedRetry
from .store import ProfileStore

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Central coordinator owning the task queue and the worker registry.

    A key is always in exactly one place: the queue, or the assigned set
    of one worker. Queue and registry mutations run under one lock;
    deliveries and store writes run outside it.

    Example:
        dispatcher = Dispatcher(store=InMemoryProfileStore(), max_tasks_per_worker=5)

        worker = await dispatcher.add_worker("minion1", connection)
        await dispatcher.enqueue("alice")

        # when the worker replies
        await dispatcher.on_worker_result(worker.worker_id, outcome)
    """

    def __init__(
        self,
        store: ProfileStore,
        max_tasks_per_worker: int = 5,
        registry: Optional[WorkerRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        if max_tasks_per_worker < 1:
            raise ValueError("max_tasks_per_worker must be at least 1")
        self.store = store
        self.max_tasks_per_worker = max_tasks_per_worker
        self.registry = registry if registry is not None else WorkerRegistry()
        self.retry_policy = retry_policy or UnboundedRetry()

        self._queue: Deque[str] = deque()
        self._queued: Set[str] = set()
        self._attempts: Dict[str, int] = {}
        self._watchers: Dict[str, List[asyncio.Future]] = {}
        self.dead_letters: List[str] = []
        self._lock = asyncio.Lock()

    # Admission

    async def enqueue(self, key: str) -> bool:
        """
        Queue a key unless it is already queued or assigned.

        Returns:
            True if the key was added to the queue
        """
        key = validate_key(key)
        async with self._lock:
            admitted = self._admit(key)
        if admitted:
            await self.assign_tasks()
        return admitted

    def _admit(self, key: str) -> bool:
        if key in self._queued:
            logger.debug(f"Task for {key} is already queued")
            return False
        owner = self.registry.owner_of(key)
        if owner is not None:
            logger.debug(f"Task for {key} is already assigned to {owner}")
            return False
        self._queue.append(key)
        self._queued.add(key)
        logger.info(f"Task enqueued: {key}")
        return True

    def _pop(self) -> str:
        key = self._queue.popleft()
        self._queued.discard(key)
        return key

    # Assignment

    async def assign_tasks(self) -> int:
        """
        Fill spare worker capacity from the head of the queue.

        Workers are visited in registration order. Returns the number of
        keys handed out.
        """
        async with self._lock:
            deliveries = self._plan_assignments()

        for worker, keys in deliveries:
            logger.info(f"Assigned {len(keys)} tasks to worker {worker.worker_id}")
            try:
                for key in keys:
                    await worker.connection.send_task(key)
            except TransportError as e:
                logger.warning(f"Delivery to worker {worker.worker_id} failed: {e}")
                await self.on_worker_disconnect(worker.worker_id)

        return sum(len(keys) for _, keys in deliveries)

    def _plan_assignments(self) -> List[Tuple[Worker, List[str]]]:
        deliveries = []
        for worker in self.registry.active_workers():
            if not self._queue:
                break
            spare = self.max_tasks_per_worker - worker.load
            if spare <= 0:
                continue
            keys = [self._pop() for _ in range(min(spare, len(self._queue)))]
            self.registry.assign(worker.worker_id, keys)
            deliveries.append((worker, keys))
        return deliveries

    # Worker events

    async def add_worker(self, identity: str, connection: WorkerConnection) -> Worker:
        """Register an authenticated connection and start assigning to it."""
        async with self._lock:
            worker = self.registry.register(identity, connection)
            self.registry.activate(worker.worker_id)
        await self.assign_tasks()
        return worker

    async def on_worker_result(self, worker_id: str, outcome: TaskOutcome) -> None:
        """
        Handle a worker's report for one key.

        Success is persisted and releases the slot. Failure releases the
        slot and requeues the key while the retry policy allows it.

        Raises:
            PersistenceError: if storing a successful result failed; the
                slot is released and the key is not retried
        """
        if outcome.ok:
            await self._handle_success(worker_id, outcome.record)
        else:
            await self._handle_failure(worker_id, outcome.key, outcome.error)

    async def _handle_success(self, worker_id: str, record: ProfileRecord) -> None:
        key = record.key
        try:
            stored = await self.store.upsert(record)
        except PersistenceError as e:
            logger.error(f"Failed to store result for {key} from {worker_id}: {e}")
            async with self._lock:
                self.registry.release(worker_id, key)
            await self.assign_tasks()
            raise

        async with self._lock:
            self.registry.release(worker_id, key)
            self._attempts.pop(key, None)
            watchers = self._watchers.pop(key, [])

        logger.info(f"Stored profile for {key} from worker {worker_id}")
        self._resolve(watchers, stored)
        await self.assign_tasks()

    async def _handle_failure(self, worker_id: str, key: str, error: str) -> None:
        logger.error(f"Error processing {key} on worker {worker_id}: {error}")
        watchers = []
        async with self._lock:
            self.registry.release(worker_id, key)
            attempts = self._attempts.get(key, 0) + 1
            self._attempts[key] = attempts
            if self.retry_policy.should_retry(key, attempts, error):
                self._admit(key)
            else:
                self._attempts.pop(key, None)
                self.dead_letters.append(key)
                watchers = self._watchers.pop(key, [])
        self._resolve(watchers, None)
        await self.assign_tasks()

    async def on_worker_disconnect(self, worker_id: str) -> None:
        """Requeue everything the worker held and drop it."""
        async with self._lock:
            worker = self.registry.remove(worker_id)
            if worker is not None:
                for key in worker.assigned_keys:
                    self._queue.append(key)
                    self._queued.add(key)
        if worker is None:
            return
        logger.info(
            f"Worker {worker_id} disconnected. Requeued {len(worker.assigned_keys)} tasks."
        )
        await self.assign_tasks()

    # Completion watchers

    def watch(self, key: str) -> asyncio.Future:
        """
        Future resolved with the stored record when key is next fetched.

        Resolved with None if the retry policy abandons the key.
        """
        future = asyncio.get_running_loop().create_future()
        self._watchers.setdefault(key, []).append(future)
        return future

    def unwatch(self, key: str, future: asyncio.Future) -> None:
        watchers = self._watchers.get(key)
        if not watchers:
            return
        if future in watchers:
            watchers.remove(future)
        if not watchers:
            del self._watchers[key]

    @staticmethod
    def _resolve(watchers: List[asyncio.Future], record: Optional[ProfileRecord]) -> None:
        for future in watchers:
            if not future.done():
                future.set_result(record)

    # Introspection

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def queued_keys(self) -> List[str]:
        return list(self._queue)

    def is_pending(self, key: str) -> bool:
        return key in self._queued or self.registry.owner_of(key) is not None

    def status(self) -> Dict[str, Any]:
        return {
            "queue_length": len(self._queue),
            "queued_keys": list(self._queue),
            "max_tasks_per_worker": self.max_tasks_per_worker,
            "workers": [w.to_dict() for w in self.registry.list_workers()],
            "dead_letters": list(self.dead_letters),
        }
