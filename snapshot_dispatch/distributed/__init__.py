# Networked components: Redis store, dispatcher server, workers

from .redis_backend import RedisProfileStore
from .protocol import TaskMessage, ResultMessage
from .server import DispatcherServer
from .worker_client import WorkerClient, FetchResult, ClientState
from .gateway_client import GatewayUpstream

__all__ = [
    "RedisProfileStore",
    "TaskMessage",
    "ResultMessage",
    "DispatcherServer",
    "WorkerClient",
    "FetchResult",
    "ClientState",
    "GatewayUpstream",
]
