"""
Command line entry point.

    python -m snapshot_dispatch dispatcher --config server.config.json
    python -m snapshot_dispatch worker --config worker.config.json
"""

import argparse
import asyncio
import importlib
import logging
import sys
from typing import Callable, List, Optional

from snapshot_dispatch.core.config import DispatcherConfig, WorkerConfig
from snapshot_dispatch.core.errors import ConfigurationError

logger = logging.getLogger("snapshot_dispatch")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def load_fetcher(path: Optional[str]) -> Callable:
    """Import a fetch capability given as "package.module:callable"."""
    if not path or ":" not in path:
        raise ConfigurationError(f"fetcher must look like 'module:callable', got {path!r}")
    module_name, attr = path.split(":", 1)
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load fetcher {path!r}: {e}") from e


async def run_dispatcher(config: DispatcherConfig) -> None:
    from snapshot_dispatch.distributed.server import DispatcherServer

    server = DispatcherServer(config)
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


async def run_worker(config: WorkerConfig) -> None:
    from snapshot_dispatch.distributed.worker_client import WorkerClient

    client = WorkerClient(
        config.server_url,
        identity=config.identity,
        secret=config.secret,
        fetch=load_fetcher(config.fetcher),
        reconnect_delay=config.reconnect_delay,
        fetch_timeout=config.fetch_timeout,
    )
    try:
        await client.run_forever()
    finally:
        await client.stop()
    if client.auth_failed:
        raise SystemExit(2)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="snapshot_dispatch",
        description="Profile snapshot dispatcher and workers",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    dispatcher = sub.add_parser("dispatcher", help="Run the dispatcher server")
    dispatcher.add_argument("--config", help="Path to dispatcher JSON config")

    worker = sub.add_parser("worker", help="Run a fetch worker")
    worker.add_argument("--config", required=True, help="Path to worker JSON config")
    worker.add_argument("--fetcher", help="Override the fetch capability (module:callable)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        if args.command == "dispatcher":
            config = DispatcherConfig.load(args.config)
            setup_logging(config.log_level)
            asyncio.run(run_dispatcher(config))
        else:
            config = WorkerConfig.load(args.config)
            if args.fetcher:
                config.fetcher = args.fetcher
            setup_logging(config.log_level)
            asyncio.run(run_worker(config))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
