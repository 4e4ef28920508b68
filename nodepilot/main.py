from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

import uvicorn

from .config import Config, load_config
from .exceptions import ConfigurationError
from .fetcher import SubscriptionFetcher
from .health import create_app
from .host import JsonFileHost
from .orchestrator import CentralManager
from .parsers import load_nodes_file, parse_links
from .pool import NodePool
from .reporter import generate_report
from .utils import safe_write
from .utils.logging import setup_logging

logger = logging.getLogger(__name__)


async def refresh_subscriptions(manager: CentralManager) -> int:
    """Merge nodes from the configured subscription sources into the pool."""
    sources = manager.config.SUBSCRIPTION_SOURCES
    if not sources:
        return 0
    fetcher = SubscriptionFetcher(manager.fetcher, sources)
    fetched = parse_links(await fetcher.fetch_all())
    known = manager.pool.nodes()
    known_ids = {n.id for n in known}
    added = [n for n in fetched if n.id not in known_ids]
    manager.pool.replace(known + added)
    manager.node_manager.seed_quality(added, manager.config.INITIAL_QUALITY)
    logger.info(f"Subscriptions added {len(added)} new nodes ({len(manager.pool)} total).")
    return len(added)


async def run_once(manager: CentralManager) -> None:
    """Perform a single evaluation and reporting cycle."""
    logger.info("Starting evaluation cycle...")
    await manager.evaluate_all()
    if manager.current_node is None:
        manager.node_manager.switch_to_best(manager.pool.nodes())
    await safe_write(manager.config.OUTPUT_REPORT_PATH, generate_report(manager.snapshot()))
    logger.info("Evaluation cycle completed.")


async def run(config: Config) -> None:
    host = JsonFileHost(config.STORAGE_FILE)
    pool = NodePool(load_nodes_file(config.NODES_FILE))
    manager = CentralManager(config, pool=pool, host=host)

    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("Shutdown signal received, initiating graceful shutdown...")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass

    server: Optional[uvicorn.Server] = None
    server_task: Optional[asyncio.Task] = None
    try:
        await refresh_subscriptions(manager)
        await manager.initialize()

        uv_config = uvicorn.Config(
            create_app(manager), host="0.0.0.0", port=config.HEALTH_CHECK_PORT, log_level="warning"
        )
        server = uvicorn.Server(uv_config)
        server_task = asyncio.create_task(server.serve())

        while not shutdown_event.is_set():
            try:
                await run_once(manager)
            except Exception as e:
                logger.critical(f"An unhandled error occurred in the main loop: {e}", exc_info=True)

            if config.RUN_INTERVAL_MINUTES <= 0:
                break
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=config.RUN_INTERVAL_MINUTES * 60)
            except asyncio.TimeoutError:
                pass  # Next cycle
    finally:
        if server is not None:
            server.should_exit = True
        if server_task is not None:
            await server_task
        await manager.destroy()
        logger.info("Application has shut down gracefully.")


def main() -> None:
    """Synchronous entrypoint to start the application."""
    try:
        config = load_config()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.INFO)
        logger.critical(f"Configuration error: {e}")
        sys.exit(1)

    log_file = os.path.join("logs", "nodepilot.log") if os.path.isdir("logs") else None
    setup_logging(log_level=config.LOG_LEVEL, log_file=log_file, debug=config.DEBUG)
    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("User interrupted. Shutting down.")


if __name__ == "__main__":
    main()
