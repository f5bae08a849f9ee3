#!/usr/bin/env python3
"""
Standalone worker process.

Run as many of these as needed against the same database; each claims
jobs independently. SIGTERM / SIGINT stop polling and give in-flight jobs
``worker.shutdown_timeout_seconds`` to finish.

Usage:
    python scripts/run_worker.py
    python scripts/run_worker.py --concurrency 5 --config config/settings.yaml
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

import structlog

logger = structlog.get_logger()


async def run(config_path: str = None, concurrency: int = None) -> None:
    from channels.graph_api import GraphAPIClient
    from config.logging import configure_logging
    from config.settings import load_settings
    from database.session import Database
    from job_queue.processor import JobProcessor
    from job_queue.store import JobStore
    from job_queue.worker_pool import WorkerPool
    from rate_limit.limiter import RateLimiter, limits_from_settings

    settings = load_settings(config_path)
    if concurrency:
        settings.worker.concurrency = concurrency
        settings.validate()
    configure_logging(settings.logging)

    graph = GraphAPIClient(settings.graph_api)
    async with Database(settings.database.url, echo=settings.database.echo) as db:
        await db.create_all()
        store = JobStore(db, settings.queue)
        limiter = RateLimiter(db, defaults=limits_from_settings(settings.rate_limits))
        processor = JobProcessor(graph, limiter, settings.publish)
        pool = WorkerPool(store, processor, settings.worker)

        pool.install_signal_handlers()
        try:
            await pool.start()
            await pool.wait_stopped()
        finally:
            await graph.close()
    logger.info("worker_process_exit", worker_id=store.worker_id)


def main():
    parser = argparse.ArgumentParser(description="Job queue worker")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    parser.add_argument("--concurrency", type=int, default=None, help="Override worker.concurrency")
    args = parser.parse_args()

    asyncio.run(run(config_path=args.config, concurrency=args.concurrency))


if __name__ == "__main__":
    main()
