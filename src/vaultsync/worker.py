"""Worker entry point — run as a separate process.

Learn: Analysis workers run in their own process, separate from the API
server. If a worker crashes mid-job the API keeps serving, and the job's
lease simply expires until another worker's stalled detector reclaims it.

Events are published to Redis (RedisEventPublisher) because the sockets
they are meant for live in the API processes.

Usage:
    python -m vaultsync.worker

Or via the CLI:
    vaultsync-worker
    vaultsync worker --concurrency 10
"""

import asyncio
import signal
from typing import Optional

import redis.asyncio as aioredis
import structlog

from vaultsync.config import Settings, settings as default_settings
from vaultsync.db.engine import build_engine, build_session_factory
from vaultsync.logging_setup import configure_logging
from vaultsync.queue.jobs import JobOptions
from vaultsync.queue.redis_queue import JobQueue
from vaultsync.realtime.pubsub import RedisEventPublisher
from vaultsync.repositories.sql import SqlAssetRepository
from vaultsync.services.analysis_client import AnalysisClient
from vaultsync.workers.analysis import AnalysisWorker
from vaultsync.workers.pool import WorkerPool

logger = structlog.get_logger()


async def run(settings: Optional[Settings] = None, concurrency: Optional[int] = None):
    """Run the worker pool until SIGINT/SIGTERM."""
    cfg = settings or default_settings

    redis = aioredis.from_url(cfg.redis_url, encoding="utf-8", decode_responses=True)
    engine = build_engine(cfg.database_url)
    queue = JobQueue(redis, cfg.queue_name, JobOptions.from_settings(cfg))
    analysis = AnalysisClient(
        cfg.analysis_service_url, timeout=cfg.analysis_timeout_seconds
    )
    worker = AnalysisWorker(
        SqlAssetRepository(build_session_factory(engine)),
        analysis,
        RedisEventPublisher(redis, cfg.event_channel_prefix),
    )
    pool = WorkerPool(
        queue,
        worker,
        concurrency=concurrency or cfg.worker_concurrency,
        poll_interval=cfg.poll_interval_seconds,
        stalled_interval=cfg.stalled_interval_seconds,
    )

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    stopping: list[asyncio.Task] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(
            sig, lambda: stopping.append(asyncio.create_task(pool.stop()))
        )

    logger.info(
        "worker.starting",
        queue=cfg.queue_name,
        concurrency=pool.concurrency,
        analysis_service=cfg.analysis_service_url,
    )

    try:
        await pool.run()
    except asyncio.CancelledError:
        pass
    finally:
        await analysis.close()
        await queue.close()
        await engine.dispose()
        logger.info("worker.stopped", **pool.get_stats())


def main():
    """CLI entry point."""
    configure_logging(default_settings.log_level, default_settings.log_json)
    asyncio.run(run())


if __name__ == "__main__":
    main()
