"""Worker pool — bounded-parallel consumers plus a stalled-job detector.

Learn: `concurrency` consumer tasks each loop reserve → process → ack.
While a job runs, a heartbeat task renews its lease every half lease
period. If the process dies mid-job the heartbeats stop, the lease
expires, and the detector loop (every `stalled_interval`) hands the job
back to the queue — or fails it for good once it has stalled too often.

Idle waits (empty-queue polling, the detector's interval) end the moment
stop() is called. Only in-flight jobs hold shutdown up, for at most
`grace_period`.

The pool translates the worker's outcome into a queue acknowledgement:

    JobOutcome (processed / skipped) → complete()
    RetryableServiceError            → fail(retryable=True)   → backoff or exhausted
    UnrecoverableServiceError        → fail(retryable=False)  → terminal
    anything else                    → fail(retryable=False)  → terminal

Terminal dispositions run AnalysisWorker.handle_terminal_failure().

Usage:
    pool = WorkerPool(queue, worker, concurrency=5)
    task = asyncio.create_task(pool.run())
    ...
    await pool.stop()
"""

import asyncio
import os
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

import structlog
from redis.exceptions import RedisError

from vaultsync.errors import LeaseLostError, RetryableServiceError, UnrecoverableServiceError
from vaultsync.queue.jobs import FailureDisposition, Job, Lease, Reclaim
from vaultsync.queue.redis_queue import JobQueue
from vaultsync.workers.analysis import AnalysisWorker, JobOutcome

logger = structlog.get_logger()


@dataclass
class PoolStats:
    processed: int = 0
    skipped: int = 0
    retried: int = 0
    failed: int = 0
    reclaimed: int = 0
    in_flight: int = 0
    started_at: Optional[datetime] = None


class WorkerPool:

    def __init__(
        self,
        queue: JobQueue,
        worker: AnalysisWorker,
        concurrency: int = 5,
        poll_interval: float = 1.0,
        stalled_interval: float = 30.0,
        name: Optional[str] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.worker = worker
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.stalled_interval = stalled_interval
        self.name = name or f"{socket.gethostname()}-{os.getpid()}"
        self.stats = PoolStats()
        self._running = False
        self._stopped = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    # ─── Lifecycle ────────────────────────────────────────

    async def run(self) -> None:
        """Run consumers and the stalled detector until stop()."""
        self._running = True
        self._stopped.clear()
        self.stats.started_at = datetime.now(timezone.utc)
        logger.info(
            "worker_pool.started",
            name=self.name,
            concurrency=self.concurrency,
            queue=self.queue.name,
        )

        self._tasks = [
            asyncio.create_task(self._consume(f"{self.name}-{i}"))
            for i in range(self.concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._stalled_loop()))
        try:
            await asyncio.gather(*self._tasks)
        finally:
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
            logger.info("worker_pool.stopped", name=self.name, **self.get_stats())

    async def stop(self, grace_period: float = 30.0) -> None:
        """Stop taking new jobs; give in-flight jobs `grace_period` to finish."""
        self._running = False
        self._stopped.set()
        logger.info("worker_pool.stopping", in_flight=self.stats.in_flight)
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=grace_period)
        for task in pending:
            task.cancel()

    async def _consume(self, worker_id: str) -> None:
        while self._running:
            try:
                result = await self.process_next(worker_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("worker_pool.error", worker_id=worker_id)
                result = None
            if result is None and self._running:
                await self._pause(self.poll_interval)

    async def _stalled_loop(self) -> None:
        while self._running:
            if await self._pause(self.stalled_interval):
                break
            try:
                await self.reclaim_stalled()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("worker_pool.stalled_check_error")

    async def _pause(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True as soon as stop() is called."""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    # ─── One job ──────────────────────────────────────────

    async def process_next(
        self, worker_id: str
    ) -> Optional[Union[JobOutcome, FailureDisposition]]:
        """Reserve and run one job. None if the queue was empty."""
        lease = await self.queue.reserve(worker_id)
        if lease is None:
            return None

        self.stats.in_flight += 1
        heartbeat = asyncio.create_task(self._keep_alive(lease))
        failure: Optional[Exception] = None
        retryable = False
        try:
            outcome = await self.worker.process_job(lease.job)
        except RetryableServiceError as e:
            failure, retryable = e, True
        except UnrecoverableServiceError as e:
            failure = e
        except Exception as e:
            logger.exception("worker.job_crashed", job_id=lease.job.id)
            failure = e
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            self.stats.in_flight -= 1

        if failure is not None:
            return await self._fail(lease, failure, retryable)

        try:
            await self.queue.complete(lease, outcome.to_dict())
        except LeaseLostError:
            logger.warning("worker.lease_lost_on_complete", job_id=lease.job.id)
            return outcome

        if outcome.skipped:
            self.stats.skipped += 1
        else:
            self.stats.processed += 1
        return outcome

    async def _fail(
        self, lease: Lease, error: Exception, retryable: bool
    ) -> Optional[FailureDisposition]:
        logger.error(
            "worker.job_error",
            job_id=lease.job.id,
            asset_id=lease.job.asset_id,
            attempt=lease.job.attempts_made,
            error=str(error),
            retryable=retryable,
        )
        try:
            disposition = await self.queue.fail(lease, error, retryable)
        except LeaseLostError:
            logger.warning("worker.lease_lost_on_fail", job_id=lease.job.id)
            return None

        if disposition.terminal:
            self.stats.failed += 1
            await self._terminal(disposition.job, disposition.reason)
        else:
            self.stats.retried += 1
        return disposition

    async def _terminal(self, job: Job, reason: str) -> None:
        try:
            await self.worker.handle_terminal_failure(job, reason)
        except Exception:
            logger.exception("worker.terminal_update_failed", job_id=job.id, asset_id=job.asset_id)

    async def _keep_alive(self, lease: Lease) -> None:
        interval = max(self.queue.options.lease_seconds / 2, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.queue.heartbeat(lease):
                    logger.warning("worker.lease_lost", job_id=lease.job.id)
                    return
            except RedisError as e:
                logger.warning("worker.heartbeat_failed", job_id=lease.job.id, error=str(e))

    # ─── Stalled jobs ─────────────────────────────────────

    async def reclaim_stalled(self) -> list[Reclaim]:
        """Run the detector once; terminal reclaims fail their asset."""
        reclaims = await self.queue.reclaim_stalled()
        for reclaim in reclaims:
            self.stats.reclaimed += 1
            if reclaim.terminal:
                self.stats.failed += 1
                await self._terminal(reclaim.job, reclaim.reason)
        return reclaims

    def get_stats(self) -> dict:
        return {
            "processed": self.stats.processed,
            "skipped": self.stats.skipped,
            "retried": self.stats.retried,
            "failed": self.stats.failed,
            "reclaimed": self.stats.reclaimed,
            "in_flight": self.stats.in_flight,
            "concurrency": self.concurrency,
            "started_at": (
                self.stats.started_at.isoformat() if self.stats.started_at else None
            ),
        }
