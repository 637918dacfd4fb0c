"""Redis-backed durable job queue.

Learn: Layout under the queue name (default "ai-processing"):

    {name}:job:{id}   hash   — the job record (payload + bookkeeping)
    {name}:waiting    list   — ready to run; LPUSH in, LMOVE out from the right
    {name}:active     list   — handed to a worker
    {name}:leases     zset   — job id → lease deadline (unix seconds)
    {name}:delayed    zset   — job id → time it becomes ready again
    {name}:completed  zset   — finished ids, trimmed by age
    {name}:failed     zset   — terminally failed ids, trimmed by age

Visibility: LMOVE is atomic, so exactly one worker gets a given id out of
`waiting`. From then on every acknowledgement checks the lease token under
WATCH, so a worker whose lease was reclaimed can't clobber the new owner.

Requires a client created with decode_responses=True.
"""

import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError, WatchError

from vaultsync.errors import (
    LeaseLostError,
    QueueExhaustedError,
    QueueUnavailableError,
    ValidationError,
)
from vaultsync.queue.jobs import (
    ACTIVE,
    COMPLETED,
    DELAYED,
    FAILED,
    STALLED_LIMIT_REASON,
    WAITING,
    FailureDisposition,
    Job,
    JobOptions,
    Lease,
    Reclaim,
)

logger = structlog.get_logger()


class JobQueue:
    """Durable analysis job queue.

    Usage:
        queue = JobQueue(aioredis.from_url(url, decode_responses=True))
        job_id = await queue.enqueue(asset_id, owner_id, image_ref, category)
        lease = await queue.reserve("worker-1")
        await queue.complete(lease)
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        name: str = "ai-processing",
        options: Optional[JobOptions] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.name = name
        self.options = options or JobOptions()
        self.clock = clock

    # ─── Keys ─────────────────────────────────────────────

    def _key(self, suffix: str) -> str:
        return f"{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return f"{self.name}:job:{job_id}"

    # ─── Producer side ───────────────────────────────────

    async def enqueue(
        self,
        asset_id: str,
        owner_id: str,
        image_ref: str,
        category: str,
    ) -> str:
        """Persist a new job and make it visible to workers.

        Every call issues a fresh job id, so re-enqueueing the same asset
        (retry path) never touches earlier jobs. Raises QueueUnavailableError
        if Redis refuses the write; the MULTI/EXEC means nothing is left behind.
        """
        fields = {
            "asset_id": asset_id,
            "owner_id": owner_id,
            "image_ref": image_ref,
            "category": category,
        }
        for name, value in fields.items():
            if not value:
                raise ValidationError(f"Missing required field: {name}")

        job = Job(
            id=uuid.uuid4().hex,
            asset_id=str(asset_id),
            owner_id=str(owner_id),
            image_ref=image_ref,
            category=category,
            created_at=datetime.now(timezone.utc).isoformat(),
            max_attempts=self.options.attempts,
        )

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_key(job.id), mapping=job.to_hash())
                pipe.lpush(self._key("waiting"), job.id)
                await pipe.execute()
        except RedisError as e:
            logger.error("queue.enqueue_failed", asset_id=asset_id, error=str(e))
            raise QueueUnavailableError(f"Could not enqueue analysis job: {e}") from e

        logger.info(
            "queue.job_enqueued",
            job_id=job.id,
            asset_id=job.asset_id,
            owner_id=job.owner_id,
            category=category,
        )
        return job.id

    # ─── Worker side ─────────────────────────────────────

    async def reserve(self, worker_id: str) -> Optional[Lease]:
        """Take the next ready job and lease it to `worker_id`.

        Returns None when nothing is ready.
        """
        await self.promote_delayed()

        job_id = await self.redis.lmove(
            self._key("waiting"), self._key("active"), "RIGHT", "LEFT"
        )
        if job_id is None:
            return None

        job_key = self._job_key(job_id)
        token = f"{worker_id}:{uuid.uuid4().hex}"
        deadline = self.clock() + self.options.lease_seconds

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hincrby(job_key, "attempts_made", 1)
            pipe.hset(job_key, mapping={"state": ACTIVE, "lease_token": token})
            pipe.zadd(self._key("leases"), {job_id: deadline})
            pipe.hgetall(job_key)
            results = await pipe.execute()

        data = results[-1]
        if not data or "asset_id" not in data:
            # Record expired or was deleted underneath us; drop the orphan id
            logger.warning("queue.orphan_job_dropped", job_id=job_id)
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self._key("active"), 1, job_id)
                pipe.zrem(self._key("leases"), job_id)
                pipe.delete(job_key)
                await pipe.execute()
            return None

        job = Job.from_hash(data)
        logger.debug(
            "queue.job_reserved",
            job_id=job.id,
            worker_id=worker_id,
            attempt=job.attempts_made,
            max_attempts=job.max_attempts,
        )
        return Lease(job=job, token=token, worker_id=worker_id, deadline=deadline)

    async def heartbeat(self, lease: Lease) -> bool:
        """Extend the lease. False if it was already reclaimed."""
        deadline = self.clock() + self.options.lease_seconds

        def apply(pipe, data):
            pipe.zadd(self._key("leases"), {lease.job.id: deadline})

        try:
            await self._under_lease(lease, apply)
        except LeaseLostError:
            return False
        lease.deadline = deadline
        return True

    async def complete(self, lease: Lease, result: Optional[dict[str, Any]] = None) -> None:
        """Acknowledge success (including skip outcomes)."""
        now = self.clock()
        ttl = self.options.completed_ttl

        def apply(pipe, data):
            job_key = self._job_key(lease.job.id)
            self._release(pipe, lease.job.id)
            pipe.hset(
                job_key,
                mapping={
                    "state": COMPLETED,
                    "finished_at": now,
                    "result": json.dumps(result or {}, default=str),
                },
            )
            pipe.expire(job_key, ttl)
            pipe.zadd(self._key("completed"), {lease.job.id: now})
            pipe.zremrangebyscore(self._key("completed"), "-inf", now - ttl)

        await self._under_lease(lease, apply)
        lease.job.state = COMPLETED

    async def fail(
        self,
        lease: Lease,
        error: Exception,
        retryable: bool,
    ) -> FailureDisposition:
        """Acknowledge a failed attempt.

        Retryable errors with attempts left go to `delayed` with exponential
        backoff. Anything else — unrecoverable, or out of attempts — is
        terminal. The caller runs its terminal-failure handling when
        `disposition.terminal` is True.
        """
        now = self.clock()
        reason = str(error) or error.__class__.__name__
        outcome: dict[str, Any] = {}

        def apply(pipe, data):
            job_key = self._job_key(lease.job.id)
            attempts_made = int(data.get("attempts_made", 0))
            max_attempts = int(data.get("max_attempts", self.options.attempts))
            self._release(pipe, lease.job.id)

            if retryable and attempts_made < max_attempts:
                delay = self.options.backoff_for(attempts_made)
                pipe.hset(job_key, mapping={"state": DELAYED, "failed_reason": reason})
                pipe.zadd(self._key("delayed"), {lease.job.id: now + delay})
                outcome.update(terminal=False, retry_in=delay)
            else:
                self._mark_failed(pipe, lease.job.id, reason, now)
                outcome.update(terminal=True, retry_in=None)
            outcome["attempts_made"] = attempts_made

        await self._under_lease(lease, apply)

        job = lease.job
        job.failed_reason = reason
        job.attempts_made = outcome["attempts_made"]
        if not outcome["terminal"]:
            job.state = DELAYED
            logger.warning(
                "queue.job_retry_scheduled",
                job_id=job.id,
                attempt=job.attempts_made,
                retry_in=outcome["retry_in"],
                error=reason,
            )
            return FailureDisposition(
                job=job, terminal=False, reason=reason, error=error,
                retry_in=outcome["retry_in"],
            )

        job.state = FAILED
        terminal_error: Exception = error
        if retryable:
            terminal_error = QueueExhaustedError(
                f"{reason} (gave up after {job.attempts_made} attempts)"
            )
        logger.error(
            "queue.job_failed",
            job_id=job.id,
            attempts=job.attempts_made,
            error=reason,
            exhausted=retryable,
        )
        return FailureDisposition(job=job, terminal=True, reason=reason, error=terminal_error)

    # ─── Delayed + stalled handling ──────────────────────

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose backoff has elapsed back to `waiting`."""
        now = self.clock()
        due = await self.redis.zrangebyscore(self._key("delayed"), "-inf", now)
        promoted = 0
        for job_id in due:
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(self._key("delayed"))
                    if await pipe.zscore(self._key("delayed"), job_id) is None:
                        await pipe.unwatch()
                        continue
                    pipe.multi()
                    pipe.zrem(self._key("delayed"), job_id)
                    pipe.hset(self._job_key(job_id), "state", WAITING)
                    pipe.lpush(self._key("waiting"), job_id)
                    await pipe.execute()
                    promoted += 1
                except WatchError:
                    continue
        return promoted

    async def reclaim_stalled(self) -> list[Reclaim]:
        """Recover jobs whose worker stopped heartbeating.

        A reclaimed job goes back to the front of `waiting` and its stalled
        attempt is not counted. Past `max_stalled_count` reclaims it fails
        terminally instead, so a poison job can't cycle forever.
        """
        now = self.clock()
        leases_key = self._key("leases")

        # Ids moved to `active` whose lease was never stamped (worker died
        # between LMOVE and the lease write) get a grace lease first.
        active_ids = await self.redis.lrange(self._key("active"), 0, -1)
        for job_id in active_ids:
            await self._stamp_grace_lease(job_id, now + self.options.lease_seconds)

        expired = await self.redis.zrangebyscore(leases_key, "-inf", now)
        reclaimed: list[Reclaim] = []

        for job_id in expired:
            job_key = self._job_key(job_id)
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(leases_key, job_key, self._key("active"))
                    score = await pipe.zscore(leases_key, job_id)
                    if score is None or score > now:
                        await pipe.unwatch()
                        continue
                    data = await pipe.hgetall(job_key)
                    in_active = await pipe.lpos(self._key("active"), job_id) is not None
                    pipe.multi()
                    if not data or "asset_id" not in data:
                        self._release(pipe, job_id)
                        await pipe.execute()
                        continue
                    if not in_active or data.get("state") in (COMPLETED, FAILED, DELAYED):
                        # Leftover lease for a job that already left `active`
                        pipe.zrem(leases_key, job_id)
                        await pipe.execute()
                        logger.debug(
                            "queue.stale_lease_dropped", job_id=job_id, state=data.get("state")
                        )
                        continue

                    job = Job.from_hash(data)
                    job.stalled_count += 1
                    self._release(pipe, job_id)
                    pipe.hset(job_key, "stalled_count", job.stalled_count)

                    if job.stalled_count > self.options.max_stalled_count:
                        self._mark_failed(pipe, job_id, STALLED_LIMIT_REASON, now)
                        await pipe.execute()
                        job.state = FAILED
                        job.failed_reason = STALLED_LIMIT_REASON
                        reclaimed.append(
                            Reclaim(job=job, terminal=True, reason=STALLED_LIMIT_REASON)
                        )
                        logger.error(
                            "queue.job_stalled_limit",
                            job_id=job_id,
                            stalled_count=job.stalled_count,
                        )
                        continue

                    # Only a stamped reservation counted an attempt
                    counted = data.get("state") == ACTIVE and job.attempts_made > 0
                    if counted:
                        pipe.hincrby(job_key, "attempts_made", -1)
                        job.attempts_made -= 1
                    pipe.hset(job_key, "state", WAITING)
                    pipe.rpush(self._key("waiting"), job_id)
                    await pipe.execute()
                    job.state = WAITING
                    reclaimed.append(Reclaim(job=job, terminal=False, reason="stalled"))
                    logger.warning(
                        "queue.job_stalled",
                        job_id=job_id,
                        stalled_count=job.stalled_count,
                    )
                except WatchError:
                    continue

        return reclaimed

    async def _stamp_grace_lease(self, job_id: str, deadline: float) -> bool:
        """Give an unleased id still sitting in `active` a lease to expire."""
        leases_key = self._key("leases")
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(self._key("active"), leases_key)
                if await pipe.zscore(leases_key, job_id) is not None:
                    await pipe.unwatch()
                    return False
                if await pipe.lpos(self._key("active"), job_id) is None:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.zadd(leases_key, {job_id: deadline}, nx=True)
                await pipe.execute()
                return True
            except WatchError:
                # `active` moved under us; the next detector pass looks again
                return False

    # ─── Introspection ───────────────────────────────────

    async def get_job(self, job_id: str) -> Optional[Job]:
        data = await self.redis.hgetall(self._job_key(job_id))
        if not data or "asset_id" not in data:
            return None
        return Job.from_hash(data)

    async def metrics(self) -> dict[str, int]:
        """Job counts by state, for monitoring."""
        now = self.clock()
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zremrangebyscore(
                self._key("completed"), "-inf", now - self.options.completed_ttl
            )
            pipe.zremrangebyscore(
                self._key("failed"), "-inf", now - self.options.failed_ttl
            )
            pipe.llen(self._key("waiting"))
            pipe.llen(self._key("active"))
            pipe.zcard(self._key("delayed"))
            pipe.zcard(self._key("completed"))
            pipe.zcard(self._key("failed"))
            results = await pipe.execute()
        waiting, active, delayed, completed, failed = results[2:]
        return {
            "waiting": waiting,
            "active": active,
            "delayed": delayed,
            "completed": completed,
            "failed": failed,
        }

    async def close(self) -> None:
        await self.redis.aclose()

    # ─── Internals ───────────────────────────────────────

    async def _under_lease(self, lease: Lease, apply: Callable) -> None:
        """Run `apply(pipe, job_data)` atomically iff the lease is still ours."""
        job_key = self._job_key(lease.job.id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(job_key)
                    data = await pipe.hgetall(job_key)
                    if data.get("lease_token") != lease.token:
                        await pipe.unwatch()
                        raise LeaseLostError(
                            f"Lease on job {lease.job.id} is no longer held by {lease.worker_id}"
                        )
                    pipe.multi()
                    apply(pipe, data)
                    await pipe.execute()
                    return
                except WatchError:
                    continue

    def _release(self, pipe, job_id: str) -> None:
        pipe.lrem(self._key("active"), 1, job_id)
        pipe.zrem(self._key("leases"), job_id)
        pipe.hdel(self._job_key(job_id), "lease_token")

    def _mark_failed(self, pipe, job_id: str, reason: str, now: float) -> None:
        job_key = self._job_key(job_id)
        ttl = self.options.failed_ttl
        pipe.hset(
            job_key,
            mapping={"state": FAILED, "failed_reason": reason, "finished_at": now},
        )
        pipe.expire(job_key, ttl)
        pipe.zadd(self._key("failed"), {job_id: now})
        pipe.zremrangebyscore(self._key("failed"), "-inf", now - ttl)
