"""Durable analysis job queue.

Learn: Producers call JobQueue.enqueue(); the worker pool leases jobs with
reserve(), keeps the lease alive with heartbeat(), and acknowledges with
complete() or fail(). Backoff, attempt limits and stalled-job recovery all
live here, so workers never write their own retry loops.
"""

from vaultsync.queue.jobs import FailureDisposition, Job, JobOptions, Lease, Reclaim
from vaultsync.queue.redis_queue import JobQueue

__all__ = ["FailureDisposition", "Job", "JobOptions", "JobQueue", "Lease", "Reclaim"]
