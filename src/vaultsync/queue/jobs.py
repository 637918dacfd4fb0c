"""Job records and queue options.

Learn: A job carries everything a worker needs to start (asset id, owner
id, image reference, category) but nothing about the asset's state —
the worker reloads the asset itself when it picks the job up.
"""

from dataclasses import dataclass
from typing import Any, Optional

from vaultsync.config import Settings

# Job states
WAITING = "waiting"
ACTIVE = "active"
DELAYED = "delayed"
COMPLETED = "completed"
FAILED = "failed"

STALLED_LIMIT_REASON = "job stalled more than allowable limit"


@dataclass
class JobOptions:
    """Retry, lease and retention policy for one queue."""

    attempts: int = 3
    backoff_delay: float = 2.0  # seconds, doubled per attempt
    lease_seconds: float = 30.0
    max_stalled_count: int = 2
    completed_ttl: int = 24 * 3600
    failed_ttl: int = 7 * 24 * 3600

    @classmethod
    def from_settings(cls, s: Settings) -> "JobOptions":
        return cls(
            attempts=s.job_attempts,
            backoff_delay=s.backoff_delay_seconds,
            lease_seconds=s.lease_seconds,
            max_stalled_count=s.max_stalled_count,
            completed_ttl=s.completed_job_ttl_seconds,
            failed_ttl=s.failed_job_ttl_seconds,
        )

    def backoff_for(self, attempts_made: int) -> float:
        """Exponential backoff: delay, 2*delay, 4*delay, ..."""
        return self.backoff_delay * (2 ** max(attempts_made - 1, 0))


@dataclass
class Job:
    id: str
    asset_id: str
    owner_id: str
    image_ref: str
    category: str
    created_at: str
    attempts_made: int = 0
    max_attempts: int = 3
    stalled_count: int = 0
    state: str = WAITING
    failed_reason: Optional[str] = None

    @property
    def payload(self) -> dict[str, str]:
        return {
            "asset_id": self.asset_id,
            "owner_id": self.owner_id,
            "image_ref": self.image_ref,
            "category": self.category,
            "created_at": self.created_at,
        }

    def to_hash(self) -> dict[str, Any]:
        data = {
            "id": self.id,
            **self.payload,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "stalled_count": self.stalled_count,
            "state": self.state,
        }
        if self.failed_reason:
            data["failed_reason"] = self.failed_reason
        return data

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> "Job":
        return cls(
            id=data["id"],
            asset_id=data["asset_id"],
            owner_id=data["owner_id"],
            image_ref=data["image_ref"],
            category=data["category"],
            created_at=data["created_at"],
            attempts_made=int(data.get("attempts_made", 0)),
            max_attempts=int(data.get("max_attempts", 3)),
            stalled_count=int(data.get("stalled_count", 0)),
            state=data.get("state", WAITING),
            failed_reason=data.get("failed_reason") or None,
        )


@dataclass
class Lease:
    """Proof that one worker currently owns a job."""

    job: Job
    token: str
    worker_id: str
    deadline: float


@dataclass
class FailureDisposition:
    """What the queue did with a failed attempt."""

    job: Job
    terminal: bool
    reason: str
    error: Optional[Exception] = None
    retry_in: Optional[float] = None


@dataclass
class Reclaim:
    """A stalled job picked back up by the detector."""

    job: Job
    terminal: bool
    reason: str = ""
