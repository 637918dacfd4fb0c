"""Analysis worker — turns one queued job into an analyzed asset.

Learn: process_job() is strictly sequential:

  load asset → (skip?) → call analysis service → persist → emit

1. The asset is always reloaded. The job payload says who owned it at
   enqueue time; it says nothing about what happened since.
2. Deleted asset, new owner, or already-settled asset → skip. Skips are
   benign races, not faults: the job completes and is never retried.
3. Analysis errors are NOT caught here. RetryableServiceError and
   UnrecoverableServiceError propagate to the pool, which hands them to the
   queue. There is no retry loop in this module.
4. handle_terminal_failure() is the single place an asset becomes
   `failed` — reached both from unrecoverable errors and exhausted retries.
"""

import time
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from vaultsync.domain.assets import AssetStatus, is_settled, utcnow
from vaultsync.queue.jobs import Job
from vaultsync.realtime.events import asset_processed_failure, asset_processed_success
from vaultsync.realtime.rooms import EventEmitter
from vaultsync.repositories.base import AssetRepository
from vaultsync.services.analysis_client import AnalysisClient

logger = structlog.get_logger()

PROCESSED = "processed"
SKIPPED = "skipped"

ASSET_NOT_FOUND = "asset_not_found"
OWNERSHIP_MISMATCH = "ownership_mismatch"
ALREADY_SETTLED = "already_settled"


@dataclass(frozen=True)
class JobOutcome:
    """Non-error result of a job: processed, or skipped with a reason."""

    kind: str
    asset_id: str
    reason: Optional[str] = None
    asset_status: Optional[str] = None
    duration: Optional[float] = None

    @property
    def skipped(self) -> bool:
        return self.kind == SKIPPED

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "asset_id": self.asset_id,
            "reason": self.reason,
            "asset_status": self.asset_status,
            "duration": self.duration,
        }


class AnalysisWorker:

    def __init__(
        self,
        assets: AssetRepository,
        analysis: AnalysisClient,
        emitter: EventEmitter,
    ):
        self.assets = assets
        self.analysis = analysis
        self.emitter = emitter

    async def process_job(self, job: Job) -> JobOutcome:
        log = logger.bind(
            job_id=job.id,
            asset_id=job.asset_id,
            owner_id=job.owner_id,
            attempt=job.attempts_made,
            max_attempts=job.max_attempts,
        )
        log.info("worker.job_started", category=job.category)

        asset = await self.assets.get(job.asset_id)
        if asset is None:
            log.warning("worker.job_skipped", reason=ASSET_NOT_FOUND)
            return JobOutcome(kind=SKIPPED, asset_id=job.asset_id, reason=ASSET_NOT_FOUND)

        if asset.owner_id != job.owner_id:
            log.warning(
                "worker.job_skipped",
                reason=OWNERSHIP_MISMATCH,
                actual_owner_id=asset.owner_id,
            )
            return JobOutcome(kind=SKIPPED, asset_id=job.asset_id, reason=OWNERSHIP_MISMATCH)

        if is_settled(asset.status):
            log.warning("worker.job_skipped", reason=ALREADY_SETTLED, status=asset.status.value)
            return JobOutcome(
                kind=SKIPPED,
                asset_id=job.asset_id,
                reason=ALREADY_SETTLED,
                asset_status=asset.status.value,
            )

        started = time.monotonic()
        result = await self.analysis.analyze(job.image_ref, job.category)

        status = AssetStatus.PARTIAL if result.partial else AssetStatus.ACTIVE
        fields = result.fields()
        await self.assets.save_analysis(
            asset.id,
            status,
            {**fields, "processed_at": utcnow().isoformat()},
            result.processed_image_url,
        )
        duration = round(time.monotonic() - started, 3)
        log.info(
            "worker.job_completed",
            status=status.value,
            duration=duration,
            brand=fields.get("brand", {}).get("value"),
            model=fields.get("model", {}).get("value"),
        )

        await self.emitter.emit_to_owner(
            job.owner_id,
            asset_processed_success(
                asset.id, status.value, fields, result.processed_image_url
            ),
        )
        return JobOutcome(
            kind=PROCESSED,
            asset_id=asset.id,
            asset_status=status.value,
            duration=duration,
        )

    async def handle_terminal_failure(self, job: Job, reason: str) -> bool:
        """Mark the asset failed and tell its owner. False if nothing changed."""
        log = logger.bind(job_id=job.id, asset_id=job.asset_id, owner_id=job.owner_id)

        asset = await self.assets.get(job.asset_id)
        if asset is None or asset.owner_id != job.owner_id:
            log.warning("worker.terminal_failure_skipped", reason="asset gone or reassigned")
            return False
        if asset.status in (AssetStatus.ACTIVE, AssetStatus.PARTIAL):
            log.warning("worker.terminal_failure_skipped", reason=ALREADY_SETTLED)
            return False

        await self.assets.save_failure(asset.id, reason)
        log.error("worker.job_failed_permanently", error=reason, attempts=job.attempts_made)

        await self.emitter.emit_to_owner(
            job.owner_id, asset_processed_failure(asset.id, reason)
        )
        return True
