"""Asset analysis service — the producer side of the pipeline.

Learn: A request to analyze an asset is two writes in two stores:
1. Asset status → processing (database)
2. Job → waiting (Redis)

They cannot share a transaction, so the order matters. The status moves
first; if the enqueue then fails the previous status is put back and the
QueueUnavailableError reaches the caller, who sees a 503 instead of an
asset stuck in `processing` with no job behind it.
"""

import structlog

from vaultsync.domain.assets import (
    RETRYABLE_STATES,
    Asset,
    AssetStatus,
    ensure_transition,
)
from vaultsync.errors import (
    InvalidTransitionError,
    NotFoundError,
    OwnershipError,
    QueueUnavailableError,
    ValidationError,
)
from vaultsync.queue.redis_queue import JobQueue
from vaultsync.repositories.base import AssetRepository

logger = structlog.get_logger()


class AssetAnalysisService:

    def __init__(self, assets: AssetRepository, queue: JobQueue):
        self.assets = assets
        self.queue = queue

    async def request_analysis(self, asset_id: str, owner_id: str) -> str:
        """Start the first analysis of a draft asset. Returns the job id."""
        asset = await self._owned(asset_id, owner_id)
        return await self._submit(asset)

    async def retry_analysis(self, asset_id: str, owner_id: str) -> str:
        """Queue a fresh analysis for a failed or partial asset."""
        asset = await self._owned(asset_id, owner_id)
        if asset.status not in RETRYABLE_STATES:
            raise InvalidTransitionError(asset.status.value, AssetStatus.PROCESSING.value)
        return await self._submit(asset)

    async def _owned(self, asset_id: str, owner_id: str) -> Asset:
        asset = await self.assets.get(asset_id)
        if asset is None:
            raise NotFoundError(f"Asset {asset_id} not found")
        if asset.owner_id != owner_id:
            raise OwnershipError(f"Asset {asset_id} belongs to another owner")
        return asset

    async def _submit(self, asset: Asset) -> str:
        ensure_transition(asset.status, AssetStatus.PROCESSING)
        if not asset.image_url:
            raise ValidationError("Asset has no image to analyze")

        previous = asset.status
        await self.assets.set_status(asset.id, AssetStatus.PROCESSING)
        try:
            job_id = await self.queue.enqueue(
                asset.id, asset.owner_id, asset.image_url, asset.category
            )
        except (QueueUnavailableError, ValidationError):
            await self.assets.set_status(asset.id, previous)
            logger.warning(
                "assets.enqueue_rolled_back",
                asset_id=asset.id,
                restored_status=previous.value,
            )
            raise

        logger.info(
            "assets.analysis_requested",
            asset_id=asset.id,
            owner_id=asset.owner_id,
            job_id=job_id,
            previous_status=previous.value,
        )
        return job_id
