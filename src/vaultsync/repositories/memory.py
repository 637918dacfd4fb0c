"""In-memory asset repository used by tests and local runs."""

import copy
from typing import Any, Optional

from vaultsync.domain.assets import Asset, AssetStatus, utcnow
from vaultsync.errors import NotFoundError
from vaultsync.repositories.base import AssetRepository


class InMemoryAssetRepository(AssetRepository):
    """Dict-backed store. Hands out copies so callers can't mutate state."""

    def __init__(self, assets: Optional[list[Asset]] = None):
        self._assets: dict[str, Asset] = {}
        for asset in assets or []:
            self._assets[asset.id] = copy.deepcopy(asset)

    async def get(self, asset_id: str) -> Optional[Asset]:
        asset = self._assets.get(asset_id)
        return copy.deepcopy(asset) if asset else None

    async def add(self, asset: Asset) -> Asset:
        self._assets[asset.id] = copy.deepcopy(asset)
        return copy.deepcopy(asset)

    async def delete(self, asset_id: str) -> bool:
        return self._assets.pop(asset_id, None) is not None

    async def transfer(self, asset_id: str, new_owner_id: str) -> Asset:
        """Reassign an asset to another owner."""
        asset = self._require(asset_id)
        asset.owner_id = new_owner_id
        asset.updated_at = utcnow()
        return copy.deepcopy(asset)

    async def set_status(self, asset_id: str, status: AssetStatus) -> Asset:
        asset = self._require(asset_id)
        asset.status = AssetStatus(status)
        asset.updated_at = utcnow()
        return copy.deepcopy(asset)

    async def save_analysis(
        self,
        asset_id: str,
        status: AssetStatus,
        ai_metadata: dict[str, Any],
        processed_image_url: Optional[str],
    ) -> Asset:
        asset = self._require(asset_id)
        asset.status = AssetStatus(status)
        asset.ai_metadata = copy.deepcopy(ai_metadata)
        if processed_image_url:
            asset.processed_image_url = processed_image_url
        asset.error = None
        asset.updated_at = utcnow()
        return copy.deepcopy(asset)

    async def save_failure(self, asset_id: str, reason: str) -> Asset:
        asset = self._require(asset_id)
        asset.status = AssetStatus.FAILED
        asset.error = reason
        asset.ai_metadata = {
            **asset.ai_metadata,
            "error": reason,
            "failed_at": utcnow().isoformat(),
        }
        asset.updated_at = utcnow()
        return copy.deepcopy(asset)

    def _require(self, asset_id: str) -> Asset:
        asset = self._assets.get(asset_id)
        if asset is None:
            raise NotFoundError(f"Asset {asset_id} not found")
        return asset
