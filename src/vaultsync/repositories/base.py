"""Asset repository interface.

Learn: The worker and the producer service only ever talk to this
interface. Status rules live in domain.assets; repositories just store
what they are told, so the producer can also roll a status back when
enqueueing fails.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from vaultsync.domain.assets import Asset, AssetStatus


class AssetRepository(ABC):

    @abstractmethod
    async def get(self, asset_id: str) -> Optional[Asset]:
        """Load an asset fresh from storage. None if it does not exist."""

    @abstractmethod
    async def add(self, asset: Asset) -> Asset:
        ...

    @abstractmethod
    async def delete(self, asset_id: str) -> bool:
        ...

    @abstractmethod
    async def set_status(self, asset_id: str, status: AssetStatus) -> Asset:
        ...

    @abstractmethod
    async def save_analysis(
        self,
        asset_id: str,
        status: AssetStatus,
        ai_metadata: dict[str, Any],
        processed_image_url: Optional[str],
    ) -> Asset:
        """Persist a successful analysis and its terminal status."""

    @abstractmethod
    async def save_failure(self, asset_id: str, reason: str) -> Asset:
        """Mark the asset failed and record why."""
