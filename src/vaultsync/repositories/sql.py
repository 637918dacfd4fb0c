"""SQLAlchemy-backed asset repository.

Learn: Each call opens its own session from the factory and commits
before returning, the same way the background workers manage sessions
outside of FastAPI's request scope.
"""

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vaultsync.db.models import Asset as AssetRow
from vaultsync.domain.assets import Asset, AssetStatus, utcnow
from vaultsync.errors import NotFoundError
from vaultsync.repositories.base import AssetRepository


def _to_domain(row: AssetRow) -> Asset:
    return Asset(
        id=row.id,
        owner_id=row.owner_id,
        category=row.category,
        status=AssetStatus(row.status),
        image_url=row.image_url,
        ai_metadata=dict(row.ai_metadata or {}),
        processed_image_url=row.processed_image_url,
        error=row.error,
        updated_at=row.updated_at,
    )


class SqlAssetRepository(AssetRepository):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, asset_id: str) -> Optional[Asset]:
        async with self.session_factory() as db:
            row = await db.get(AssetRow, asset_id)
            return _to_domain(row) if row else None

    async def add(self, asset: Asset) -> Asset:
        async with self.session_factory() as db:
            row = AssetRow(
                id=asset.id,
                owner_id=asset.owner_id,
                category=asset.category,
                status=AssetStatus(asset.status).value,
                image_url=asset.image_url,
                ai_metadata=dict(asset.ai_metadata),
                processed_image_url=asset.processed_image_url,
                error=asset.error,
                updated_at=asset.updated_at,
            )
            db.add(row)
            await db.commit()
            return _to_domain(row)

    async def delete(self, asset_id: str) -> bool:
        async with self.session_factory() as db:
            row = await db.get(AssetRow, asset_id)
            if not row:
                return False
            await db.delete(row)
            await db.commit()
            return True

    async def set_status(self, asset_id: str, status: AssetStatus) -> Asset:
        async with self.session_factory() as db:
            row = await self._require(db, asset_id)
            row.status = AssetStatus(status).value
            row.updated_at = utcnow()
            await db.commit()
            return _to_domain(row)

    async def save_analysis(
        self,
        asset_id: str,
        status: AssetStatus,
        ai_metadata: dict[str, Any],
        processed_image_url: Optional[str],
    ) -> Asset:
        async with self.session_factory() as db:
            row = await self._require(db, asset_id)
            row.status = AssetStatus(status).value
            row.ai_metadata = dict(ai_metadata)
            if processed_image_url:
                row.processed_image_url = processed_image_url
            row.error = None
            row.updated_at = utcnow()
            await db.commit()
            return _to_domain(row)

    async def save_failure(self, asset_id: str, reason: str) -> Asset:
        async with self.session_factory() as db:
            row = await self._require(db, asset_id)
            row.status = AssetStatus.FAILED.value
            row.error = reason
            # Reassign rather than mutate so the JSON column is flagged dirty
            row.ai_metadata = {
                **(row.ai_metadata or {}),
                "error": reason,
                "failed_at": utcnow().isoformat(),
            }
            row.updated_at = utcnow()
            await db.commit()
            return _to_domain(row)

    @staticmethod
    async def _require(db: AsyncSession, asset_id: str) -> AssetRow:
        row = await db.get(AssetRow, asset_id)
        if row is None:
            raise NotFoundError(f"Asset {asset_id} not found")
        return row
