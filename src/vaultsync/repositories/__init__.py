from vaultsync.repositories.base import AssetRepository
from vaultsync.repositories.memory import InMemoryAssetRepository
from vaultsync.repositories.sql import SqlAssetRepository

__all__ = ["AssetRepository", "InMemoryAssetRepository", "SqlAssetRepository"]
