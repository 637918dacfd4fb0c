"""Client state synchronizer — applies push events to the local cache.

Learn: One `asset_processed` event does three things:
1. Merges status / processedImageUrl / error into the cached ("asset", id)
   entry. A success replaces aiMetadata outright, as the server does.
   Nothing cached → nothing to merge.
2. Marks every ("assets", ...) list stale so it is refetched on next use.
3. Raises one notification: success (active), error (failed), info (partial).

Applying an event is a merge, never an append, so the same event twice
leaves the cache exactly as one application did. A repeated event is also
not notified twice. Only the last event per asset is remembered for that,
for at most `max_tracked` assets.
"""

from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from vaultsync.client.cache import QueryCache

logger = structlog.get_logger()

SUCCESS = "success"
ERROR = "error"
INFO = "info"

_TEXT = {
    "en": {
        "active": "Asset analyzed successfully!",
        "partial": "Analysis partially complete. Some data may be missing.",
        "failed": "Analysis failed: {error}",
        "unknown_error": "Unknown error",
    },
    "vi": {
        "active": "Tài sản đã được phân tích thành công!",
        "partial": "Phân tích hoàn tất một phần. Một số dữ liệu có thể thiếu.",
        "failed": "Phân tích thất bại: {error}",
        "unknown_error": "Lỗi không xác định",
    },
}


class AssetProcessedEvent(BaseModel):
    """Wire shape of the `asset_processed` push event."""

    model_config = ConfigDict(populate_by_name=True)

    event: Literal["asset_processed"]
    asset_id: str = Field(alias="assetId", min_length=1)
    status: Literal["active", "partial", "failed"]
    ai_metadata: Optional[dict[str, Any]] = Field(default=None, alias="aiMetadata")
    processed_image_url: Optional[str] = Field(default=None, alias="processedImageUrl")
    error: Optional[str] = None
    timestamp: str


@dataclass(frozen=True)
class Notification:
    kind: str
    message: str
    asset_id: Optional[str] = None


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None: ...


@dataclass
class NotificationLog:
    """Notifier that keeps every notification, newest last."""

    items: list[Notification] = field(default_factory=list)

    def notify(self, notification: Notification) -> None:
        self.items.append(notification)


def merge_event(asset: dict[str, Any], event: AssetProcessedEvent) -> dict[str, Any]:
    """Return `asset` with the event applied. Does not mutate the input."""
    merged = dict(asset)
    merged["status"] = event.status
    if event.status != "failed":
        # A successful run replaces the stored metadata outright
        merged["aiMetadata"] = dict(event.ai_metadata or {})
    if event.processed_image_url:
        merged["processedImageUrl"] = event.processed_image_url
    if event.status == "failed":
        merged["error"] = event.error
    else:
        merged.pop("error", None)
    merged["updatedAt"] = event.timestamp
    return merged


class StateSynchronizer:

    def __init__(
        self,
        cache: QueryCache,
        notifier: Notifier,
        locale: str = "en",
        max_tracked: int = 1000,
    ):
        self.cache = cache
        self.notifier = notifier
        self.text = _TEXT.get(locale, _TEXT["en"])
        self.max_tracked = max_tracked
        self._last_seen: dict[str, tuple[str, str]] = {}

    def handle_event(self, payload: dict[str, Any]) -> bool:
        """Apply one push event. False if the payload was not a valid event."""
        try:
            event = AssetProcessedEvent.model_validate(payload)
        except PydanticValidationError as e:
            logger.warning("sync.event_rejected", errors=e.error_count())
            return False

        self.cache.update(("asset", event.asset_id), lambda cur: merge_event(cur, event))
        self.cache.invalidate(("assets",))

        fingerprint = (event.status, event.timestamp)
        if self._last_seen.get(event.asset_id) == fingerprint:
            logger.debug("sync.duplicate_event", asset_id=event.asset_id)
            return True
        self._remember(event.asset_id, fingerprint)
        self.notifier.notify(self._notification(event))
        return True

    def _remember(self, asset_id: str, fingerprint: tuple[str, str]) -> None:
        self._last_seen.pop(asset_id, None)
        self._last_seen[asset_id] = fingerprint
        while len(self._last_seen) > self.max_tracked:
            del self._last_seen[next(iter(self._last_seen))]

    def _notification(self, event: AssetProcessedEvent) -> Notification:
        if event.status == "active":
            return Notification(SUCCESS, self.text["active"], event.asset_id)
        if event.status == "partial":
            return Notification(INFO, self.text["partial"], event.asset_id)
        error = event.error or self.text["unknown_error"]
        return Notification(ERROR, self.text["failed"].format(error=error), event.asset_id)
