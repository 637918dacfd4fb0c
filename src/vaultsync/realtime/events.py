"""Push event names and payload builders.

Learn: Centralizing event shapes here keeps the worker, the relay and the
client synchronizer agreeing on field names. Payloads use the camelCase
keys the web client already reads.
"""

from datetime import datetime, timezone
from typing import Any, Optional

ASSET_PROCESSED = "asset_processed"

# Frames sent on the socket itself, not routed through rooms
CONNECTED = "connected"
CONNECT_ERROR = "connect_error"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def asset_processed_success(
    asset_id: str,
    status: str,
    ai_metadata: Optional[dict[str, Any]] = None,
    processed_image_url: Optional[str] = None,
) -> dict[str, Any]:
    """Success event — status is "active" or "partial"."""
    if status not in ("active", "partial"):
        raise ValueError(f"Success event cannot carry status '{status}'")
    payload: dict[str, Any] = {
        "event": ASSET_PROCESSED,
        "assetId": str(asset_id),
        "status": status,
    }
    if ai_metadata:
        payload["aiMetadata"] = ai_metadata
    if processed_image_url:
        payload["processedImageUrl"] = processed_image_url
    payload["timestamp"] = _timestamp()
    return payload


def asset_processed_failure(asset_id: str, error: Optional[str]) -> dict[str, Any]:
    return {
        "event": ASSET_PROCESSED,
        "assetId": str(asset_id),
        "status": "failed",
        "error": error or "Processing failed",
        "timestamp": _timestamp(),
    }
