"""Asset lifecycle rules.

Learn: Status only moves forward along the pipeline:

    draft → processing → active | partial | failed

The single backward edge is an explicit retry, which re-enters
`processing` from `failed` or `partial`.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from vaultsync.errors import InvalidTransitionError


class AssetStatus(str, enum.Enum):
    DRAFT = "draft"
    PROCESSING = "processing"
    ACTIVE = "active"
    PARTIAL = "partial"
    FAILED = "failed"


SETTLED_STATES = frozenset({AssetStatus.ACTIVE, AssetStatus.PARTIAL, AssetStatus.FAILED})
RETRYABLE_STATES = frozenset({AssetStatus.FAILED, AssetStatus.PARTIAL})

_ALLOWED_TRANSITIONS: dict[AssetStatus, frozenset[AssetStatus]] = {
    AssetStatus.DRAFT: frozenset({AssetStatus.PROCESSING}),
    AssetStatus.PROCESSING: frozenset(
        {AssetStatus.ACTIVE, AssetStatus.PARTIAL, AssetStatus.FAILED}
    ),
    AssetStatus.ACTIVE: frozenset(),
    AssetStatus.PARTIAL: frozenset({AssetStatus.PROCESSING}),
    AssetStatus.FAILED: frozenset({AssetStatus.PROCESSING}),
}


def is_settled(status: AssetStatus | str) -> bool:
    return AssetStatus(status) in SETTLED_STATES


def ensure_transition(old: AssetStatus | str, new: AssetStatus | str) -> None:
    """Raise InvalidTransitionError unless old → new is allowed."""
    old, new = AssetStatus(old), AssetStatus(new)
    if new not in _ALLOWED_TRANSITIONS[old]:
        raise InvalidTransitionError(old.value, new.value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Asset:
    """The slice of an asset the analysis pipeline reads and writes."""

    id: str
    owner_id: str
    category: str
    status: AssetStatus = AssetStatus.DRAFT
    image_url: Optional[str] = None
    ai_metadata: dict[str, Any] = field(default_factory=dict)
    processed_image_url: Optional[str] = None
    error: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)
