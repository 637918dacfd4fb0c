"""SQLAlchemy ORM models — the asset columns the analysis pipeline touches.

Learn: The full asset schema (condition, NFC tags, market data...) belongs
to the main application. This mapping declares only the subset the worker
reads and writes, so it stays compatible with the wider table.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Asset(Base):
    """An uploaded collectible awaiting or holding AI analysis.

    Statuses: draft → processing → active / partial / failed
    """

    __tablename__ = "assets"
    __table_args__ = (
        Index("idx_assets_owner", "owner_id"),
        Index("idx_assets_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="draft"
    )  # draft, processing, active, partial, failed
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    processed_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
