"""Photo mapping model."""

from __future__ import annotations

from sqlalchemy import Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from albumsync.models.base import Base


class PhotoMapping(Base):
    """One synced source item and the target artifact it was uploaded to."""

    __tablename__ = "photo_mappings"
    __table_args__ = (
        Index("ix_photo_mappings_content_hash", "content_hash"),
        Index("ix_photo_mappings_target_id", "target_id"),
    )

    source_id: Mapped[str] = mapped_column(Text, primary_key=True)
    content_hash: Mapped[str] = mapped_column(Text, nullable=False)
    target_id: Mapped[str] = mapped_column(Text, nullable=False)
    # ISO 8601 UTC; lexicographic order matches chronological order.
    synced_at: Mapped[str] = mapped_column(Text, nullable=False)
