"""Metadata ORM models.

This module defines the CacheEntryRecord and TierLocation models that
persist what is cached under which key, and where.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from buildcache.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheEntryRecord(Base):
    """ORM model for one cached artifact.

    Rows are append-only: a row for a key is inserted once and only
    deleted by clear or prune.

    Attributes:
        cache_key: Primary key, the derived cache key.
        image_name: Image name the artifact was built as.
        created_at: Timestamp when the entry was recorded.
        size_bytes: Artifact size in bytes.
        build_duration_ms: Build wall time in milliseconds.
        definition_path: Build-definition file of the originating inputs.
        context_path: Context directory of the originating inputs.
        build_args: Build-argument mapping of the originating inputs.
        target_stage: Target stage of the originating inputs.
        platform: Platform of the originating inputs.
    """

    __tablename__ = "cache_entries"

    cache_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    image_name: Mapped[str] = mapped_column(String(500), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    build_duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Provenance snapshot
    definition_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    context_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    build_args: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)
    target_stage: Mapped[str | None] = mapped_column(String(200), nullable=True)
    platform: Mapped[str | None] = mapped_column(String(100), nullable=True)

    locations: Mapped[list["TierLocation"]] = relationship(
        "TierLocation",
        back_populates="entry",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        """Return string representation of CacheEntryRecord."""
        return (
            f"<CacheEntryRecord(cache_key='{self.cache_key}', "
            f"image_name='{self.image_name}', size={self.size_bytes})>"
        )


class TierLocation(Base):
    """ORM model for where a cached artifact lives in one tier.

    Attributes:
        id: Primary key.
        cache_key: Foreign key to CacheEntryRecord.
        tier: Tier name (local, registry).
        locator: Blob path or registry tag.
        stored_at: When the tier store completed.
    """

    __tablename__ = "tier_locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cache_key: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("cache_entries.cache_key", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tier: Mapped[str] = mapped_column(String(20), nullable=False)
    locator: Mapped[str] = mapped_column(String(1000), nullable=False)
    stored_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    entry: Mapped["CacheEntryRecord"] = relationship(
        "CacheEntryRecord", back_populates="locations"
    )

    __table_args__ = (UniqueConstraint("cache_key", "tier", name="uq_location_tier"),)

    def __repr__(self) -> str:
        """Return string representation of TierLocation."""
        return f"<TierLocation(cache_key='{self.cache_key}', tier='{self.tier}')>"


__all__ = ["CacheEntryRecord", "TierLocation"]
