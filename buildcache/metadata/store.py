"""Metadata store for cached artifacts.

This module handles:
- Durable mapping from cache key to CacheEntry (SQLite via SQLAlchemy)
- Per-tier location records used by clear and prune
- Recovery from an unreadable store by quarantining it

Each mutation runs in its own transaction, so a crash never leaves a
half-written store behind.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DatabaseError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from buildcache.db import create_all_tables, get_engine, get_session, get_session_factory
from buildcache.errors import CacheConflictError, MetadataCorrupt, MetadataStoreError
from buildcache.metadata.models import CacheEntryRecord, TierLocation
from buildcache.types import CacheEntry, StoreOutcome, TierName, TierRecord

if TYPE_CHECKING:
    from buildcache.config import Settings

logger = logging.getLogger(__name__)


def _sqlite_path(db_url: str) -> Path | None:
    """Return the database file for a file-backed SQLite URL."""
    url = make_url(db_url)
    if url.get_backend_name() != "sqlite":
        return None
    if not url.database or url.database == ":memory:":
        return None
    return Path(url.database)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on read
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_entry(record: CacheEntryRecord) -> CacheEntry:
    return CacheEntry(
        cache_key=record.cache_key,
        image_name=record.image_name,
        created_at=_as_utc(record.created_at),
        size_bytes=record.size_bytes,
        build_duration_ms=record.build_duration_ms,
        inputs={
            "definition_path": record.definition_path,
            "context_path": record.context_path,
            "build_args": dict(record.build_args or {}),
            "target": record.target_stage,
            "platform": record.platform,
        },
    )


class MetadataStore:
    """Durable mapping from cache key to CacheEntry.

    The store is the only state shared between concurrent cache requests;
    writes are serialized with a lock.

    Attributes:
        db_url: Database URL the store is bound to.
        recovered_from: Quarantined file if the store was found corrupt on open.
    """

    def __init__(self, db_url: str) -> None:
        self.db_url = db_url
        self.recovered_from: Path | None = None
        self._lock = threading.RLock()
        self._open()

    @classmethod
    def from_settings(cls, settings: Settings) -> MetadataStore:
        """Open the store configured by settings."""
        return cls(settings.metadata_url)

    def _open(self) -> None:
        path = _sqlite_path(self.db_url)
        if path is not None:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise MetadataStoreError(
                    f"Cannot create metadata directory {path.parent}: {e}"
                ) from e

        self._engine = get_engine(self.db_url)
        try:
            self._initialize()
        except OperationalError as e:
            self._engine.dispose()
            raise MetadataStoreError(f"Cannot open metadata store: {e}") from e
        except DatabaseError as e:
            self._engine.dispose()
            if path is None:
                raise MetadataCorrupt(f"Metadata store is unreadable: {e}") from e
            self.recovered_from = self._quarantine(path)
            logger.warning(
                "Metadata store %s is corrupt (%s); moved to %s and starting empty",
                path,
                e.orig if e.orig is not None else e,
                self.recovered_from,
            )
            self._engine = get_engine(self.db_url)
            self._initialize()

        self._session_factory = get_session_factory(self._engine)

    def _initialize(self) -> None:
        create_all_tables(self._engine)
        with self._engine.connect() as conn:
            conn.execute(text("SELECT count(*) FROM cache_entries"))

    @staticmethod
    def _quarantine(path: Path) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        target = path.with_name(f"{path.name}.corrupt-{stamp}")
        try:
            path.replace(target)
        except OSError as e:
            raise MetadataCorrupt(
                f"Metadata store {path} is corrupt and could not be moved aside: {e}"
            ) from e
        return target

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Transactional session that maps database errors to MetadataStoreError."""
        with self._lock:
            try:
                with get_session(self._session_factory) as session:
                    yield session
            except IntegrityError:
                raise
            except SQLAlchemyError as e:
                raise MetadataStoreError(f"Metadata store operation failed: {e}") from e

    def close(self) -> None:
        """Release database connections."""
        self._engine.dispose()

    # Mapping interface

    def get(self, key: str) -> CacheEntry | None:
        """Look up the entry for a key."""
        with self._session() as session:
            record = session.get(CacheEntryRecord, key)
            return _to_entry(record) if record is not None else None

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def put(
        self,
        key: str,
        entry: CacheEntry,
        locations: Iterable[StoreOutcome] = (),
    ) -> None:
        """Record a new entry together with the tier locations it was stored to.

        Args:
            key: Cache key.
            entry: Entry to record.
            locations: Successful tier stores for the key.

        Raises:
            CacheConflictError: If an entry already exists for the key.
            MetadataStoreError: If the write fails.
        """
        inputs: dict[str, Any] = entry.inputs
        try:
            with self._session() as session:
                if session.get(CacheEntryRecord, key) is not None:
                    raise CacheConflictError(key)
                record = CacheEntryRecord(
                    cache_key=key,
                    image_name=entry.image_name,
                    created_at=entry.created_at,
                    size_bytes=entry.size_bytes,
                    build_duration_ms=entry.build_duration_ms,
                    definition_path=inputs.get("definition_path"),
                    context_path=inputs.get("context_path"),
                    build_args=dict(inputs.get("build_args") or {}),
                    target_stage=inputs.get("target"),
                    platform=inputs.get("platform"),
                )
                session.add(record)
                for outcome in locations:
                    session.add(
                        TierLocation(
                            cache_key=key,
                            tier=outcome.tier.value,
                            locator=outcome.locator,
                        )
                    )
        except IntegrityError as e:
            raise CacheConflictError(key) from e
        logger.debug("Recorded metadata for key %s", key)

    def all(self) -> dict[str, CacheEntry]:
        """Return every entry, oldest first."""
        with self._session() as session:
            stmt = select(CacheEntryRecord).order_by(
                CacheEntryRecord.created_at, CacheEntryRecord.cache_key
            )
            return {r.cache_key: _to_entry(r) for r in session.execute(stmt).scalars()}

    def delete(self, key: str) -> bool:
        """Delete one entry and its locations.

        Returns:
            True if an entry was deleted.
        """
        with self._session() as session:
            session.execute(delete(TierLocation).where(TierLocation.cache_key == key))
            result = session.execute(
                delete(CacheEntryRecord).where(CacheEntryRecord.cache_key == key)
            )
            return bool(result.rowcount)

    def clear(self) -> int:
        """Delete every entry.

        Returns:
            Number of entries removed.
        """
        with self._session() as session:
            count = session.execute(
                select(func.count()).select_from(CacheEntryRecord)
            ).scalar_one()
            session.execute(delete(TierLocation))
            session.execute(delete(CacheEntryRecord))
        logger.info("Cleared %d metadata entries", count)
        return int(count)

    # Tier locations

    def record_location(self, key: str, tier: TierName, locator: str) -> None:
        """Insert or replace the location of a key in one tier."""
        with self._session() as session:
            if session.get(CacheEntryRecord, key) is None:
                raise MetadataStoreError(f"No entry for key: {key}")
            existing = session.execute(
                select(TierLocation).where(
                    TierLocation.cache_key == key, TierLocation.tier == tier.value
                )
            ).scalar_one_or_none()
            if existing is None:
                session.add(TierLocation(cache_key=key, tier=tier.value, locator=locator))
            else:
                existing.locator = locator
                existing.stored_at = datetime.now(timezone.utc)

    def locations(self, key: str) -> list[TierRecord]:
        """Known tier locations for a key."""
        with self._session() as session:
            stmt = (
                select(TierLocation)
                .where(TierLocation.cache_key == key)
                .order_by(TierLocation.id)
            )
            return [
                TierRecord(tier=TierName(loc.tier), present=True, locator=loc.locator)
                for loc in session.execute(stmt).scalars()
            ]

    def location_counts(self) -> dict[str, int]:
        """Number of recorded locations per tier."""
        with self._session() as session:
            stmt = select(TierLocation.tier, func.count()).group_by(TierLocation.tier)
            return {tier: int(count) for tier, count in session.execute(stmt).all()}

    # Aggregates

    def count(self) -> int:
        """Number of entries."""
        with self._session() as session:
            return int(
                session.execute(
                    select(func.count()).select_from(CacheEntryRecord)
                ).scalar_one()
            )

    def total_size(self) -> int:
        """Sum of recorded artifact sizes in bytes."""
        with self._session() as session:
            total = session.execute(
                select(func.coalesce(func.sum(CacheEntryRecord.size_bytes), 0))
            ).scalar_one()
            return int(total)

    def oldest(self) -> CacheEntry | None:
        """The entry with the earliest creation time."""
        with self._session() as session:
            stmt = select(CacheEntryRecord).order_by(CacheEntryRecord.created_at).limit(1)
            record = session.execute(stmt).scalar_one_or_none()
            return _to_entry(record) if record is not None else None


__all__ = ["MetadataStore"]
