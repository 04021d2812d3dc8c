"""Mapping store: persisted source-id -> target-id relation with dedup lookups."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, or_, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from albumsync.exceptions import StorageError
from albumsync.models.base import Base
from albumsync.models.mapping import PhotoMapping
from albumsync.services.datetime_service import format_iso, now_utc, parse_iso

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Iterable

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
    from sqlalchemy.sql import Select

logger = logging.getLogger(__name__)

# Keeps each DELETE well under SQLite's bound-parameter limit.
_DELETE_CHUNK_SIZE = 500


class MappingSortKey(StrEnum):
    """Columns the operator listing may be sorted by."""

    SYNCED_AT = "synced_at"
    SOURCE_ID = "source_id"


class SortDirection(StrEnum):
    """Sort direction for the operator listing."""

    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class MappingRecord:
    """A persisted mapping between a source item and its target artifact."""

    source_id: str
    content_hash: str
    target_id: str
    synced_at: datetime


def _to_record(row: PhotoMapping) -> MappingRecord:
    return MappingRecord(
        source_id=row.source_id,
        content_hash=row.content_hash,
        target_id=row.target_id,
        synced_at=parse_iso(row.synced_at),
    )


def _apply_search(stmt: Select, search: str | None) -> Select:  # type: ignore[type-arg]
    """Filter by substring across all identifier columns."""
    if not search:
        return stmt
    return stmt.where(
        or_(
            PhotoMapping.source_id.contains(search, autoescape=True),
            PhotoMapping.content_hash.contains(search, autoescape=True),
            PhotoMapping.target_id.contains(search, autoescape=True),
        )
    )


class MappingStore:
    """Async access to the ``photo_mappings`` table.

    Every public method opens its own session, so the store can be shared by
    the sync engine (writer) and the operator API (reader) without extra
    locking; SQLite serializes writers itself.

    Any SQLAlchemy failure is re-raised as :class:`StorageError`.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("Mapping store %s failed: %s", operation, exc)
            raise StorageError(f"Mapping store {operation} failed: {exc}") from exc

    async def init_schema(self) -> None:
        """Create the mapping table and its indexes if they do not exist."""
        if self._engine is None:
            msg = "init_schema requires the store to be constructed with an engine"
            raise RuntimeError(msg)
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to create mapping schema: {exc}") from exc
        logger.debug("Mapping store initialized")

    async def upsert(self, source_id: str, content_hash: str, target_id: str) -> None:
        """Insert or fully overwrite the mapping for ``source_id``."""
        synced_at = format_iso(now_utc())
        stmt = sqlite_insert(PhotoMapping).values(
            source_id=source_id,
            content_hash=content_hash,
            target_id=target_id,
            synced_at=synced_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[PhotoMapping.source_id],
            set_={
                "content_hash": stmt.excluded.content_hash,
                "target_id": stmt.excluded.target_id,
                "synced_at": stmt.excluded.synced_at,
            },
        )
        async with self._session("upsert") as session:
            await session.execute(stmt)
            await session.commit()
        logger.debug("Upserted mapping %s -> %s", source_id, target_id)

    async def get_by_source_id(self, source_id: str) -> MappingRecord | None:
        """Look up the mapping for one source item."""
        async with self._session("lookup") as session:
            row = await session.get(PhotoMapping, source_id)
            return _to_record(row) if row is not None else None

    async def get_by_content_hash(self, content_hash: str) -> MappingRecord | None:
        """Return the most recently synced mapping with this content hash."""
        stmt = (
            select(PhotoMapping)
            .where(PhotoMapping.content_hash == content_hash)
            .order_by(PhotoMapping.synced_at.desc(), PhotoMapping.source_id.asc())
            .limit(1)
        )
        async with self._session("lookup") as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            return _to_record(row) if row is not None else None

    async def get_by_target_id(self, target_id: str) -> MappingRecord | None:
        """Reverse lookup by target artifact id."""
        stmt = (
            select(PhotoMapping)
            .where(PhotoMapping.target_id == target_id)
            .order_by(PhotoMapping.synced_at.desc(), PhotoMapping.source_id.asc())
            .limit(1)
        )
        async with self._session("lookup") as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            return _to_record(row) if row is not None else None

    async def list_all(self) -> list[MappingRecord]:
        """Full snapshot of all mappings, read in a single transaction."""
        async with self._session("list") as session, session.begin():
            result = await session.execute(select(PhotoMapping))
            return [_to_record(row) for row in result.scalars().all()]

    async def count(self, search: str | None = None) -> int:
        """Count mappings, optionally filtered by a substring search."""
        stmt = _apply_search(select(func.count()).select_from(PhotoMapping), search)
        async with self._session("count") as session:
            result = await session.execute(stmt)
            return int(result.scalar() or 0)

    async def list_page(
        self,
        *,
        page: int = 1,
        page_size: int = 50,
        search: str | None = None,
        sort_key: MappingSortKey | str = MappingSortKey.SYNCED_AT,
        sort_direction: SortDirection | str = SortDirection.DESC,
    ) -> list[MappingRecord]:
        """Return one page of mappings for operator browsing.

        ``page`` is 1-indexed. Pages past the end are empty. Raises ValueError
        for an unknown sort key or direction, or a non-positive page or size.
        """
        if page < 1:
            msg = f"page must be >= 1, got {page}"
            raise ValueError(msg)
        if page_size < 1:
            msg = f"page_size must be >= 1, got {page_size}"
            raise ValueError(msg)
        # Validated against the closed enums before any query is built.
        key = MappingSortKey(sort_key)
        direction = SortDirection(sort_direction)

        sort_col = (
            PhotoMapping.synced_at if key is MappingSortKey.SYNCED_AT else PhotoMapping.source_id
        )
        order = sort_col.asc() if direction is SortDirection.ASC else sort_col.desc()

        stmt = _apply_search(select(PhotoMapping), search)
        stmt = stmt.order_by(order, PhotoMapping.source_id.asc())
        stmt = stmt.offset((page - 1) * page_size).limit(page_size)

        async with self._session("list") as session:
            result = await session.execute(stmt)
            return [_to_record(row) for row in result.scalars().all()]

    async def delete_by_source_id(self, source_id: str) -> bool:
        """Delete one mapping. Returns False when there was nothing to delete."""
        stmt = delete(PhotoMapping).where(PhotoMapping.source_id == source_id)
        async with self._session("delete") as session:
            result = await session.execute(stmt)
            await session.commit()
        deleted = bool(result.rowcount)
        if deleted:
            logger.debug("Removed mapping %s", source_id)
        return deleted

    async def delete_by_source_ids(self, source_ids: Iterable[str]) -> int:
        """Delete many mappings atomically. Returns the number actually removed."""
        ids = list(dict.fromkeys(source_ids))
        if not ids:
            return 0

        deleted = 0
        async with self._session("bulk delete") as session, session.begin():
            for start in range(0, len(ids), _DELETE_CHUNK_SIZE):
                chunk = ids[start : start + _DELETE_CHUNK_SIZE]
                result = await session.execute(
                    delete(PhotoMapping).where(PhotoMapping.source_id.in_(chunk))
                )
                deleted += result.rowcount or 0
        logger.debug("Removed %d of %d requested mappings", deleted, len(ids))
        return deleted
