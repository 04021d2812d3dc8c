"""Tests for the mapping store."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from albumsync.exceptions import StorageError
from albumsync.services.mapping_store import MappingSortKey, MappingStore, SortDirection

if TYPE_CHECKING:
    from collections.abc import Iterator


def _clock(start: datetime) -> Iterator[datetime]:
    current = start
    while True:
        yield current
        current += timedelta(seconds=1)


@pytest.fixture
def fixed_clock(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make every upsert one second later than the previous one."""
    ticks = _clock(datetime(2024, 5, 1, 12, 0, tzinfo=UTC))
    monkeypatch.setattr("albumsync.services.mapping_store.now_utc", lambda: next(ticks))


class TestUpsertAndLookup:
    async def test_upsert_then_get_by_source_id(self, store: MappingStore) -> None:
        await store.upsert("photo-1", "hash-a", "node-1")
        record = await store.get_by_source_id("photo-1")
        assert record is not None
        assert record.content_hash == "hash-a"
        assert record.target_id == "node-1"
        assert record.synced_at.tzinfo is not None

    async def test_missing_source_id_returns_none(self, store: MappingStore) -> None:
        assert await store.get_by_source_id("nope") is None
        assert await store.get_by_content_hash("nope") is None
        assert await store.get_by_target_id("nope") is None

    async def test_upsert_overwrites_whole_row(
        self, store: MappingStore, fixed_clock: None
    ) -> None:
        await store.upsert("photo-1", "hash-a", "node-1")
        first = await store.get_by_source_id("photo-1")
        await store.upsert("photo-1", "hash-b", "node-2")
        second = await store.get_by_source_id("photo-1")

        assert first is not None and second is not None
        assert second.content_hash == "hash-b"
        assert second.target_id == "node-2"
        assert second.synced_at > first.synced_at
        assert await store.count() == 1

    async def test_get_by_content_hash_prefers_most_recent(
        self, store: MappingStore, fixed_clock: None
    ) -> None:
        await store.upsert("photo-1", "same", "node-old")
        await store.upsert("photo-2", "same", "node-new")
        record = await store.get_by_content_hash("same")
        assert record is not None
        assert record.source_id == "photo-2"
        assert record.target_id == "node-new"

    async def test_get_by_content_hash_ties_broken_by_source_id(
        self, store: MappingStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        frozen = datetime(2024, 5, 1, tzinfo=UTC)
        monkeypatch.setattr("albumsync.services.mapping_store.now_utc", lambda: frozen)
        await store.upsert("photo-b", "same", "node-b")
        await store.upsert("photo-a", "same", "node-a")
        record = await store.get_by_content_hash("same")
        assert record is not None
        assert record.source_id == "photo-a"

    async def test_get_by_target_id(self, store: MappingStore) -> None:
        await store.upsert("photo-1", "hash-a", "node-1")
        record = await store.get_by_target_id("node-1")
        assert record is not None
        assert record.source_id == "photo-1"

    async def test_list_all_returns_every_row(self, store: MappingStore) -> None:
        for i in range(5):
            await store.upsert(f"photo-{i}", f"hash-{i}", f"node-{i}")
        records = await store.list_all()
        assert {r.source_id for r in records} == {f"photo-{i}" for i in range(5)}


class TestListPage:
    @pytest.fixture
    async def three_rows(self, store: MappingStore, fixed_clock: None) -> MappingStore:
        await store.upsert("photo-b", "hash-1", "node-1")
        await store.upsert("photo-a", "hash-2", "node-2")
        await store.upsert("photo-c", "hash-3", "node-3")
        return store

    async def test_default_sort_is_newest_first(self, three_rows: MappingStore) -> None:
        records = await three_rows.list_page(page=1, page_size=10)
        assert [r.source_id for r in records] == ["photo-c", "photo-a", "photo-b"]

    async def test_sort_by_source_id_ascending(self, three_rows: MappingStore) -> None:
        records = await three_rows.list_page(
            page=1,
            page_size=10,
            sort_key=MappingSortKey.SOURCE_ID,
            sort_direction=SortDirection.ASC,
        )
        assert [r.source_id for r in records] == ["photo-a", "photo-b", "photo-c"]

    async def test_sort_accepts_plain_strings(self, three_rows: MappingStore) -> None:
        records = await three_rows.list_page(
            page=1, page_size=10, sort_key="source_id", sort_direction="desc"
        )
        assert [r.source_id for r in records] == ["photo-c", "photo-b", "photo-a"]

    async def test_pagination_splits_rows(self, three_rows: MappingStore) -> None:
        first = await three_rows.list_page(
            page=1, page_size=2, sort_key="source_id", sort_direction="asc"
        )
        second = await three_rows.list_page(
            page=2, page_size=2, sort_key="source_id", sort_direction="asc"
        )
        assert [r.source_id for r in first] == ["photo-a", "photo-b"]
        assert [r.source_id for r in second] == ["photo-c"]

    async def test_page_past_the_end_is_empty(self, three_rows: MappingStore) -> None:
        assert await three_rows.list_page(page=999, page_size=10) == []

    async def test_invalid_sort_key_rejected(self, three_rows: MappingStore) -> None:
        with pytest.raises(ValueError):
            await three_rows.list_page(page=1, page_size=10, sort_key="target_id; DROP TABLE")

    async def test_invalid_sort_direction_rejected(self, three_rows: MappingStore) -> None:
        with pytest.raises(ValueError):
            await three_rows.list_page(page=1, page_size=10, sort_direction="sideways")

    @pytest.mark.parametrize(("page", "page_size"), [(0, 10), (1, 0), (-1, 5)])
    async def test_non_positive_page_or_size_rejected(
        self, three_rows: MappingStore, page: int, page_size: int
    ) -> None:
        with pytest.raises(ValueError):
            await three_rows.list_page(page=page, page_size=page_size)


class TestSearch:
    async def test_search_matches_any_identifier_column(self, store: MappingStore) -> None:
        await store.upsert("photo-1", "abc123", "node-x")
        await store.upsert("photo-2", "def456", "node-y")
        await store.upsert("other", "zzz", "node-photo")

        assert await store.count("abc") == 1
        assert await store.count("node-y") == 1
        assert await store.count("photo") == 3
        assert await store.count("") == 3
        assert await store.count(None) == 3

    async def test_like_wildcards_are_literal(self, store: MappingStore) -> None:
        await store.upsert("photo_1", "hash-a", "node-1")
        await store.upsert("photoX1", "hash-b", "node-2")
        await store.upsert("100%", "hash-c", "node-3")

        assert await store.count("o_1") == 1
        assert await store.count("%") == 1
        records = await store.list_page(page=1, page_size=10, search="_")
        assert [r.source_id for r in records] == ["photo_1"]


class TestDelete:
    async def test_delete_by_source_id(self, store: MappingStore) -> None:
        await store.upsert("photo-1", "hash-a", "node-1")
        assert await store.delete_by_source_id("photo-1") is True
        assert await store.get_by_source_id("photo-1") is None

    async def test_delete_missing_is_noop(self, store: MappingStore) -> None:
        assert await store.delete_by_source_id("photo-1") is False

    async def test_bulk_delete_counts_only_existing_rows(self, store: MappingStore) -> None:
        await store.upsert("photo-1", "hash-a", "node-1")
        await store.upsert("photo-2", "hash-b", "node-2")
        deleted = await store.delete_by_source_ids(["photo-1", "ghost"])
        assert deleted == 1
        assert [r.source_id for r in await store.list_all()] == ["photo-2"]

    async def test_bulk_delete_empty_input(self, store: MappingStore) -> None:
        assert await store.delete_by_source_ids([]) == 0

    async def test_bulk_delete_ignores_duplicate_ids(self, store: MappingStore) -> None:
        await store.upsert("photo-1", "hash-a", "node-1")
        assert await store.delete_by_source_ids(["photo-1", "photo-1"]) == 1

    async def test_bulk_delete_spans_chunks(self, store: MappingStore) -> None:
        ids = [f"photo-{i:04d}" for i in range(1200)]
        for source_id in ids:
            await store.upsert(source_id, "hash", "node")
        assert await store.delete_by_source_ids(ids) == 1200
        assert await store.count() == 0


class TestStorageErrors:
    async def test_missing_table_surfaces_as_storage_error(self) -> None:
        engine = create_async_engine("sqlite+aiosqlite:///:memory:")
        try:
            factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            store = MappingStore(factory)
            with pytest.raises(StorageError):
                await store.upsert("photo-1", "hash-a", "node-1")
            with pytest.raises(StorageError):
                await store.list_all()
        finally:
            await engine.dispose()

    async def test_init_schema_requires_engine(self) -> None:
        engine = create_async_engine("sqlite+aiosqlite:///:memory:")
        try:
            factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            with pytest.raises(RuntimeError):
                await MappingStore(factory).init_schema()
        finally:
            await engine.dispose()
