"""Shared test fixtures for albumsync."""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from albumsync.clients.base import AttachResult, SourceItem
from albumsync.config import Settings
from albumsync.exceptions import SourceUnavailableError, TargetAPIError
from albumsync.services.mapping_store import MappingStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

TEST_ALBUM_TOKEN = "B0z5qAGN1JIFd3y"


def make_item(source_id: str, content_hash: str | None = None) -> SourceItem:
    """Build a source item; the content hash defaults to one derived from the id."""
    return SourceItem(
        id=source_id,
        content_hash=content_hash or f"hash-{source_id}",
        content_location=f"https://cvws.icloud-content.com/{source_id}.jpg",
        width=2048,
        height=1536,
    )


class FakeSource:
    """In-memory source collaborator."""

    def __init__(self, items: list[SourceItem] | None = None) -> None:
        self.items = list(items or [])
        self.fail_listing = False
        self.fail_fetch: set[str] = set()
        self.fetched: list[str] = []
        self.list_calls = 0
        self.closed = False

    async def list_items(self) -> list[SourceItem]:
        self.list_calls += 1
        if self.fail_listing:
            raise SourceUnavailableError("album unreachable")
        return list(self.items)

    async def fetch_content(self, item: SourceItem) -> bytes:
        if item.id in self.fail_fetch:
            raise SourceUnavailableError(f"Failed to download {item.id}")
        self.fetched.append(item.id)
        return f"bytes-of-{item.content_hash}".encode()

    async def aclose(self) -> None:
        self.closed = True


class FakeTarget:
    """In-memory target collaborator that records every call."""

    def __init__(self) -> None:
        self.authenticated = True
        self.refresh_succeeds = True
        self.fail_upload_names: set[str] = set()
        self.fail_removal = False
        self.nodes: dict[str, bytes] = {}
        self.collections: dict[str, list[str]] = {}
        self.collection_ids: dict[str, str] = {}
        self.calls: list[tuple[str, object]] = []
        self.closed = False

    def mutating_calls(self) -> list[tuple[str, object]]:
        return [c for c in self.calls if c[0] != "check_authenticated"]

    async def check_authenticated(self) -> bool:
        self.calls.append(("check_authenticated", None))
        return self.authenticated

    async def refresh_credentials(self) -> bool:
        self.calls.append(("refresh_credentials", None))
        if self.refresh_succeeds:
            self.authenticated = True
        return self.refresh_succeeds

    async def ensure_collection_exists(self, name: str) -> str:
        self.calls.append(("ensure_collection_exists", name))
        if name not in self.collection_ids:
            collection_id = f"album-{len(self.collection_ids) + 1}"
            self.collection_ids[name] = collection_id
            self.collections[collection_id] = []
        return self.collection_ids[name]

    async def upload(self, data: bytes, suggested_name: str) -> str:
        self.calls.append(("upload", suggested_name))
        if suggested_name in self.fail_upload_names:
            raise TargetAPIError("upload rejected", status_code=400)
        node_id = "node-" + hashlib.md5(data).hexdigest()[:12]  # noqa: S324
        self.nodes[node_id] = data
        return node_id

    async def attach_if_absent(self, collection_id: str, target_ids: list[str]) -> AttachResult:
        self.calls.append(("attach_if_absent", list(target_ids)))
        members = self.collections[collection_id]
        added = 0
        for target_id in target_ids:
            if target_id not in members:
                members.append(target_id)
                added += 1
        return AttachResult(added=added, skipped=len(target_ids) - added)

    async def detach(self, collection_id: str, target_ids: list[str]) -> None:
        self.calls.append(("detach", list(target_ids)))
        if self.fail_removal:
            raise TargetAPIError("detach failed", status_code=500)
        members = self.collections[collection_id]
        self.collections[collection_id] = [m for m in members if m not in target_ids]

    async def trash(self, target_ids: list[str]) -> None:
        self.calls.append(("trash", list(target_ids)))

    async def purge(self, target_ids: list[str]) -> None:
        self.calls.append(("purge", list(target_ids)))
        for target_id in target_ids:
            self.nodes.pop(target_id, None)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    db_path = tmp_path / "state.db"
    return Settings(
        _env_file=None,
        icloud_album_token=TEST_ALBUM_TOKEN,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        amazon_cookies_path=tmp_path / "cookies.json",
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine."""
    engine = create_async_engine(
        test_settings.database_url,
        echo=False,
    )
    yield engine
    await engine.dispose()


@pytest.fixture
async def store(db_engine: AsyncEngine) -> MappingStore:
    """Mapping store over a fresh temporary database."""
    session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    mapping_store = MappingStore(session_factory, db_engine)
    await mapping_store.init_schema()
    return mapping_store


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def target() -> FakeTarget:
    return FakeTarget()
