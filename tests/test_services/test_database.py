"""Tests for database engine and session management."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from sqlalchemy import text

from albumsync.database import _sqlite_path, create_engine

if TYPE_CHECKING:
    from albumsync.config import Settings


class TestSqlitePath:
    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("sqlite+aiosqlite:///data/state.db", Path("data/state.db")),
            ("sqlite+aiosqlite:////srv/albumsync.db", Path("/srv/albumsync.db")),
            ("sqlite+aiosqlite:///:memory:", None),
            ("sqlite+aiosqlite://", None),
            ("postgresql+asyncpg://user@db/albumsync", None),
        ],
    )
    def test_resolves_file_path(self, url: str, expected: Path | None) -> None:
        assert _sqlite_path(url) == expected


class TestCreateEngine:
    async def test_session_works(self, test_settings: Settings) -> None:
        engine, session_factory = create_engine(test_settings)
        try:
            async with session_factory() as session:
                result = await session.execute(text("SELECT 42"))
                assert result.scalar() == 42
        finally:
            await engine.dispose()

    async def test_creates_parent_directory(self, test_settings: Settings, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "dir" / "state.db"
        settings = test_settings.model_copy(
            update={"database_url": f"sqlite+aiosqlite:///{db_path}"}
        )
        engine, _ = create_engine(settings)
        try:
            assert db_path.parent.is_dir()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            assert db_path.exists()
        finally:
            await engine.dispose()

    async def test_file_database_uses_wal(self, test_settings: Settings) -> None:
        engine, _ = create_engine(test_settings)
        try:
            async with engine.connect() as conn:
                mode = (await conn.execute(text("PRAGMA journal_mode"))).scalar()
                timeout = (await conn.execute(text("PRAGMA busy_timeout"))).scalar()
            assert mode == "wal"
            assert timeout == 5000
        finally:
            await engine.dispose()
