"""Collaborator protocols and data classes shared by the sync engine and clients."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class SourceItem:
    """One item currently listed by the source platform."""

    id: str
    content_hash: str
    content_location: str
    width: int = 0
    height: int = 0
    caption: str | None = None
    date_created: datetime | None = None


@dataclass(frozen=True)
class AttachResult:
    """Outcome of adding artifacts to a target collection."""

    added: int
    skipped: int


@runtime_checkable
class SourceClient(Protocol):
    """Read-only access to the platform photos are mirrored from."""

    async def list_items(self) -> list[SourceItem]:
        """List every item currently available. Raises SourceUnavailableError."""
        ...

    async def fetch_content(self, item: SourceItem) -> bytes:
        """Download the raw bytes of ``item``, retrying internally."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...


@runtime_checkable
class TargetClient(Protocol):
    """Read-write access to the platform photos are mirrored into."""

    async def check_authenticated(self) -> bool:
        """Return True when the current credentials are accepted."""
        ...

    async def refresh_credentials(self) -> bool:
        """Renew expiring credentials. Returns True on success."""
        ...

    async def ensure_collection_exists(self, name: str) -> str:
        """Find or create the named collection and return its id."""
        ...

    async def upload(self, data: bytes, suggested_name: str) -> str:
        """Upload content and return the new (or already existing) artifact id."""
        ...

    async def attach_if_absent(self, collection_id: str, target_ids: list[str]) -> AttachResult:
        """Add artifacts to a collection, skipping those already in it."""
        ...

    async def detach(self, collection_id: str, target_ids: list[str]) -> None:
        """Remove artifacts from a collection."""
        ...

    async def trash(self, target_ids: list[str]) -> None:
        """Move artifacts to the trash."""
        ...

    async def purge(self, target_ids: list[str]) -> None:
        """Permanently delete trashed artifacts."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...
