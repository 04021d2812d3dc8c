"""Mapping-related schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from albumsync.services.mapping_store import MappingRecord

MAX_PAGE_SIZE = 200


class MappingResponse(BaseModel):
    """A single source -> target mapping."""

    source_id: str
    content_hash: str
    target_id: str
    synced_at: datetime

    @classmethod
    def from_record(cls, record: MappingRecord) -> MappingResponse:
        return cls(
            source_id=record.source_id,
            content_hash=record.content_hash,
            target_id=record.target_id,
            synced_at=record.synced_at,
        )


class Pagination(BaseModel):
    page: int = Field(ge=1)
    page_size: int = Field(ge=1, le=MAX_PAGE_SIZE)
    total_items: int = Field(ge=0)
    total_pages: int = Field(ge=1)


class MappingListResponse(BaseModel):
    """Paginated mapping listing."""

    data: list[MappingResponse]
    pagination: Pagination


class BulkDeleteRequest(BaseModel):
    """Request to delete several mappings at once."""

    source_ids: list[str] = Field(min_length=1, max_length=10_000)


class DeleteResponse(BaseModel):
    deleted: int = Field(ge=0)
