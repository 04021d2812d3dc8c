"""Mapping inspection and manual deletion endpoints."""

from __future__ import annotations

import logging
import math
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from albumsync.api.deps import get_store, require_admin_token
from albumsync.schemas.mapping import (
    MAX_PAGE_SIZE,
    BulkDeleteRequest,
    DeleteResponse,
    MappingListResponse,
    MappingResponse,
    Pagination,
)
from albumsync.services.mapping_store import MappingSortKey, MappingStore, SortDirection

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/mappings",
    tags=["mappings"],
    dependencies=[Depends(require_admin_token)],
)


@router.get("", response_model=MappingListResponse)
async def list_mappings(
    store: Annotated[MappingStore, Depends(get_store)],
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = 50,
    search: Annotated[str | None, Query(max_length=200)] = None,
    sort_by: MappingSortKey = MappingSortKey.SYNCED_AT,
    sort_order: SortDirection = SortDirection.DESC,
) -> MappingListResponse:
    """Paginated listing; a page past the end is clamped to the last page."""
    search = search.strip() if search else None
    total = await store.count(search)
    total_pages = max(1, math.ceil(total / page_size))
    page = min(page, total_pages)
    records = await store.list_page(
        page=page,
        page_size=page_size,
        search=search,
        sort_key=sort_by,
        sort_direction=sort_order,
    )
    return MappingListResponse(
        data=[MappingResponse.from_record(r) for r in records],
        pagination=Pagination(
            page=page,
            page_size=page_size,
            total_items=total,
            total_pages=total_pages,
        ),
    )


@router.get("/by-target/{target_id}", response_model=MappingResponse)
async def get_mapping_by_target(
    target_id: str,
    store: Annotated[MappingStore, Depends(get_store)],
) -> MappingResponse:
    record = await store.get_by_target_id(target_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Mapping not found")
    return MappingResponse.from_record(record)


@router.post("/bulk-delete", response_model=DeleteResponse)
async def bulk_delete_mappings(
    body: BulkDeleteRequest,
    store: Annotated[MappingStore, Depends(get_store)],
) -> DeleteResponse:
    """Forget several mappings; the next cycle re-syncs their items."""
    deleted = await store.delete_by_source_ids(body.source_ids)
    logger.info("Bulk-deleted %d of %d requested mapping(s)", deleted, len(body.source_ids))
    return DeleteResponse(deleted=deleted)


@router.get("/{source_id}", response_model=MappingResponse)
async def get_mapping(
    source_id: str,
    store: Annotated[MappingStore, Depends(get_store)],
) -> MappingResponse:
    record = await store.get_by_source_id(source_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Mapping not found")
    return MappingResponse.from_record(record)


@router.delete("/{source_id}", response_model=DeleteResponse)
async def delete_mapping(
    source_id: str,
    store: Annotated[MappingStore, Depends(get_store)],
) -> DeleteResponse:
    """Forget one mapping so the next cycle re-syncs the item."""
    deleted = await store.delete_by_source_id(source_id)
    if deleted:
        logger.info("Deleted mapping for %s", source_id)
    return DeleteResponse(deleted=int(deleted))
