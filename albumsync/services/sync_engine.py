"""Sync engine: reconciles the source listing against the mapping store."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from albumsync.exceptions import AuthenticationError, StorageError
from albumsync.services.datetime_service import now_utc
from albumsync.services.run_metrics import LastRun, RunMetrics

if TYPE_CHECKING:
    from datetime import datetime

    from albumsync.clients.base import SourceClient, SourceItem, TargetClient
    from albumsync.services.mapping_store import MappingRecord, MappingStore

logger = logging.getLogger(__name__)


class DeletionPolicy(StrEnum):
    """What to do with target artifacts whose source item disappeared."""

    HARD_DELETE = "hard_delete"
    APPEND_ONLY = "append_only"


@dataclass
class SyncPlan:
    """Additions and removals for one cycle."""

    to_add: list[SourceItem] = field(default_factory=list)
    to_remove: list[MappingRecord] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


def compute_sync_plan(
    source_items: list[SourceItem],
    mappings: list[MappingRecord],
) -> SyncPlan:
    """Diff the current source listing against the persisted mappings.

    Additions keep the source listing order; removals keep the store order.
    """
    source_ids = {item.id for item in source_items}
    mapped_ids = {record.source_id for record in mappings}

    plan = SyncPlan()
    seen: set[str] = set()
    for item in source_items:
        # A listing may repeat an id; the first occurrence wins.
        if item.id in mapped_ids or item.id in seen:
            continue
        seen.add(item.id)
        plan.to_add.append(item)
    plan.to_remove = [record for record in mappings if record.source_id not in source_ids]
    return plan


@dataclass
class _CycleCounters:
    added: int = 0
    failed: int = 0
    removed: int = 0
    skipped_removals: int = 0
    # Target ids written to the store during this cycle.
    written_target_ids: set[str] = field(default_factory=set)


class SyncEngine:
    """Mirror source items into a target collection.

    One instance is created at process start. ``run`` executes a full cycle;
    a second call while a cycle is in progress is dropped, not queued.
    """

    def __init__(
        self,
        source: SourceClient,
        target: TargetClient,
        store: MappingStore,
        *,
        collection_name: str,
        deletion_policy: DeletionPolicy = DeletionPolicy.HARD_DELETE,
        upload_delay_ms: int = 0,
    ) -> None:
        self._source = source
        self._target = target
        self._store = store
        self._collection_name = collection_name
        self._deletion_policy = deletion_policy
        self._upload_delay = upload_delay_ms / 1000
        self._collection_id: str | None = None
        self._running = False
        self._metrics = RunMetrics()

    @property
    def is_running(self) -> bool:
        """Whether a cycle is currently executing."""
        return self._running

    @property
    def metrics(self) -> RunMetrics:
        """Current metrics snapshot."""
        return self._metrics

    @property
    def deletion_policy(self) -> DeletionPolicy:
        return self._deletion_policy

    def set_target_authenticated(self, authenticated: bool) -> None:
        """Record an authentication result observed outside a cycle."""
        self._metrics = self._metrics.with_authentication(authenticated)

    async def run(self) -> bool:
        """Run one sync cycle.

        Returns False when the call was dropped because a cycle is already
        running. Cycle-level failures are recorded in the metrics and then
        re-raised.
        """
        # No await between the check and the set: atomic under asyncio.
        if self._running:
            logger.warning("Sync already in progress, skipping")
            return False
        self._running = True

        started_at = now_utc()
        start = time.monotonic()
        counters = _CycleCounters()
        error: BaseException | None = None
        try:
            logger.info("Starting sync")
            await self._run_cycle(counters)
            logger.info(
                "Sync complete: %d added, %d removed, %d failed",
                counters.added,
                counters.removed,
                counters.failed,
            )
        except asyncio.CancelledError as exc:
            error = exc
            logger.warning("Sync cancelled")
            raise
        except Exception as exc:
            error = exc
            logger.error("Sync failed: %s", exc, exc_info=True)
            raise
        finally:
            try:
                self._record_run(started_at, start, counters, error)
                if not isinstance(error, asyncio.CancelledError):
                    await self._refresh_authentication()
            finally:
                self._running = False
        return True

    async def _run_cycle(self, counters: _CycleCounters) -> None:
        source_items = await self._source.list_items()
        mappings = await self._store.list_all()
        plan = compute_sync_plan(source_items, mappings)

        logger.info(
            "Sync analysis complete: %d source items, %d synced, %d to add, %d to remove",
            len(source_items),
            len(mappings),
            len(plan.to_add),
            len(plan.to_remove),
        )

        removals_need_target = (
            bool(plan.to_remove) and self._deletion_policy is DeletionPolicy.HARD_DELETE
        )
        if not plan.to_add and not removals_need_target:
            if plan.to_remove:
                self._skip_removals(plan.to_remove, counters)
            return

        collection_id = await self._ensure_target()

        for index, item in enumerate(plan.to_add):
            target_id = await self._add_item(item, collection_id)
            if target_id is not None:
                counters.added += 1
                counters.written_target_ids.add(target_id)
            else:
                counters.failed += 1
            if self._upload_delay > 0 and index < len(plan.to_add) - 1:
                await asyncio.sleep(self._upload_delay)

        if not plan.to_remove:
            return
        if self._deletion_policy is DeletionPolicy.APPEND_ONLY:
            self._skip_removals(plan.to_remove, counters)
            return

        removed_ids = {record.source_id for record in plan.to_remove}
        surviving_target_ids = {
            record.target_id for record in mappings if record.source_id not in removed_ids
        } | counters.written_target_ids
        await self._remove_items(plan.to_remove, collection_id, surviving_target_ids, counters)

    async def _ensure_target(self) -> str:
        """Authenticate and resolve the collection once per process."""
        if self._collection_id is not None:
            return self._collection_id

        if not await self._target.check_authenticated():
            self._metrics = self._metrics.with_authentication(False)
            raise AuthenticationError("Target authentication failed")
        self._metrics = self._metrics.with_authentication(True)

        self._collection_id = await self._target.ensure_collection_exists(self._collection_name)
        logger.info("Using collection %r (%s)", self._collection_name, self._collection_id)
        return self._collection_id

    async def _add_item(self, item: SourceItem, collection_id: str) -> str | None:
        """Sync one item. Returns its target id once the mapping is stored.

        Errors other than StorageError are logged and swallowed so the cycle
        moves on to the next item.
        """
        try:
            existing = await self._store.get_by_content_hash(item.content_hash)
            if existing is not None:
                target_id = existing.target_id
                logger.info(
                    "Reusing %s for %s (same content as %s)",
                    target_id,
                    item.id,
                    existing.source_id,
                )
            else:
                logger.info("Adding %s", item.id)
                data = await self._source.fetch_content(item)
                target_id = await self._target.upload(data, f"{item.id}.jpg")
            await self._target.attach_if_absent(collection_id, [target_id])
            await self._store.upsert(item.id, item.content_hash, target_id)
        except StorageError:
            raise
        except Exception as exc:
            logger.error("Failed to add %s: %s", item.id, exc)
            return None
        logger.info("Synced %s -> %s", item.id, target_id)
        return target_id

    def _skip_removals(self, to_remove: list[MappingRecord], counters: _CycleCounters) -> None:
        counters.skipped_removals = len(to_remove)
        logger.info(
            "Append-only mode: keeping %d item(s) no longer in the source", len(to_remove)
        )

    async def _remove_items(
        self,
        to_remove: list[MappingRecord],
        collection_id: str,
        surviving_target_ids: set[str],
        counters: _CycleCounters,
    ) -> None:
        """Detach, trash and purge removed artifacts, then drop their mappings.

        Artifacts still referenced by another mapping are left on the target.
        If the target batch fails the mappings are kept for the next cycle.
        """
        target_ids = list(
            dict.fromkeys(
                record.target_id
                for record in to_remove
                if record.target_id not in surviving_target_ids
            )
        )
        logger.info("Removing %d item(s) (%d target artifacts)", len(to_remove), len(target_ids))

        if target_ids:
            try:
                await self._target.detach(collection_id, target_ids)
                await self._target.trash(target_ids)
                await self._target.purge(target_ids)
            except Exception as exc:
                logger.error("Failed to remove %d artifact(s): %s", len(target_ids), exc)
                return

        counters.removed = await self._store.delete_by_source_ids(
            [record.source_id for record in to_remove]
        )

    def _record_run(
        self,
        started_at: datetime,
        start: float,
        counters: _CycleCounters,
        error: BaseException | None,
    ) -> None:
        run = LastRun(
            timestamp=started_at,
            duration_ms=int((time.monotonic() - start) * 1000),
            added=counters.added,
            removed=counters.removed,
            failed=counters.failed,
            skipped_removals=counters.skipped_removals,
            success=error is None,
            error=(str(error) or type(error).__name__) if error is not None else None,
        )
        self._metrics = self._metrics.with_run(run)

    async def _refresh_authentication(self) -> None:
        try:
            authenticated = await self._target.check_authenticated()
        except Exception as exc:
            logger.warning("Authentication check failed: %s", exc)
            authenticated = False
        self._metrics = self._metrics.with_authentication(authenticated)

    async def close(self) -> None:
        """Release collaborator resources."""
        await self._source.aclose()
        await self._target.aclose()
