from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from focus_queue.services.records import (
    ACTIVE_STATUSES,
    CompanyRegistry,
    EntityLink,
    ItemExtract,
    LinkProposal,
    SourceKey,
    SourceType,
    WorkItem,
    WorkItemStatus,
)
from focus_queue.services.repository import (
    RepositoryConflictError,
    RepositoryDuplicateError,
    RepositoryNotFoundError,
)


class InMemoryRepository:
    """Process-local repository with the same surface as ``PostgresRepository``.

    Used by tests and local runs without a database. Rows are copied on the way
    in and out so callers cannot mutate stored state.
    """

    def __init__(self, *, has_stale_procedure: bool = True) -> None:
        self.work_items: dict[str, WorkItem] = {}
        self.entity_links: dict[tuple[str, SourceType, str, str, str], EntityLink] = {}
        self.extracts: list[ItemExtract] = []
        self.registries: dict[str, CompanyRegistry] = {}
        self.has_stale_procedure = has_stale_procedure
        self.stale_calls: list[str] = []
        self._last_timestamp: datetime | None = None

    async def close(self) -> None:
        return None

    async def get_work_item_by_source(
        self,
        owner_id: str,
        source_type: SourceType,
        source_id: str,
    ) -> WorkItem | None:
        for item in self.work_items.values():
            if item.owner_id == owner_id and item.source_key == (source_type, source_id):
                return replace(item, reason_codes=list(item.reason_codes))
        return None

    async def get_work_item(self, owner_id: str, work_item_id: str) -> WorkItem:
        item = self.work_items.get(work_item_id)
        if item is None or item.owner_id != owner_id:
            raise RepositoryNotFoundError("work item not found")
        return replace(item, reason_codes=list(item.reason_codes))

    async def insert_work_item(
        self,
        *,
        owner_id: str,
        source_type: SourceType,
        source_id: str,
        status: WorkItemStatus,
        reason_codes: list[str],
        priority: int,
        trusted_at: datetime | None = None,
    ) -> WorkItem:
        if await self.get_work_item_by_source(owner_id, source_type, source_id) is not None:
            raise RepositoryDuplicateError(f"duplicate key owner_id={owner_id} source={source_type.value}:{source_id}")
        now = self._next_timestamp()
        item = WorkItem(
            id=str(uuid4()),
            owner_id=owner_id,
            source_type=source_type,
            source_id=source_id,
            status=status,
            reason_codes=list(reason_codes),
            priority=priority,
            created_at=now,
            updated_at=now,
            trusted_at=trusted_at,
        )
        self.work_items[item.id] = item
        return replace(item, reason_codes=list(item.reason_codes))

    async def list_active_work_items(self, owner_id: str) -> list[WorkItem]:
        items = [
            replace(item, reason_codes=list(item.reason_codes))
            for item in self.work_items.values()
            if item.owner_id == owner_id and item.status in ACTIVE_STATUSES
        ]
        return sorted(items, key=lambda item: (item.created_at, item.id))

    async def update_reason_codes(
        self,
        owner_id: str,
        work_item_id: str,
        reason_codes: list[str],
        *,
        touched_at: datetime | None = None,
    ) -> None:
        item = self.work_items.get(work_item_id)
        if item is None or item.owner_id != owner_id:
            return
        item.reason_codes = list(reason_codes)
        item.updated_at = datetime.now(timezone.utc)
        if touched_at is not None:
            item.last_touched_at = touched_at

    async def mark_trusted(self, owner_id: str, work_item_ids: Sequence[str], *, trusted_at: datetime) -> int:
        promoted = 0
        for work_item_id in work_item_ids:
            item = self.work_items.get(work_item_id)
            if item is None or item.owner_id != owner_id or item.status not in ACTIVE_STATUSES:
                continue
            item.status = WorkItemStatus.TRUSTED
            item.trusted_at = trusted_at
            item.reason_codes = []
            item.updated_at = datetime.now(timezone.utc)
            promoted += 1
        return promoted

    async def transition_work_item(
        self,
        owner_id: str,
        work_item_id: str,
        *,
        from_status: WorkItemStatus,
        to_status: WorkItemStatus,
        now: datetime,
        snooze_until: datetime | None = None,
        reason_codes: list[str] | None = None,
        stamp_trusted: bool = False,
        stamp_reviewed: bool = False,
    ) -> WorkItem:
        item = self.work_items.get(work_item_id)
        if item is None or item.owner_id != owner_id:
            raise RepositoryNotFoundError("work item not found")
        if item.status is not from_status:
            raise RepositoryConflictError(
                f"work item status changed: expected={from_status.value} actual={item.status.value}"
            )
        item.status = to_status
        item.snooze_until = snooze_until
        if reason_codes is not None:
            item.reason_codes = list(reason_codes)
        if stamp_trusted:
            item.trusted_at = now
        if stamp_reviewed:
            item.reviewed_at = now
        item.last_touched_at = now
        item.updated_at = now
        return replace(item, reason_codes=list(item.reason_codes))

    async def count_by_status(self, owner_id: str) -> dict[WorkItemStatus, int]:
        counts = {status: 0 for status in WorkItemStatus}
        for item in self.work_items.values():
            if item.owner_id == owner_id:
                counts[item.status] += 1
        return counts

    async def mark_stale_work_items(self, owner_id: str) -> None:
        if not self.has_stale_procedure:
            raise RepositoryNotFoundError("mark_stale_work_items procedure is not installed")
        self.stale_calls.append(owner_id)

    async def upsert_entity_links(
        self,
        owner_id: str,
        source_type: SourceType,
        source_id: str,
        links: Sequence[LinkProposal],
    ) -> None:
        for link in links:
            key = (owner_id, source_type, source_id, link.target_type, link.target_id)
            self.entity_links[key] = EntityLink(
                owner_id=owner_id,
                source_type=source_type,
                source_id=source_id,
                target_type=link.target_type,
                target_id=link.target_id,
                reason=link.reason,
                confidence=link.confidence,
                created_at=self.entity_links[key].created_at if key in self.entity_links else self._next_timestamp(),
            )

    async def list_entity_links(self, owner_id: str) -> list[EntityLink]:
        return [link for link in self.entity_links.values() if link.owner_id == owner_id]

    async def list_summary_extracts(self, owner_id: str) -> list[ItemExtract]:
        return [
            extract
            for extract in self.extracts
            if extract.owner_id == owner_id and extract.extract_type == "summary"
        ]

    async def get_company_registry(self, owner_id: str) -> CompanyRegistry:
        return self.registries.get(owner_id, CompanyRegistry())

    def add_summary(self, owner_id: str, source_key: SourceKey, one_liner: str) -> None:
        source_type, source_id = source_key
        self.extracts.append(
            ItemExtract(
                owner_id=owner_id,
                source_type=source_type,
                source_id=source_id,
                extract_type="summary",
                content={"one_liner": one_liner},
                created_at=self._next_timestamp(),
            )
        )

    def _next_timestamp(self) -> datetime:
        # Strictly increasing so creation order survives equal wall-clock readings.
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now
