from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from focus_queue.services.adapters import SourceAdapter, SourceAdapterError, fetch_record
from focus_queue.services.linking import EnrichmentResult, enrich_source_record, fallback_enrichment
from focus_queue.services.records import (
    ACTIVE_STATUSES,
    LinkProposal,
    ReasonCode,
    SourceType,
    WorkItem,
    WorkItemStatus,
    dedupe_reason_codes,
)
from focus_queue.services.repository import (
    RepositoryConflictError,
    RepositoryDuplicateError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ALLOWED_TRANSITIONS: dict[WorkItemStatus, frozenset[WorkItemStatus]] = {
    WorkItemStatus.NEEDS_REVIEW: frozenset(
        {WorkItemStatus.ENRICHED_PENDING, WorkItemStatus.TRUSTED, WorkItemStatus.SNOOZED, WorkItemStatus.IGNORED}
    ),
    WorkItemStatus.ENRICHED_PENDING: frozenset(
        {WorkItemStatus.NEEDS_REVIEW, WorkItemStatus.TRUSTED, WorkItemStatus.SNOOZED, WorkItemStatus.IGNORED}
    ),
    WorkItemStatus.SNOOZED: frozenset(
        {WorkItemStatus.NEEDS_REVIEW, WorkItemStatus.TRUSTED, WorkItemStatus.SNOOZED, WorkItemStatus.IGNORED}
    ),
    WorkItemStatus.TRUSTED: frozenset({WorkItemStatus.NEEDS_REVIEW, WorkItemStatus.IGNORED}),
    WorkItemStatus.IGNORED: frozenset(),
}

LINK_TARGET_TYPES = {"company", "project", "pipeline_company"}
MANUAL_LINK_REASON = "manual"


@dataclass(slots=True)
class EnsureResult:
    work_item: WorkItem
    is_new: bool


@dataclass(slots=True)
class StatusCounts:
    needs_review: int
    snoozed: int
    enriched_pending: int
    trusted: int
    ignored: int

    @property
    def all_clear(self) -> bool:
        return self.needs_review == 0 and self.enriched_pending == 0


def can_transition(current: WorkItemStatus, target: WorkItemStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class WorkItemService:
    def __init__(self, repository: Any, adapters: Mapping[SourceType, SourceAdapter]) -> None:
        self.repository = repository
        self.adapters = adapters

    async def ensure_work_item(self, owner_id: str, source_type: SourceType, source_id: str) -> EnsureResult:
        with tracer.start_as_current_span("work_items.ensure") as span:
            span.set_attribute("work_item.source_type", source_type.value)
            existing = await self.repository.get_work_item_by_source(owner_id, source_type, source_id)
            if existing is not None:
                span.set_attribute("work_item.is_new", False)
                return EnsureResult(work_item=existing, is_new=False)

            enrichment = await self._enrich(owner_id, source_type, source_id)
            status = WorkItemStatus.NEEDS_REVIEW if enrichment.reason_codes else WorkItemStatus.TRUSTED
            try:
                work_item = await self.repository.insert_work_item(
                    owner_id=owner_id,
                    source_type=source_type,
                    source_id=source_id,
                    status=status,
                    reason_codes=enrichment.reason_codes,
                    priority=enrichment.priority,
                    trusted_at=datetime.now(timezone.utc) if status is WorkItemStatus.TRUSTED else None,
                )
            except RepositoryDuplicateError:
                winner = await self.repository.get_work_item_by_source(owner_id, source_type, source_id)
                if winner is None:
                    raise RepositoryConflictError("work item insert conflicted but no row was found") from None
                logger.info(
                    "work item ensure lost race source_type=%s source_id=%s work_item_id=%s",
                    source_type.value,
                    source_id,
                    winner.id,
                )
                span.set_attribute("work_item.is_new", False)
                return EnsureResult(work_item=winner, is_new=False)

            await self._persist_links(owner_id, source_type, source_id, enrichment.links)
            logger.info(
                "work item created id=%s source_type=%s status=%s reason_codes=%s links=%s",
                work_item.id,
                source_type.value,
                status.value,
                ",".join(enrichment.reason_codes) or "-",
                len(enrichment.links),
            )
            span.set_attribute("work_item.is_new", True)
            return EnsureResult(work_item=work_item, is_new=True)

    async def backfill(self, owner_id: str, source_ids_by_type: Mapping[SourceType, Sequence[str]]) -> int:
        created = 0
        for source_type, source_ids in source_ids_by_type.items():
            for source_id in dict.fromkeys(source_ids):
                try:
                    result = await self.ensure_work_item(owner_id, source_type, source_id)
                except RepositoryUnavailableError:
                    raise
                except RepositoryError as exc:
                    logger.warning(
                        "backfill skipped source_type=%s source_id=%s error=%s",
                        source_type.value,
                        source_id,
                        exc,
                    )
                    continue
                if result.is_new:
                    created += 1
        if created:
            logger.info("backfill created=%s owner_id=%s", created, owner_id)
        return created

    async def trust(self, owner_id: str, work_item_id: str, *, now: datetime | None = None) -> WorkItem:
        return await self._transition(
            owner_id,
            work_item_id,
            WorkItemStatus.TRUSTED,
            now=now,
            stamp_trusted=True,
            stamp_reviewed=True,
        )

    async def ignore(self, owner_id: str, work_item_id: str, *, now: datetime | None = None) -> WorkItem:
        return await self._transition(owner_id, work_item_id, WorkItemStatus.IGNORED, now=now, stamp_reviewed=True)

    async def snooze(
        self,
        owner_id: str,
        work_item_id: str,
        until: datetime,
        *,
        now: datetime | None = None,
    ) -> WorkItem:
        moment = now or datetime.now(timezone.utc)
        if until.tzinfo is None:
            until = until.replace(tzinfo=timezone.utc)
        if until <= moment:
            raise RepositoryValidationError("snooze_until must be in the future")
        return await self._transition(owner_id, work_item_id, WorkItemStatus.SNOOZED, now=moment, snooze_until=until)

    async def reopen(
        self,
        owner_id: str,
        work_item_id: str,
        reason_codes: Sequence[str],
        *,
        now: datetime | None = None,
    ) -> WorkItem:
        """Put a resolved item back in review with fresh reason codes."""
        codes = dedupe_reason_codes(list(reason_codes))
        if not codes:
            raise RepositoryValidationError("reopen requires at least one reason code")
        allowed_codes = {code.value for code in ReasonCode}
        unknown = [code for code in codes if code not in allowed_codes]
        if unknown:
            raise RepositoryValidationError(f"unknown reason codes: {', '.join(unknown)}")
        return await self._transition(
            owner_id,
            work_item_id,
            WorkItemStatus.NEEDS_REVIEW,
            now=now,
            reason_codes=codes,
        )

    async def link_entity(
        self,
        owner_id: str,
        work_item_id: str,
        *,
        target_type: str,
        target_id: str,
        now: datetime | None = None,
    ) -> WorkItem:
        if target_type not in LINK_TARGET_TYPES:
            raise RepositoryValidationError(f"target_type must be one of: {', '.join(sorted(LINK_TARGET_TYPES))}")
        if not target_id or not target_id.strip():
            raise RepositoryValidationError("target_id must be a non-empty string")

        moment = now or datetime.now(timezone.utc)
        item = await self.repository.get_work_item(owner_id, work_item_id)
        await self.repository.upsert_entity_links(
            owner_id,
            item.source_type,
            item.source_id,
            [LinkProposal(target_type=target_type, target_id=target_id.strip(), reason=MANUAL_LINK_REASON, confidence=1.0)],
        )

        remaining = [code for code in item.reason_codes if code != ReasonCode.UNLINKED_COMPANY.value]
        if not remaining and item.status in ACTIVE_STATUSES:
            return await self.repository.transition_work_item(
                owner_id,
                work_item_id,
                from_status=item.status,
                to_status=WorkItemStatus.TRUSTED,
                now=moment,
                reason_codes=[],
                stamp_trusted=True,
            )

        await self.repository.update_reason_codes(owner_id, work_item_id, remaining, touched_at=moment)
        return await self.repository.get_work_item(owner_id, work_item_id)

    async def status_counts(self, owner_id: str) -> StatusCounts:
        counts = await self.repository.count_by_status(owner_id)
        return StatusCounts(
            needs_review=counts.get(WorkItemStatus.NEEDS_REVIEW, 0),
            snoozed=counts.get(WorkItemStatus.SNOOZED, 0),
            enriched_pending=counts.get(WorkItemStatus.ENRICHED_PENDING, 0),
            trusted=counts.get(WorkItemStatus.TRUSTED, 0),
            ignored=counts.get(WorkItemStatus.IGNORED, 0),
        )

    async def _transition(
        self,
        owner_id: str,
        work_item_id: str,
        target: WorkItemStatus,
        *,
        now: datetime | None,
        snooze_until: datetime | None = None,
        reason_codes: list[str] | None = None,
        stamp_trusted: bool = False,
        stamp_reviewed: bool = False,
    ) -> WorkItem:
        item = await self.repository.get_work_item(owner_id, work_item_id)
        if not can_transition(item.status, target):
            raise RepositoryConflictError(f"invalid transition from={item.status.value} to={target.value}")
        updated = await self.repository.transition_work_item(
            owner_id,
            work_item_id,
            from_status=item.status,
            to_status=target,
            now=now or datetime.now(timezone.utc),
            snooze_until=snooze_until,
            reason_codes=reason_codes,
            stamp_trusted=stamp_trusted,
            stamp_reviewed=stamp_reviewed,
        )
        logger.info(
            "work item transition id=%s from=%s to=%s",
            work_item_id,
            item.status.value,
            target.value,
        )
        return updated

    async def _enrich(self, owner_id: str, source_type: SourceType, source_id: str) -> EnrichmentResult:
        adapter = self.adapters.get(source_type)
        if adapter is None:
            logger.warning("source adapter missing source_type=%s; using fallback enrichment", source_type.value)
            return fallback_enrichment(source_type)

        try:
            record = await fetch_record(adapter, owner_id, source_id)
        except SourceAdapterError as exc:
            logger.warning(
                "source fetch failed source_type=%s source_id=%s error=%s; using fallback enrichment",
                source_type.value,
                source_id,
                exc,
            )
            return fallback_enrichment(source_type)

        if record is None:
            raise RepositoryNotFoundError(f"{source_type.value} source record not found")

        registry = await self.repository.get_company_registry(owner_id)
        return enrich_source_record(source_type, record, registry)

    async def _persist_links(
        self,
        owner_id: str,
        source_type: SourceType,
        source_id: str,
        links: list[LinkProposal],
    ) -> None:
        if not links:
            return
        try:
            await self.repository.upsert_entity_links(owner_id, source_type, source_id, links)
        except RepositoryError as exc:
            logger.warning(
                "entity link write failed source_type=%s source_id=%s count=%s error=%s",
                source_type.value,
                source_id,
                len(links),
                exc,
            )
