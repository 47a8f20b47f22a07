from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any

from opentelemetry import trace

from focus_queue.core.config import Settings
from focus_queue.services.adapters import SourceAdapter, SourceAdapterError, fetch_all
from focus_queue.services.insights import (
    Insight,
    QueueCounts,
    SuggestedMove,
    compute_counts,
    generate_insights,
    generate_suggestions,
)
from focus_queue.services.reconciliation import ReconciliationOutcome, reconcile
from focus_queue.services.records import (
    EffortEstimate,
    EntityLink,
    SourceKey,
    SourceType,
    UpcomingEvent,
)
from focus_queue.services.repository import (
    RepositoryError,
    RepositoryUnavailableError,
)
from focus_queue.services.scoring import ScoringVariant, score_source
from focus_queue.services.selection import (
    DEFAULT_MAX_ITEMS,
    DEFAULT_MAX_PER_SOURCE,
    DEFAULT_MIN_SCORE,
    ScoredItem,
    filter_items,
    select_items,
)
from focus_queue.services.writeback import WriteBackQueue

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class QueueOptions:
    max_items: int = DEFAULT_MAX_ITEMS
    max_per_source: int = DEFAULT_MAX_PER_SOURCE
    min_score: float = DEFAULT_MIN_SCORE
    diversity: bool = True
    source_types: list[SourceType] = field(default_factory=list)
    reason_codes: list[str] = field(default_factory=list)
    effort: EffortEstimate | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> QueueOptions:
        return cls(
            max_items=settings.queue_max_items,
            max_per_source=settings.queue_max_per_source,
            min_score=settings.queue_min_score,
            diversity=settings.queue_diversity_enabled,
        )


@dataclass(slots=True)
class QueueEntry:
    scored: ScoredItem
    title: str
    snippet: str | None = None
    url: str | None = None
    primary_link: EntityLink | None = None
    one_liner: str | None = None


@dataclass(slots=True)
class QueueDiagnostics:
    active_count: int = 0
    pruned_count: int = 0
    resolved_count: int = 0
    filtered_count: int = 0
    below_threshold: int = 0
    skipped_for_diversity: int = 0
    failed_sources: list[SourceType] = field(default_factory=list)
    links_available: bool = True
    summaries_available: bool = True
    stale_marking_available: bool = True
    writebacks_dropped: int = 0


@dataclass(slots=True)
class QueueSnapshot:
    generated_at: datetime
    items: list[QueueEntry] = field(default_factory=list)
    counts: QueueCounts = field(default_factory=QueueCounts)
    distribution: dict[SourceType, int] = field(default_factory=lambda: {source: 0 for source in SourceType})
    insights: list[Insight] = field(default_factory=list)
    suggestions: list[SuggestedMove] = field(default_factory=list)
    diagnostics: QueueDiagnostics = field(default_factory=QueueDiagnostics)

    @property
    def all_clear(self) -> bool:
        return self.counts.total == 0


class FocusQueueService:
    """One read cycle: reconcile, score, select and describe the owner's queue."""

    def __init__(
        self,
        repository: Any,
        adapters: Mapping[SourceType, SourceAdapter],
        writeback: WriteBackQueue,
        *,
        scoring_variant: ScoringVariant = "simple",
    ) -> None:
        self.repository = repository
        self.adapters = adapters
        self.writeback = writeback
        self.scoring_variant = scoring_variant

    async def read(
        self,
        owner_id: str,
        options: QueueOptions | None = None,
        *,
        now: datetime | None = None,
        upcoming_events: Sequence[UpcomingEvent] | None = None,
    ) -> QueueSnapshot:
        options = options or QueueOptions()
        now = now or datetime.now(timezone.utc)

        with tracer.start_as_current_span("queue.read") as span:
            diagnostics = QueueDiagnostics()
            diagnostics.stale_marking_available = await self._mark_stale(owner_id)

            rows = await self.repository.list_active_work_items(owner_id)
            items = [item for item in rows if item.is_queue_active(now)]
            diagnostics.active_count = len(items)
            span.set_attribute("queue.active_count", len(items))
            if not items:
                return QueueSnapshot(generated_at=now, diagnostics=diagnostics)

            links = await self._load_links(owner_id)
            summaries = await self._load_summaries(owner_id)
            diagnostics.links_available = links is not None
            diagnostics.summaries_available = summaries is not None

            records, failed_sources = await fetch_all(self.adapters, owner_id, [item.source_key for item in items])
            diagnostics.failed_sources = failed_sources

            outcome = reconcile(
                items,
                linked_keys=set(links) if links is not None else None,
                records=records,
                summary_keys=set(summaries) if summaries is not None else None,
            )
            diagnostics.pruned_count = len(outcome.pruned)
            diagnostics.resolved_count = len(outcome.resolved_ids)
            diagnostics.writebacks_dropped = self._schedule_writebacks(owner_id, outcome, now)

            scored = [
                ScoredItem(
                    work_item=item,
                    breakdown=score_source(
                        item.source_type,
                        records[item.source_key].scoring_inputs if item.source_key in records else None,
                        now=now,
                        variant=self.scoring_variant,
                    ),
                    record=records.get(item.source_key),
                )
                for item in outcome.active
            ]

            if upcoming_events is None:
                upcoming_events = await self._load_upcoming_events(owner_id, now)
            counts = compute_counts(scored)
            insights = generate_insights(scored, counts, upcoming_events, now)
            suggestions = generate_suggestions(scored, counts, upcoming_events, now)

            filtered = filter_items(
                scored,
                source_types=options.source_types,
                reason_codes=options.reason_codes,
                effort=options.effort,
            )
            diagnostics.filtered_count = len(scored) - len(filtered)
            selection = select_items(
                filtered,
                max_items=options.max_items,
                max_per_source=options.max_per_source,
                min_score=options.min_score,
                diversity=options.diversity,
            )
            diagnostics.below_threshold = selection.below_threshold
            diagnostics.skipped_for_diversity = selection.skipped_for_diversity

            span.set_attribute("queue.selected_count", len(selection.selected))
            span.set_attribute("queue.resolved_count", len(outcome.resolved_ids))
            logger.info(
                "queue read owner_id=%s active=%s selected=%s pruned=%s resolved=%s below_threshold=%s "
                "skipped_for_diversity=%s failed_sources=%s",
                owner_id,
                len(items),
                len(selection.selected),
                len(outcome.pruned),
                len(outcome.resolved_ids),
                selection.below_threshold,
                selection.skipped_for_diversity,
                ",".join(source.value for source in failed_sources) or "-",
            )

            return QueueSnapshot(
                generated_at=now,
                items=[self._compose(item, links, summaries) for item in selection.selected],
                counts=counts,
                distribution=selection.distribution,
                insights=insights,
                suggestions=suggestions,
                diagnostics=diagnostics,
            )

    async def _mark_stale(self, owner_id: str) -> bool:
        try:
            await self.repository.mark_stale_work_items(owner_id)
        except RepositoryUnavailableError:
            raise
        except RepositoryError as exc:
            logger.warning("mark_stale_work_items unavailable owner_id=%s error=%s", owner_id, exc)
            return False
        return True

    async def _load_upcoming_events(self, owner_id: str, now: datetime) -> list[UpcomingEvent]:
        adapter = self.adapters.get(SourceType.CALENDAR_EVENT)
        list_upcoming = getattr(adapter, "list_upcoming_events", None)
        if list_upcoming is None:
            return []
        try:
            return await list_upcoming(owner_id, now=now)
        except (SourceAdapterError, RepositoryError) as exc:
            logger.warning("upcoming events unavailable owner_id=%s error=%s", owner_id, exc)
            return []

    async def _load_links(self, owner_id: str) -> dict[SourceKey, EntityLink] | None:
        try:
            links = await self.repository.list_entity_links(owner_id)
        except RepositoryUnavailableError:
            raise
        except RepositoryError as exc:
            logger.warning("entity link lookup failed owner_id=%s error=%s; skipping link pruning", owner_id, exc)
            return None
        primary: dict[SourceKey, EntityLink] = {}
        for link in links:
            primary.setdefault(link.source_key, link)
        return primary

    async def _load_summaries(self, owner_id: str) -> dict[SourceKey, str] | None:
        try:
            extracts = await self.repository.list_summary_extracts(owner_id)
        except RepositoryUnavailableError:
            raise
        except RepositoryError as exc:
            logger.warning("summary lookup failed owner_id=%s error=%s; skipping summary pruning", owner_id, exc)
            return None
        summaries: dict[SourceKey, str] = {}
        for extract in extracts:
            one_liner = extract.one_liner
            if one_liner is not None:
                summaries.setdefault((extract.source_type, extract.source_id), one_liner)
        return summaries

    def _schedule_writebacks(self, owner_id: str, outcome: ReconciliationOutcome, now: datetime) -> int:
        dropped = 0
        for update in outcome.pruned:
            queued = self.writeback.submit(
                f"prune_reason_codes:{update.work_item_id}",
                partial(self.repository.update_reason_codes, owner_id, update.work_item_id, update.reason_codes),
            )
            dropped += 0 if queued else 1
        if outcome.resolved_ids:
            logger.info("auto-resolving work items owner_id=%s count=%s", owner_id, len(outcome.resolved_ids))
            queued = self.writeback.submit(
                f"auto_resolve:{owner_id}",
                partial(self.repository.mark_trusted, owner_id, list(outcome.resolved_ids), trusted_at=now),
            )
            dropped += 0 if queued else 1
        return dropped

    @staticmethod
    def _compose(
        item: ScoredItem,
        links: Mapping[SourceKey, EntityLink] | None,
        summaries: Mapping[SourceKey, str] | None,
    ) -> QueueEntry:
        key = item.work_item.source_key
        record = item.record
        return QueueEntry(
            scored=item,
            title=record.title if record is not None else "Untitled",
            snippet=record.snippet if record is not None else None,
            url=record.url if record is not None else None,
            primary_link=links.get(key) if links is not None else None,
            one_liner=summaries.get(key) if summaries is not None else None,
        )
