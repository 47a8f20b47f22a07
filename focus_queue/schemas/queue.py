from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from focus_queue.schemas.work_items import WorkItemOut
from focus_queue.services.queue import QueueEntry, QueueSnapshot
from focus_queue.services.records import EffortEstimate, ReasonCode, SourceType


class ScoreSignalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    source: str
    weight: float
    description: str


class ScoreOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    score: float
    urgency: float
    importance: float
    commitment: float
    recency: float
    effort: EffortEstimate
    signals: list[ScoreSignalOut] = Field(default_factory=list)


class EntityLinkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    target_type: str
    target_id: str
    reason: str
    confidence: float


class QueueItemOut(BaseModel):
    work_item: WorkItemOut
    title: str
    snippet: str | None = None
    url: str | None = None
    one_liner: str | None = None
    primary_link: EntityLinkOut | None = None
    score: ScoreOut

    @classmethod
    def from_entry(cls, entry: QueueEntry) -> "QueueItemOut":
        return cls(
            work_item=WorkItemOut.model_validate(entry.scored.work_item),
            title=entry.title,
            snippet=entry.snippet,
            url=entry.url,
            one_liner=entry.one_liner,
            primary_link=EntityLinkOut.model_validate(entry.primary_link) if entry.primary_link else None,
            score=ScoreOut.model_validate(entry.scored.breakdown),
        )


class QueueCountsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    by_source: dict[SourceType, int]
    by_reason: dict[ReasonCode, int]
    by_effort: dict[EffortEstimate, int]


class InsightOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    text: str
    tone: Literal["neutral", "warn", "urgent"]
    priority: int


class GuidedFiltersOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    source_types: list[SourceType] | None = None
    effort: EffortEstimate | None = None
    min_score: float | None = None
    max_score: float | None = None


class SuggestedMoveOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    label: str
    time_estimate: str
    rationale: str
    priority: int
    filters: GuidedFiltersOut


class QueueDiagnosticsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    active_count: int
    pruned_count: int
    resolved_count: int
    filtered_count: int
    below_threshold: int
    skipped_for_diversity: int
    failed_sources: list[SourceType] = Field(default_factory=list)
    links_available: bool
    summaries_available: bool
    stale_marking_available: bool
    writebacks_dropped: int


class QueueOut(BaseModel):
    generated_at: datetime
    all_clear: bool
    items: list[QueueItemOut] = Field(default_factory=list)
    counts: QueueCountsOut
    distribution: dict[SourceType, int]
    insights: list[InsightOut] = Field(default_factory=list)
    suggestions: list[SuggestedMoveOut] = Field(default_factory=list)
    diagnostics: QueueDiagnosticsOut

    @classmethod
    def from_snapshot(cls, snapshot: QueueSnapshot) -> "QueueOut":
        return cls(
            generated_at=snapshot.generated_at,
            all_clear=snapshot.all_clear,
            items=[QueueItemOut.from_entry(entry) for entry in snapshot.items],
            counts=QueueCountsOut.model_validate(snapshot.counts),
            distribution=snapshot.distribution,
            insights=[InsightOut.model_validate(insight) for insight in snapshot.insights],
            suggestions=[SuggestedMoveOut.model_validate(move) for move in snapshot.suggestions],
            diagnostics=QueueDiagnosticsOut.model_validate(snapshot.diagnostics),
        )
