from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from focus_queue.services.records import EffortEstimate, ReasonCode, SourceType, UpcomingEvent
from focus_queue.services.selection import ScoredItem

Tone = Literal["neutral", "warn", "urgent"]

URGENT_SCORE = 0.7
OVERDUE_SCORE = 0.9
LOW_PRIORITY_SCORE = 0.4
TIMING_RISK_MINUTES = 30
MIN_WINDOW_MINUTES = 15
MAX_SUGGESTIONS = 5

EFFORT_MINUTES = {
    EffortEstimate.QUICK: 5,
    EffortEstimate.MEDIUM: 15,
    EffortEstimate.LONG: 30,
}

SOURCE_LABELS = {
    SourceType.EMAIL: "email",
    SourceType.CALENDAR_EVENT: "calendar",
    SourceType.TASK: "task",
    SourceType.NOTE: "note",
    SourceType.READING: "reading",
    SourceType.COMMITMENT: "commitment",
}


@dataclass(slots=True)
class QueueCounts:
    total: int = 0
    by_source: dict[SourceType, int] = field(default_factory=lambda: {source: 0 for source in SourceType})
    by_reason: dict[ReasonCode, int] = field(default_factory=lambda: {code: 0 for code in ReasonCode})
    by_effort: dict[EffortEstimate, int] = field(default_factory=lambda: {effort: 0 for effort in EffortEstimate})


@dataclass(slots=True)
class Insight:
    key: str
    text: str
    tone: Tone
    priority: int


@dataclass(slots=True)
class GuidedFilters:
    source_types: list[SourceType] | None = None
    effort: EffortEstimate | None = None
    min_score: float | None = None
    max_score: float | None = None


@dataclass(slots=True)
class SuggestedMove:
    id: str
    label: str
    time_estimate: str
    rationale: str
    priority: int
    filters: GuidedFilters


def compute_counts(items: Sequence[ScoredItem]) -> QueueCounts:
    counts = QueueCounts(total=len(items))
    for item in items:
        counts.by_source[item.source_type] += 1
        counts.by_effort[item.effort] += 1
        for code in item.work_item.reason_codes:
            try:
                counts.by_reason[ReasonCode(code)] += 1
            except ValueError:
                continue
    return counts


def urgent_insight(items: Sequence[ScoredItem]) -> Insight | None:
    urgent = sum(1 for item in items if item.score >= URGENT_SCORE)
    if urgent == 0:
        return None
    return Insight(
        key="urgent",
        text=f"{urgent} urgent item{_plural(urgent)} need attention",
        tone="urgent",
        priority=80 + min(urgent, 10),
    )


def overdue_insight(items: Sequence[ScoredItem]) -> Insight | None:
    overdue = sum(1 for item in items if item.score >= OVERDUE_SCORE)
    if overdue == 0:
        return None
    return Insight(
        key="overdue",
        text=f"{overdue} likely overdue",
        tone="warn",
        priority=70 + min(overdue, 10),
    )


def effort_insight(counts: QueueCounts) -> Insight | None:
    quick = counts.by_effort[EffortEstimate.QUICK]
    medium = counts.by_effort[EffortEstimate.MEDIUM]
    long_count = counts.by_effort[EffortEstimate.LONG]
    parts: list[str] = []
    if quick:
        parts.append(f"{quick} quick win{_plural(quick)}")
    if medium:
        parts.append(f"{medium} medium")
    if long_count:
        parts.append(f"{long_count} long")
    if not parts:
        return None
    return Insight(key="effort", text=", ".join(parts), tone="neutral", priority=20 + min(quick, 10))


def dominance_insight(counts: QueueCounts) -> Insight | None:
    if counts.total <= 0:
        return None
    dominant, dominant_count = SourceType.EMAIL, counts.by_source[SourceType.EMAIL]
    for source_type, count in counts.by_source.items():
        if count > dominant_count:
            dominant, dominant_count = source_type, count
    if dominant_count <= counts.total * 0.5 or dominant_count < 2:
        return None
    ratio = dominant_count / counts.total
    return Insight(
        key="dominance",
        text=f"Mostly {SOURCE_LABELS[dominant]} today ({dominant_count} of {counts.total})",
        tone="neutral",
        priority=30 + round(ratio * 10),
    )


def timing_insight(events: Sequence[UpcomingEvent], now: datetime) -> Insight | None:
    minutes = minutes_until_next_event(events, now)
    if minutes is None or not 0 < minutes < TIMING_RISK_MINUTES:
        return None
    return Insight(
        key="timing",
        text=f"Only {minutes}m before next meeting",
        tone="warn",
        priority=90 + (TIMING_RISK_MINUTES - minutes) // 3,
    )


def generate_insights(
    items: Sequence[ScoredItem],
    counts: QueueCounts,
    events: Sequence[UpcomingEvent],
    now: datetime,
) -> list[Insight]:
    if not items:
        return []
    candidates = [
        urgent_insight(items),
        overdue_insight(items),
        effort_insight(counts),
        dominance_insight(counts),
        timing_insight(events, now),
    ]
    insights = [insight for insight in candidates if insight is not None]
    return sorted(insights, key=lambda insight: insight.priority, reverse=True)


def urgent_focus_move(items: Sequence[ScoredItem]) -> SuggestedMove | None:
    critical = [item for item in items if item.score >= URGENT_SCORE]
    if not critical:
        return None
    return SuggestedMove(
        id="urgent-focus",
        label=f"Tackle {len(critical)} urgent item{_plural(len(critical))}",
        time_estimate=estimate_time(critical),
        rationale="These have the highest priority scores and need immediate attention",
        priority=80 + min(len(critical), 10),
        filters=GuidedFilters(min_score=URGENT_SCORE),
    )


def window_matched_move(
    items: Sequence[ScoredItem],
    events: Sequence[UpcomingEvent],
    now: datetime,
) -> SuggestedMove | None:
    window = minutes_until_next_event(events, now)
    if window is None or window < MIN_WINDOW_MINUTES:
        return None
    effort = window_effort(window)
    matching = sum(1 for item in items if item.effort is effort)
    if matching == 0:
        return None
    return SuggestedMove(
        id="window-matched",
        label=f"Fill {window}m window with {effort.value} tasks",
        time_estimate=f"~{window}m",
        rationale=f"{matching} {effort.value} item{_plural(matching)} fit this window",
        priority=60 + min(matching * 2, 15),
        filters=GuidedFilters(effort=effort),
    )


def quick_clear_move(items: Sequence[ScoredItem]) -> SuggestedMove | None:
    quick = sum(1 for item in items if item.effort is EffortEstimate.QUICK)
    if quick < 2:
        return None
    return SuggestedMove(
        id="quick-clear",
        label=f"Clear {quick} quick wins",
        time_estimate=f"~{quick * EFFORT_MINUTES[EffortEstimate.QUICK]}m",
        rationale="Knock out fast items to build momentum",
        priority=50 + min(quick, 10),
        filters=GuidedFilters(effort=EffortEstimate.QUICK),
    )


def batch_by_entity_move(counts: QueueCounts) -> SuggestedMove | None:
    batchable = [(source_type, count) for source_type, count in counts.by_source.items() if count >= 4]
    if not batchable:
        return None
    source_type, count = sorted(batchable, key=lambda entry: entry[1], reverse=True)[0]
    return SuggestedMove(
        id="batch-by-entity",
        label=f"Batch {count} {SOURCE_LABELS[source_type]} items",
        time_estimate=f"~{count * EFFORT_MINUTES[EffortEstimate.QUICK]}m",
        rationale="Group similar items for faster processing",
        priority=40 + min(count, 10),
        filters=GuidedFilters(source_types=[source_type]),
    )


def defer_low_priority_move(items: Sequence[ScoredItem]) -> SuggestedMove | None:
    low = sum(1 for item in items if item.score < LOW_PRIORITY_SCORE)
    if low < 3:
        return None
    return SuggestedMove(
        id="defer-low-priority",
        label=f"Review {low} low-priority items",
        time_estimate=f"~{low * 2}m",
        rationale="Snooze or dismiss items that can wait",
        priority=30,
        filters=GuidedFilters(max_score=LOW_PRIORITY_SCORE),
    )


def generate_suggestions(
    items: Sequence[ScoredItem],
    counts: QueueCounts,
    events: Sequence[UpcomingEvent],
    now: datetime,
) -> list[SuggestedMove]:
    if not items:
        return []
    candidates = [
        urgent_focus_move(items),
        window_matched_move(items, events, now),
        quick_clear_move(items),
        batch_by_entity_move(counts),
        defer_low_priority_move(items),
    ]
    moves = [move for move in candidates if move is not None]
    return sorted(moves, key=lambda move: move.priority, reverse=True)[:MAX_SUGGESTIONS]


def minutes_until_next_event(events: Sequence[UpcomingEvent], now: datetime) -> int | None:
    upcoming = sorted((event.start_at for event in events if event.start_at > now))
    if not upcoming:
        return None
    return _round_half_up((upcoming[0] - now).total_seconds() / 60.0)


def window_effort(minutes: int) -> EffortEstimate:
    if minutes <= 20:
        return EffortEstimate.QUICK
    if minutes <= 45:
        return EffortEstimate.MEDIUM
    return EffortEstimate.LONG


def estimate_time(items: Sequence[ScoredItem]) -> str:
    return f"~{sum(EFFORT_MINUTES[item.effort] for item in items)}m"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _plural(count: int) -> str:
    return "" if count == 1 else "s"
