from __future__ import annotations

from datetime import datetime, timedelta, timezone

from focus_queue.services.insights import (
    QueueCounts,
    compute_counts,
    dominance_insight,
    effort_insight,
    generate_insights,
    generate_suggestions,
    minutes_until_next_event,
    timing_insight,
    window_effort,
)
from focus_queue.services.records import (
    EffortEstimate,
    ReasonCode,
    SourceType,
    UpcomingEvent,
    WorkItem,
    WorkItemStatus,
)
from focus_queue.services.scoring import ScoreBreakdown
from focus_queue.services.selection import ScoredItem

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


def _scored(
    item_id: str,
    source_type: SourceType,
    score: float,
    effort: EffortEstimate,
    reason_codes: list[str] | None = None,
) -> ScoredItem:
    work_item = WorkItem(
        id=item_id,
        owner_id="owner-1",
        source_type=source_type,
        source_id=item_id,
        status=WorkItemStatus.NEEDS_REVIEW,
        reason_codes=reason_codes or ["unlinked_company"],
        priority=1,
        created_at=NOW,
        updated_at=NOW,
    )
    breakdown = ScoreBreakdown(
        urgency=score,
        importance=score,
        commitment=0.0,
        recency=0.5,
        effort=effort,
        score=score,
    )
    return ScoredItem(work_item=work_item, breakdown=breakdown)


def _event_in(minutes: float) -> UpcomingEvent:
    return UpcomingEvent(title="Standup", start_at=NOW + timedelta(minutes=minutes))


def test_compute_counts_fills_every_bucket() -> None:
    items = [
        _scored("a", SourceType.EMAIL, 0.9, EffortEstimate.QUICK, ["unlinked_company", "missing_summary"]),
        _scored("b", SourceType.TASK, 0.5, EffortEstimate.LONG, ["unlinked_company", "legacy_code"]),
    ]

    counts = compute_counts(items)

    assert counts.total == 2
    assert counts.by_source[SourceType.EMAIL] == 1
    assert counts.by_source[SourceType.COMMITMENT] == 0
    assert counts.by_reason[ReasonCode.UNLINKED_COMPANY] == 2
    assert counts.by_reason[ReasonCode.MISSING_SUMMARY] == 1
    assert counts.by_reason[ReasonCode.NO_NEXT_ACTION] == 0
    assert counts.by_effort[EffortEstimate.MEDIUM] == 0


def test_effort_insight_text() -> None:
    counts = QueueCounts(total=3)
    counts.by_effort[EffortEstimate.QUICK] = 2
    counts.by_effort[EffortEstimate.MEDIUM] = 1

    insight = effort_insight(counts)

    assert insight is not None
    assert insight.text == "2 quick wins, 1 medium"
    assert insight.priority == 22


def test_dominance_requires_majority_and_two_items() -> None:
    counts = QueueCounts(total=4)
    counts.by_source[SourceType.EMAIL] = 3
    counts.by_source[SourceType.TASK] = 1

    insight = dominance_insight(counts)

    assert insight is not None
    assert insight.text == "Mostly email today (3 of 4)"
    assert insight.priority == 38

    even = QueueCounts(total=4)
    even.by_source[SourceType.EMAIL] = 2
    even.by_source[SourceType.TASK] = 2
    assert dominance_insight(even) is None

    single = QueueCounts(total=1)
    single.by_source[SourceType.NOTE] = 1
    assert dominance_insight(single) is None


def test_dominance_uses_calendar_label() -> None:
    counts = QueueCounts(total=3)
    counts.by_source[SourceType.CALENDAR_EVENT] = 2
    counts.by_source[SourceType.TASK] = 1

    insight = dominance_insight(counts)

    assert insight is not None
    assert insight.text == "Mostly calendar today (2 of 3)"


def test_timing_insight_window() -> None:
    soon = timing_insight([_event_in(12)], NOW)
    assert soon is not None
    assert soon.text == "Only 12m before next meeting"
    assert soon.priority == 96

    assert timing_insight([_event_in(45)], NOW) is None
    assert timing_insight([UpcomingEvent(title="Past", start_at=NOW - timedelta(minutes=5))], NOW) is None
    assert timing_insight([], NOW) is None


def test_minutes_until_next_event_picks_earliest_future_event() -> None:
    events = [_event_in(50), _event_in(-10), _event_in(20.5)]
    assert minutes_until_next_event(events, NOW) == 21


def test_window_effort_bands() -> None:
    assert window_effort(15) is EffortEstimate.QUICK
    assert window_effort(20) is EffortEstimate.QUICK
    assert window_effort(45) is EffortEstimate.MEDIUM
    assert window_effort(46) is EffortEstimate.LONG


def test_generate_insights_empty_queue() -> None:
    assert generate_insights([], QueueCounts(), [_event_in(10)], NOW) == []
    assert generate_suggestions([], QueueCounts(), [_event_in(10)], NOW) == []


def test_generate_insights_orders_by_priority() -> None:
    items = [
        _scored("a", SourceType.EMAIL, 0.95, EffortEstimate.QUICK),
        _scored("b", SourceType.EMAIL, 0.75, EffortEstimate.QUICK),
        _scored("c", SourceType.TASK, 0.4, EffortEstimate.MEDIUM),
    ]
    counts = compute_counts(items)

    insights = generate_insights(items, counts, [_event_in(10)], NOW)

    assert [insight.key for insight in insights] == ["timing", "urgent", "overdue", "dominance", "effort"]
    priorities = [insight.priority for insight in insights]
    assert priorities == sorted(priorities, reverse=True)
    assert insights[1].text == "2 urgent items need attention"
    assert insights[2].text == "1 likely overdue"


def test_generate_suggestions_caps_and_sorts() -> None:
    items = [_scored(f"e{n}", SourceType.EMAIL, 0.1, EffortEstimate.QUICK) for n in range(4)]
    items.append(_scored("hot", SourceType.TASK, 0.9, EffortEstimate.QUICK))
    counts = compute_counts(items)

    moves = generate_suggestions(items, counts, [_event_in(18)], NOW)

    assert [move.id for move in moves] == [
        "urgent-focus",
        "window-matched",
        "quick-clear",
        "batch-by-entity",
        "defer-low-priority",
    ]
    urgent, window, quick, batch, defer = moves
    assert urgent.time_estimate == "~5m"
    assert urgent.filters.min_score == 0.7
    assert window.label == "Fill 18m window with quick tasks"
    assert window.priority == 70
    assert quick.label == "Clear 5 quick wins"
    assert quick.time_estimate == "~25m"
    assert batch.label == "Batch 4 email items"
    assert batch.filters.source_types == [SourceType.EMAIL]
    assert defer.time_estimate == "~8m"
    assert defer.filters.max_score == 0.4


def test_window_move_needs_fifteen_minutes() -> None:
    items = [_scored("a", SourceType.TASK, 0.5, EffortEstimate.QUICK)]
    moves = generate_suggestions(items, compute_counts(items), [_event_in(10)], NOW)
    assert "window-matched" not in [move.id for move in moves]
