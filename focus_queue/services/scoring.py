from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Literal

from focus_queue.services.records import EffortEstimate, SourceType

ScoringVariant = Literal["simple", "rich"]

SIMPLE_WEIGHTS = {"urgency": 0.60, "importance": 0.40}
RICH_WEIGHTS = {"urgency": 0.30, "importance": 0.25, "commitment": 0.25, "recency": 0.10}

DEFAULT_DIMENSION_SCORE = 0.3
NOTE_BASELINE = 0.2
READING_BASELINE = 0.25
CALENDAR_IMPORTANCE = 0.8

IMPLIED_URGENCY_SCORES = {
    "asap": 0.95,
    "today": 0.9,
    "this_week": 0.7,
    "next_week": 0.5,
    "this_month": 0.3,
    "when_possible": 0.2,
}
_PRESSING_URGENCY = {"asap", "today"}
_EFFORT_ORDER = {EffortEstimate.QUICK: 0, EffortEstimate.MEDIUM: 1, EffortEstimate.LONG: 2}


@dataclass(slots=True)
class ScoreSignal:
    source: str
    weight: float
    description: str


@dataclass(slots=True)
class ScoreBreakdown:
    urgency: float
    importance: float
    commitment: float
    recency: float
    effort: EffortEstimate
    score: float
    signals: list[ScoreSignal] = field(default_factory=list)


def combine_simple(urgency: float, importance: float) -> float:
    score = SIMPLE_WEIGHTS["urgency"] * urgency + SIMPLE_WEIGHTS["importance"] * importance
    return _clamp_score(score)


def combine_rich(
    urgency: float,
    importance: float,
    commitment: float = 0.0,
    recency: float = 0.5,
) -> float:
    """Normalized blend of the four weighted dimensions; effort never enters the score."""
    total_weight = sum(RICH_WEIGHTS.values())
    score = (
        RICH_WEIGHTS["urgency"] * urgency
        + RICH_WEIGHTS["importance"] * importance
        + RICH_WEIGHTS["commitment"] * commitment
        + RICH_WEIGHTS["recency"] * recency
    ) / total_weight
    return _clamp_score(score)


def email_urgency(received_at: Any, *, now: datetime) -> float:
    received = parse_timestamp(received_at)
    if received is None:
        return 0.5
    hours_old = (now - received).total_seconds() / 3600.0
    if hours_old < 4:
        return 1.0
    if hours_old < 24:
        return 0.8
    if hours_old < 48:
        return 0.6
    if hours_old < 72:
        return 0.4
    return 0.2


def email_importance(is_read: bool) -> float:
    return 0.7 if is_read else 0.9


def task_urgency(scheduled_for: Any, *, now: datetime) -> float:
    due = parse_timestamp(scheduled_for)
    if due is None:
        return 0.2
    days_until_due = (due.date() - now.date()).days
    if days_until_due < 0:
        return min(1.0, 0.9 + abs(days_until_due) * 0.02)
    if days_until_due == 0:
        return 0.9
    if days_until_due == 1:
        return 0.7
    if days_until_due <= 3:
        return 0.5
    if days_until_due <= 7:
        return 0.3
    return 0.1


def task_importance(priority: str | None) -> float:
    if priority == "high":
        return 1.0
    if priority == "medium":
        return 0.6
    if priority == "low":
        return 0.3
    return 0.5


def calendar_urgency(start_at: Any, end_at: Any = None, *, now: datetime) -> float:
    start = parse_timestamp(start_at)
    if start is None:
        return 0.5
    end = parse_timestamp(end_at)
    if now >= start:
        if end is not None and now < end:
            return 1.0
        return 0.0
    hours_until = (start - now).total_seconds() / 3600.0
    if hours_until < 1:
        return 1.0
    if hours_until < 2:
        return 0.95
    if hours_until < 4:
        return 0.8
    if hours_until < 24:
        return 0.6
    if hours_until < 48:
        return 0.4
    return 0.2


def commitment_urgency(
    direction: str | None,
    due_at: Any,
    expected_by: Any,
    implied_urgency: str | None,
    *,
    now: datetime,
) -> float:
    if direction == "owed_to_me":
        dated = expected_by or due_at
    else:
        dated = due_at or expected_by

    if parse_timestamp(dated) is not None:
        factor = 1.0
        if implied_urgency in _PRESSING_URGENCY:
            factor = 1.2
        elif implied_urgency == "when_possible":
            factor = 0.8
        return min(1.0, task_urgency(dated, now=now) * factor)

    if implied_urgency in IMPLIED_URGENCY_SCORES:
        return IMPLIED_URGENCY_SCORES[implied_urgency]
    return 0.5


def commitment_importance(direction: str | None, is_vip: bool, implied_urgency: str | None) -> float:
    base = 0.6
    if direction == "owed_by_me":
        base = 0.7
    elif direction == "owed_to_me":
        base = 0.5

    if is_vip:
        base += 0.15
    if implied_urgency in _PRESSING_URGENCY:
        base += 0.1
    elif implied_urgency == "when_possible":
        base -= 0.05
    return max(0.0, min(1.0, base))


def recency_score(timestamp: Any, *, now: datetime) -> float:
    moment = parse_timestamp(timestamp)
    if moment is None:
        return 0.5
    days_since = math.trunc((now - moment).total_seconds() / 86400.0)
    if days_since <= 0:
        return 1.0
    if days_since <= 1:
        return 0.8
    if days_since <= 3:
        return 0.5
    if days_since <= 7:
        return 0.3
    return 0.1


def commitment_weight(source_type: SourceType, inputs: Mapping[str, Any]) -> float:
    if source_type is SourceType.COMMITMENT:
        score = 0.95 if inputs.get("person_name") else 0.85
        if inputs.get("company_kind") == "portfolio":
            score = min(1.0, score + 0.05)
        return score
    if source_type is SourceType.CALENDAR_EVENT:
        attendee_count = _as_int(inputs.get("attendee_count"))
        if attendee_count >= 5:
            return 1.0
        if attendee_count >= 2:
            return 0.9
        return 0.8
    return 0.0


def estimate_effort(source_type: SourceType, inputs: Mapping[str, Any] | None) -> EffortEstimate:
    if inputs is None:
        return EffortEstimate.MEDIUM

    if source_type is SourceType.EMAIL:
        heaviest: EffortEstimate | None = None
        buckets = inputs.get("effort_buckets")
        for raw in buckets if isinstance(buckets, list) else []:
            bucket = _as_effort(raw)
            if bucket is None:
                continue
            if heaviest is None or _EFFORT_ORDER[bucket] > _EFFORT_ORDER[heaviest]:
                heaviest = bucket
        return heaviest or EffortEstimate.QUICK
    if source_type is SourceType.CALENDAR_EVENT:
        return EffortEstimate.MEDIUM
    if source_type is SourceType.TASK:
        return EffortEstimate.QUICK if inputs.get("is_quick_task") else EffortEstimate.MEDIUM
    if source_type is SourceType.NOTE:
        return EffortEstimate.QUICK
    if source_type is SourceType.READING:
        return EffortEstimate.LONG if inputs.get("processing_status") == "unprocessed" else EffortEstimate.MEDIUM
    if source_type is SourceType.COMMITMENT:
        if inputs.get("direction") == "owed_by_me" and inputs.get("implied_urgency") in _PRESSING_URGENCY:
            return EffortEstimate.MEDIUM
        return EffortEstimate.QUICK
    return EffortEstimate.MEDIUM


def score_source(
    source_type: SourceType,
    inputs: Mapping[str, Any] | None,
    *,
    now: datetime,
    variant: ScoringVariant = "simple",
) -> ScoreBreakdown:
    """Score one source record. ``inputs=None`` means the adapter had nothing for it."""
    if inputs is None:
        urgency = importance = DEFAULT_DIMENSION_SCORE
        signals = [
            ScoreSignal(source="urgency", weight=urgency, description="Source data unavailable"),
            ScoreSignal(source="importance", weight=importance, description="Source data unavailable"),
        ]
        commitment = 0.0
        recency = 0.5
    else:
        urgency, importance, signals = _base_dimensions(source_type, inputs, now=now)
        commitment = commitment_weight(source_type, inputs)
        recency = recency_score(_activity_timestamp(source_type, inputs), now=now)

    if variant == "rich":
        score = combine_rich(urgency, importance, commitment, recency)
        if commitment > 0:
            signals.append(ScoreSignal(source="commitment", weight=commitment, description="Commitment factor"))
        signals.append(ScoreSignal(source="recency", weight=recency, description="Recency factor"))
    else:
        score = combine_simple(urgency, importance)

    return ScoreBreakdown(
        urgency=urgency,
        importance=importance,
        commitment=commitment,
        recency=recency,
        effort=estimate_effort(source_type, inputs),
        score=score,
        signals=signals,
    )


def _base_dimensions(
    source_type: SourceType,
    inputs: Mapping[str, Any],
    *,
    now: datetime,
) -> tuple[float, float, list[ScoreSignal]]:
    if source_type is SourceType.EMAIL:
        is_read = bool(inputs.get("is_read"))
        urgency = email_urgency(inputs.get("received_at"), now=now)
        importance = email_importance(is_read)
        return urgency, importance, [
            ScoreSignal("urgency", urgency, _received_description(inputs.get("received_at"), now=now)),
            ScoreSignal("importance", importance, "Read" if is_read else "Unread"),
        ]

    if source_type is SourceType.TASK:
        priority = inputs.get("priority") if isinstance(inputs.get("priority"), str) else None
        urgency = task_urgency(inputs.get("scheduled_for"), now=now)
        importance = task_importance(priority)
        return urgency, importance, [
            ScoreSignal("urgency", urgency, _due_description(inputs.get("scheduled_for"), now=now)),
            ScoreSignal("importance", importance, f"{priority.capitalize()} priority" if priority else "No priority set"),
        ]

    if source_type is SourceType.CALENDAR_EVENT:
        urgency = calendar_urgency(inputs.get("start_at"), inputs.get("end_at"), now=now)
        return urgency, CALENDAR_IMPORTANCE, [
            ScoreSignal("urgency", urgency, _start_description(inputs.get("start_at"), now=now)),
            ScoreSignal("importance", CALENDAR_IMPORTANCE, "Calendar event"),
        ]

    if source_type is SourceType.COMMITMENT:
        direction = inputs.get("direction")
        implied = inputs.get("implied_urgency")
        urgency = commitment_urgency(
            direction,
            inputs.get("due_at"),
            inputs.get("expected_by"),
            implied,
            now=now,
        )
        importance = commitment_importance(direction, bool(inputs.get("is_vip")), implied)
        owes = "You owe this" if direction == "owed_by_me" else "Owed to you" if direction == "owed_to_me" else "Commitment"
        return urgency, importance, [
            ScoreSignal("urgency", urgency, _due_description(inputs.get("due_at") or inputs.get("expected_by"), now=now)),
            ScoreSignal("importance", importance, f"{owes} (VIP)" if inputs.get("is_vip") else owes),
        ]

    if source_type is SourceType.READING:
        return READING_BASELINE, READING_BASELINE, [
            ScoreSignal("urgency", READING_BASELINE, "Reading list"),
            ScoreSignal("importance", READING_BASELINE, "Reading list"),
        ]

    return NOTE_BASELINE, NOTE_BASELINE, [
        ScoreSignal("urgency", NOTE_BASELINE, "Note"),
        ScoreSignal("importance", NOTE_BASELINE, "Note"),
    ]


def _activity_timestamp(source_type: SourceType, inputs: Mapping[str, Any]) -> Any:
    if inputs.get("activity_at") is not None:
        return inputs.get("activity_at")
    if source_type is SourceType.EMAIL:
        return inputs.get("received_at")
    if source_type is SourceType.CALENDAR_EVENT:
        return inputs.get("start_at")
    return inputs.get("updated_at")


def _received_description(value: Any, *, now: datetime) -> str:
    received = parse_timestamp(value)
    if received is None:
        return "Received time unknown"
    days_old = int((now - received).total_seconds() // 86400)
    if days_old <= 0:
        return "Received today"
    if days_old == 1:
        return "Received yesterday"
    return f"Received {days_old} days ago"


def _due_description(value: Any, *, now: datetime) -> str:
    due = parse_timestamp(value)
    if due is None:
        return "No due date"
    days_until_due = (due.date() - now.date()).days
    if days_until_due < 0:
        overdue = abs(days_until_due)
        return f"Overdue by {overdue} day{'s' if overdue != 1 else ''}"
    if days_until_due == 0:
        return "Due today"
    if days_until_due == 1:
        return "Due tomorrow"
    return f"Due in {days_until_due} days"


def _start_description(value: Any, *, now: datetime) -> str:
    start = parse_timestamp(value)
    if start is None:
        return "Start time unknown"
    minutes_until = int((start - now).total_seconds() // 60)
    if minutes_until < 0:
        return "Already started"
    if minutes_until < 60:
        return f"Starts in {minutes_until} minute{'s' if minutes_until != 1 else ''}"
    hours_until = minutes_until // 60
    if hours_until < 24:
        return f"Starts in {hours_until} hour{'s' if hours_until != 1 else ''}"
    days_until = hours_until // 24
    return f"Starts in {days_until} day{'s' if days_until != 1 else ''}"


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _as_effort(value: Any) -> EffortEstimate | None:
    try:
        return EffortEstimate(value)
    except ValueError:
        return None


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _clamp_score(score: float) -> float:
    return round(max(0.0, min(1.0, score)), 6)
