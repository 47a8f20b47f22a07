from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from focus_queue.services.records import EffortEstimate, SourceRecord, SourceType, WorkItem
from focus_queue.services.scoring import ScoreBreakdown

DEFAULT_MAX_ITEMS = 12
DEFAULT_MAX_PER_SOURCE = 4
DEFAULT_MIN_SCORE = 0.2


@dataclass(slots=True)
class ScoredItem:
    work_item: WorkItem
    breakdown: ScoreBreakdown
    record: SourceRecord | None = None

    @property
    def source_type(self) -> SourceType:
        return self.work_item.source_type

    @property
    def score(self) -> float:
        return self.breakdown.score

    @property
    def effort(self) -> EffortEstimate:
        return self.breakdown.effort


@dataclass(slots=True)
class SelectionResult:
    selected: list[ScoredItem]
    below_threshold: int = 0
    skipped_for_diversity: int = 0
    distribution: dict[SourceType, int] = field(default_factory=dict)


def filter_items(
    items: Iterable[ScoredItem],
    *,
    source_types: Sequence[SourceType] | None = None,
    reason_codes: Sequence[str] | None = None,
    effort: EffortEstimate | None = None,
) -> list[ScoredItem]:
    wanted_types = set(source_types) if source_types else None
    wanted_codes = set(reason_codes) if reason_codes else None
    filtered: list[ScoredItem] = []
    for item in items:
        if wanted_types is not None and item.source_type not in wanted_types:
            continue
        if wanted_codes is not None and not wanted_codes.intersection(item.work_item.reason_codes):
            continue
        if effort is not None and item.effort is not effort:
            continue
        filtered.append(item)
    return filtered


def select_items(
    items: Sequence[ScoredItem],
    *,
    max_items: int = DEFAULT_MAX_ITEMS,
    max_per_source: int = DEFAULT_MAX_PER_SOURCE,
    min_score: float = DEFAULT_MIN_SCORE,
    diversity: bool = True,
) -> SelectionResult:
    """Pick the queue from ``items`` given in creation order.

    ``sorted`` is stable, so equal scores keep creation order and repeated
    reads over the same input select the same items.
    """
    eligible = [item for item in items if item.score >= min_score]
    below_threshold = len(items) - len(eligible)
    ranked = sorted(eligible, key=lambda item: item.score, reverse=True)

    distribution = {source_type: 0 for source_type in SourceType}
    selected: list[ScoredItem] = []
    skipped_for_diversity = 0

    for item in ranked:
        if len(selected) >= max(0, max_items):
            break
        if diversity and distribution[item.source_type] >= max_per_source:
            skipped_for_diversity += 1
            continue
        selected.append(item)
        distribution[item.source_type] += 1

    return SelectionResult(
        selected=selected,
        below_threshold=below_threshold,
        skipped_for_diversity=skipped_for_diversity,
        distribution=distribution,
    )
