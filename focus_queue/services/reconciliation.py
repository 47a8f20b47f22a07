from __future__ import annotations

from collections.abc import Collection, Mapping, Sequence
from dataclasses import dataclass, field, replace

from focus_queue.services.records import ReasonCode, SourceKey, SourceRecord, WorkItem


@dataclass(slots=True)
class ReasonCodeUpdate:
    work_item_id: str
    reason_codes: list[str]


@dataclass(slots=True)
class ReconciliationOutcome:
    active: list[WorkItem] = field(default_factory=list)
    pruned: list[ReasonCodeUpdate] = field(default_factory=list)
    resolved_ids: list[str] = field(default_factory=list)


def reconcile(
    items: Sequence[WorkItem],
    *,
    linked_keys: Collection[SourceKey] | None,
    records: Mapping[SourceKey, SourceRecord],
    summary_keys: Collection[SourceKey] | None,
) -> ReconciliationOutcome:
    """Drop reason codes the underlying data no longer supports.

    ``linked_keys`` / ``summary_keys`` of ``None`` mean that lookup failed; the
    matching code is then left alone for this pass. Items whose codes are all
    gone are reported in ``resolved_ids`` and left out of ``active``.
    Input items are not mutated.
    """
    outcome = ReconciliationOutcome()

    for item in items:
        codes = list(item.reason_codes)
        changed = False

        if linked_keys is not None and ReasonCode.UNLINKED_COMPANY.value in codes:
            record = records.get(item.source_key)
            has_link = item.source_key in linked_keys or (record is not None and record.has_direct_link)
            if has_link:
                codes = [code for code in codes if code != ReasonCode.UNLINKED_COMPANY.value]
                changed = True

        if summary_keys is not None and ReasonCode.MISSING_SUMMARY.value in codes:
            if item.source_key in summary_keys:
                codes = [code for code in codes if code != ReasonCode.MISSING_SUMMARY.value]
                changed = True

        if not codes:
            outcome.resolved_ids.append(item.id)
            continue

        if changed:
            outcome.pruned.append(ReasonCodeUpdate(work_item_id=item.id, reason_codes=codes))
            item = replace(item, reason_codes=codes)
        outcome.active.append(item)

    return outcome
