from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SourceType(str, Enum):
    EMAIL = "email"
    CALENDAR_EVENT = "calendar_event"
    TASK = "task"
    NOTE = "note"
    READING = "reading"
    COMMITMENT = "commitment"


class WorkItemStatus(str, Enum):
    NEEDS_REVIEW = "needs_review"
    ENRICHED_PENDING = "enriched_pending"
    TRUSTED = "trusted"
    SNOOZED = "snoozed"
    IGNORED = "ignored"


class ReasonCode(str, Enum):
    UNLINKED_COMPANY = "unlinked_company"
    MISSING_SUMMARY = "missing_summary"
    NO_NEXT_ACTION = "no_next_action"


class EffortEstimate(str, Enum):
    QUICK = "quick"
    MEDIUM = "medium"
    LONG = "long"


ACTIVE_STATUSES = (
    WorkItemStatus.NEEDS_REVIEW,
    WorkItemStatus.ENRICHED_PENDING,
    WorkItemStatus.SNOOZED,
)

SourceKey = tuple[SourceType, str]


@dataclass(slots=True)
class WorkItem:
    id: str
    owner_id: str
    source_type: SourceType
    source_id: str
    status: WorkItemStatus
    reason_codes: list[str]
    priority: int
    created_at: datetime
    updated_at: datetime
    snooze_until: datetime | None = None
    last_touched_at: datetime | None = None
    reviewed_at: datetime | None = None
    trusted_at: datetime | None = None

    @property
    def source_key(self) -> SourceKey:
        return (self.source_type, self.source_id)

    def effective_status(self, now: datetime) -> WorkItemStatus:
        """Snoozes lapse at read time; an expired snooze reads as needs_review.

        A snoozed row without ``snooze_until`` stays hidden until a user acts on it.
        """
        if self.status is WorkItemStatus.SNOOZED and self.snooze_until is not None and self.snooze_until <= now:
            return WorkItemStatus.NEEDS_REVIEW
        return self.status

    def is_queue_active(self, now: datetime) -> bool:
        return self.effective_status(now) in {WorkItemStatus.NEEDS_REVIEW, WorkItemStatus.ENRICHED_PENDING}


@dataclass(slots=True)
class EntityLink:
    owner_id: str
    source_type: SourceType
    source_id: str
    target_type: str
    target_id: str
    reason: str
    confidence: float
    created_at: datetime | None = None

    @property
    def source_key(self) -> SourceKey:
        return (self.source_type, self.source_id)


@dataclass(slots=True)
class LinkProposal:
    target_type: str
    target_id: str
    reason: str
    confidence: float


@dataclass(slots=True)
class SourceRecord:
    """Normalized view of a domain record returned by a source adapter."""

    id: str
    title: str
    snippet: str | None = None
    url: str | None = None
    scoring_inputs: dict[str, Any] = field(default_factory=dict)
    has_direct_link: bool = False
    direct_links: list[LinkProposal] = field(default_factory=list)
    contact_emails: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RegistryCompany:
    id: str
    name: str
    primary_domain: str | None
    kind: str


@dataclass(slots=True)
class CompanyRegistry:
    portfolio: list[RegistryCompany] = field(default_factory=list)
    pipeline: list[RegistryCompany] = field(default_factory=list)

    def iter_companies(self) -> list[RegistryCompany]:
        return [*self.portfolio, *self.pipeline]


@dataclass(slots=True)
class ItemExtract:
    owner_id: str
    source_type: SourceType
    source_id: str
    extract_type: str
    content: dict[str, Any]
    created_at: datetime | None = None

    @property
    def one_liner(self) -> str | None:
        value = self.content.get("one_liner")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None


@dataclass(slots=True)
class UpcomingEvent:
    title: str
    start_at: datetime
    end_at: datetime | None = None


def coerce_source_type(value: Any) -> SourceType | None:
    if isinstance(value, SourceType):
        return value
    try:
        return SourceType(str(value))
    except ValueError:
        return None


def dedupe_reason_codes(codes: list[str]) -> list[str]:
    seen: set[str] = set()
    deduped: list[str] = []
    for code in codes:
        normalized = (code.value if isinstance(code, ReasonCode) else str(code)).strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return deduped
