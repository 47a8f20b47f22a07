from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from focus_queue.services.records import ReasonCode, SourceType, WorkItemStatus

LinkTargetType = Literal["company", "project", "pipeline_company"]


class WorkItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    source_type: SourceType
    source_id: str
    status: WorkItemStatus
    reason_codes: list[str] = Field(default_factory=list)
    priority: int
    snooze_until: datetime | None = None
    last_touched_at: datetime | None = None
    reviewed_at: datetime | None = None
    trusted_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class EnsureWorkItemRequest(BaseModel):
    source_type: SourceType
    source_id: str = Field(min_length=1)


class EnsureWorkItemOut(BaseModel):
    work_item: WorkItemOut
    is_new: bool


class BackfillRequest(BaseModel):
    sources: dict[SourceType, list[str]] = Field(default_factory=dict)


class BackfillOut(BaseModel):
    created: int


class SnoozeRequest(BaseModel):
    until: datetime


class ReopenRequest(BaseModel):
    reason_codes: list[ReasonCode] = Field(min_length=1)


class LinkEntityRequest(BaseModel):
    target_type: LinkTargetType
    target_id: str = Field(min_length=1)


class StatusCountsOut(BaseModel):
    needs_review: int
    snoozed: int
    enriched_pending: int
    trusted: int
    ignored: int
    all_clear: bool
