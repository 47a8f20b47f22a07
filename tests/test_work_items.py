from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

import pytest

from focus_queue.services.adapters import SourceAdapterError
from focus_queue.services.records import (
    CompanyRegistry,
    LinkProposal,
    RegistryCompany,
    SourceRecord,
    SourceType,
    WorkItemStatus,
)
from focus_queue.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from focus_queue.services.store import InMemoryRepository
from focus_queue.services.work_items import WorkItemService, can_transition

OWNER = "owner-1"
NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


class FakeAdapter:
    def __init__(self, records: dict[str, SourceRecord] | None = None, *, error: str | None = None) -> None:
        self.records = records or {}
        self.error = error
        self.calls: list[list[str]] = []

    async def fetch_records(self, owner_id: str, source_ids: Sequence[str]) -> dict[str, SourceRecord]:
        self.calls.append(list(source_ids))
        await asyncio.sleep(0)
        if self.error:
            raise SourceAdapterError(self.error)
        return {source_id: self.records[source_id] for source_id in source_ids if source_id in self.records}


def _service(adapters: dict[SourceType, FakeAdapter]) -> tuple[WorkItemService, InMemoryRepository]:
    repository = InMemoryRepository()
    repository.registries[OWNER] = CompanyRegistry(
        portfolio=[RegistryCompany(id="co-acme", name="Acme", primary_domain="acme.io", kind="portfolio")]
    )
    return WorkItemService(repository, adapters), repository


def _email_adapter() -> FakeAdapter:
    return FakeAdapter(
        {
            "m1": SourceRecord(id="m1", title="Intro", contact_emails=["founder@acme.io"]),
            "m2": SourceRecord(id="m2", title="Hello", contact_emails=["friend@gmail.com"]),
        }
    )


def _task_adapter() -> FakeAdapter:
    return FakeAdapter(
        {
            "t1": SourceRecord(
                id="t1",
                title="Send deck",
                has_direct_link=True,
                direct_links=[LinkProposal(target_type="project", target_id="p1", reason="project", confidence=1.0)],
            ),
            "t2": SourceRecord(id="t2", title="Loose task"),
        }
    )


def test_transition_table() -> None:
    assert can_transition(WorkItemStatus.NEEDS_REVIEW, WorkItemStatus.TRUSTED)
    assert can_transition(WorkItemStatus.SNOOZED, WorkItemStatus.NEEDS_REVIEW)
    assert can_transition(WorkItemStatus.TRUSTED, WorkItemStatus.NEEDS_REVIEW)
    assert not can_transition(WorkItemStatus.TRUSTED, WorkItemStatus.SNOOZED)
    assert not can_transition(WorkItemStatus.IGNORED, WorkItemStatus.NEEDS_REVIEW)


def test_ensure_creates_email_with_domain_link() -> None:
    service, repository = _service({SourceType.EMAIL: _email_adapter()})

    result = asyncio.run(service.ensure_work_item(OWNER, SourceType.EMAIL, "m1"))

    assert result.is_new is True
    assert result.work_item.status is WorkItemStatus.NEEDS_REVIEW
    assert result.work_item.reason_codes == ["missing_summary"]
    assert result.work_item.priority == 5
    links = list(repository.entity_links.values())
    assert [(link.target_id, link.reason, link.confidence) for link in links] == [("co-acme", "domain_match", 0.9)]


def test_ensure_trusts_fully_linked_task() -> None:
    service, repository = _service({SourceType.TASK: _task_adapter()})

    result = asyncio.run(service.ensure_work_item(OWNER, SourceType.TASK, "t1"))

    assert result.work_item.status is WorkItemStatus.TRUSTED
    assert result.work_item.reason_codes == []
    assert result.work_item.trusted_at is not None
    assert len(repository.entity_links) == 1


def test_ensure_is_idempotent() -> None:
    adapter = _email_adapter()
    service, repository = _service({SourceType.EMAIL: adapter})

    async def scenario():
        first = await service.ensure_work_item(OWNER, SourceType.EMAIL, "m2")
        second = await service.ensure_work_item(OWNER, SourceType.EMAIL, "m2")
        return first, second

    first, second = asyncio.run(scenario())

    assert first.is_new is True
    assert second.is_new is False
    assert second.work_item.id == first.work_item.id
    assert second.work_item.reason_codes == ["unlinked_company", "missing_summary"]
    assert len(repository.work_items) == 1
    assert len(adapter.calls) == 1


def test_concurrent_ensure_creates_one_row() -> None:
    service, repository = _service({SourceType.EMAIL: _email_adapter()})

    async def scenario():
        return await asyncio.gather(
            service.ensure_work_item(OWNER, SourceType.EMAIL, "m1"),
            service.ensure_work_item(OWNER, SourceType.EMAIL, "m1"),
        )

    results = asyncio.run(scenario())

    assert sorted(result.is_new for result in results) == [False, True]
    assert results[0].work_item.id == results[1].work_item.id
    assert len(repository.work_items) == 1


def test_ensure_falls_back_when_adapter_fails() -> None:
    service, _ = _service({SourceType.EMAIL: FakeAdapter(error="timeout")})

    result = asyncio.run(service.ensure_work_item(OWNER, SourceType.EMAIL, "m9"))

    assert result.is_new is True
    assert result.work_item.status is WorkItemStatus.NEEDS_REVIEW
    assert result.work_item.reason_codes == ["unlinked_company", "missing_summary"]


def test_ensure_missing_record_is_not_found() -> None:
    service, repository = _service({SourceType.TASK: _task_adapter()})

    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(service.ensure_work_item(OWNER, SourceType.TASK, "missing"))
    assert repository.work_items == {}


def test_backfill_counts_only_new_rows() -> None:
    service, repository = _service({SourceType.EMAIL: _email_adapter(), SourceType.TASK: _task_adapter()})

    async def scenario():
        first = await service.backfill(
            OWNER,
            {SourceType.EMAIL: ["m1", "m2", "m1"], SourceType.TASK: ["t2", "missing"]},
        )
        second = await service.backfill(OWNER, {SourceType.EMAIL: ["m1", "m2"], SourceType.TASK: ["t2"]})
        return first, second

    first, second = asyncio.run(scenario())

    assert first == 3
    assert second == 0
    assert len(repository.work_items) == 3


def test_trust_and_ignore_stamp_timestamps() -> None:
    service, _ = _service({SourceType.EMAIL: _email_adapter()})

    async def scenario():
        first = await service.ensure_work_item(OWNER, SourceType.EMAIL, "m1")
        second = await service.ensure_work_item(OWNER, SourceType.EMAIL, "m2")
        trusted = await service.trust(OWNER, first.work_item.id, now=NOW)
        ignored = await service.ignore(OWNER, second.work_item.id, now=NOW)
        return trusted, ignored

    trusted, ignored = asyncio.run(scenario())

    assert trusted.status is WorkItemStatus.TRUSTED
    assert trusted.trusted_at == NOW
    assert trusted.reviewed_at == NOW
    assert ignored.status is WorkItemStatus.IGNORED
    assert ignored.reviewed_at == NOW
    assert ignored.trusted_at is None


def test_ignored_items_are_terminal() -> None:
    service, _ = _service({SourceType.EMAIL: _email_adapter()})

    async def scenario():
        created = await service.ensure_work_item(OWNER, SourceType.EMAIL, "m2")
        await service.ignore(OWNER, created.work_item.id)
        await service.trust(OWNER, created.work_item.id)

    with pytest.raises(RepositoryConflictError):
        asyncio.run(scenario())


def test_snooze_requires_future_time() -> None:
    service, _ = _service({SourceType.EMAIL: _email_adapter()})

    async def scenario(until: datetime):
        created = await service.ensure_work_item(OWNER, SourceType.EMAIL, "m2")
        return await service.snooze(OWNER, created.work_item.id, until, now=NOW)

    with pytest.raises(RepositoryValidationError):
        asyncio.run(scenario(NOW - timedelta(minutes=1)))

    snoozed = asyncio.run(scenario(NOW + timedelta(hours=2)))
    assert snoozed.status is WorkItemStatus.SNOOZED
    assert snoozed.snooze_until == NOW + timedelta(hours=2)


def test_reopen_trusted_item_with_new_reason() -> None:
    service, _ = _service({SourceType.TASK: _task_adapter()})

    async def scenario():
        created = await service.ensure_work_item(OWNER, SourceType.TASK, "t1")
        return await service.reopen(OWNER, created.work_item.id, ["no_next_action", "no_next_action"], now=NOW)

    reopened = asyncio.run(scenario())

    assert reopened.status is WorkItemStatus.NEEDS_REVIEW
    assert reopened.reason_codes == ["no_next_action"]


@pytest.mark.parametrize("codes", [[], ["   "], ["made_up"]])
def test_reopen_rejects_bad_reason_codes(codes: list[str]) -> None:
    service, _ = _service({SourceType.TASK: _task_adapter()})

    async def scenario():
        created = await service.ensure_work_item(OWNER, SourceType.TASK, "t1")
        return await service.reopen(OWNER, created.work_item.id, codes)

    with pytest.raises(RepositoryValidationError):
        asyncio.run(scenario())


def test_manual_link_resolves_unlinked_task() -> None:
    service, repository = _service({SourceType.TASK: _task_adapter()})

    async def scenario():
        created = await service.ensure_work_item(OWNER, SourceType.TASK, "t2")
        return await service.link_entity(
            OWNER,
            created.work_item.id,
            target_type="company",
            target_id="co-acme",
            now=NOW,
        )

    linked = asyncio.run(scenario())

    assert linked.status is WorkItemStatus.TRUSTED
    assert linked.reason_codes == []
    assert linked.trusted_at == NOW
    link = repository.entity_links[(OWNER, SourceType.TASK, "t2", "company", "co-acme")]
    assert (link.reason, link.confidence) == ("manual", 1.0)


def test_manual_link_keeps_other_reason_codes() -> None:
    service, _ = _service({SourceType.EMAIL: _email_adapter()})

    async def scenario():
        created = await service.ensure_work_item(OWNER, SourceType.EMAIL, "m2")
        return await service.link_entity(
            OWNER,
            created.work_item.id,
            target_type="pipeline_company",
            target_id="pc-1",
            now=NOW,
        )

    linked = asyncio.run(scenario())

    assert linked.status is WorkItemStatus.NEEDS_REVIEW
    assert linked.reason_codes == ["missing_summary"]
    assert linked.last_touched_at == NOW


def test_manual_link_validates_target() -> None:
    service, _ = _service({SourceType.TASK: _task_adapter()})

    with pytest.raises(RepositoryValidationError):
        asyncio.run(service.link_entity(OWNER, "anything", target_type="person", target_id="x"))
    with pytest.raises(RepositoryValidationError):
        asyncio.run(service.link_entity(OWNER, "anything", target_type="company", target_id="  "))


def test_unknown_work_item_is_not_found() -> None:
    service, _ = _service({})

    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(service.trust(OWNER, "does-not-exist"))


def test_status_counts_all_clear() -> None:
    service, _ = _service({SourceType.EMAIL: _email_adapter(), SourceType.TASK: _task_adapter()})

    async def scenario():
        empty = await service.status_counts(OWNER)
        await service.ensure_work_item(OWNER, SourceType.TASK, "t1")
        after_trusted = await service.status_counts(OWNER)
        await service.ensure_work_item(OWNER, SourceType.EMAIL, "m2")
        after_review = await service.status_counts(OWNER)
        return empty, after_trusted, after_review

    empty, after_trusted, after_review = asyncio.run(scenario())

    assert empty.all_clear is True
    assert after_trusted.trusted == 1
    assert after_trusted.all_clear is True
    assert after_review.needs_review == 1
    assert after_review.all_clear is False
