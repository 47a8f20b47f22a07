from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]
import pytest

from focus_queue.services.adapters import POSTGRES_ADAPTERS
from focus_queue.services.queue import FocusQueueService
from focus_queue.services.records import LinkProposal, SourceType, WorkItemStatus
from focus_queue.services.repository import (
    PostgresRepository,
    RepositoryConflictError,
    RepositoryDuplicateError,
    RepositoryNotFoundError,
)
from focus_queue.services.work_items import WorkItemService
from focus_queue.services.writeback import WriteBackQueue

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("FQ_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require FQ_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_reset(database_url))


def test_insert_is_unique_per_source(database_url: str) -> None:
    owner_id = str(uuid4())

    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            created = await repository.insert_work_item(
                owner_id=owner_id,
                source_type=SourceType.TASK,
                source_id="task-1",
                status=WorkItemStatus.NEEDS_REVIEW,
                reason_codes=["unlinked_company"],
                priority=2,
            )
            with pytest.raises(RepositoryDuplicateError):
                await repository.insert_work_item(
                    owner_id=owner_id,
                    source_type=SourceType.TASK,
                    source_id="task-1",
                    status=WorkItemStatus.NEEDS_REVIEW,
                    reason_codes=[],
                    priority=2,
                )
            fetched = await repository.get_work_item_by_source(owner_id, SourceType.TASK, "task-1")
            assert fetched is not None
            assert fetched.id == created.id
            assert fetched.reason_codes == ["unlinked_company"]
        finally:
            await repository.close()

    _run(scenario())


def test_transition_is_compare_and_set(database_url: str) -> None:
    owner_id = str(uuid4())
    now = datetime.now(timezone.utc)

    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            item = await repository.insert_work_item(
                owner_id=owner_id,
                source_type=SourceType.NOTE,
                source_id="note-1",
                status=WorkItemStatus.NEEDS_REVIEW,
                reason_codes=["unlinked_company"],
                priority=1,
            )
            snoozed = await repository.transition_work_item(
                owner_id,
                item.id,
                from_status=WorkItemStatus.NEEDS_REVIEW,
                to_status=WorkItemStatus.SNOOZED,
                now=now,
                snooze_until=now + timedelta(hours=1),
            )
            assert snoozed.status is WorkItemStatus.SNOOZED
            with pytest.raises(RepositoryConflictError):
                await repository.transition_work_item(
                    owner_id,
                    item.id,
                    from_status=WorkItemStatus.NEEDS_REVIEW,
                    to_status=WorkItemStatus.TRUSTED,
                    now=now,
                )
            with pytest.raises(RepositoryNotFoundError):
                await repository.get_work_item(owner_id, str(uuid4()))
            counts = await repository.count_by_status(owner_id)
            assert counts[WorkItemStatus.SNOOZED] == 1
        finally:
            await repository.close()

    _run(scenario())


def test_mark_stale_reopens_lapsed_snoozes(database_url: str) -> None:
    owner_id = str(uuid4())

    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            item = await repository.insert_work_item(
                owner_id=owner_id,
                source_type=SourceType.NOTE,
                source_id="note-2",
                status=WorkItemStatus.NEEDS_REVIEW,
                reason_codes=["unlinked_company"],
                priority=1,
            )
            past = datetime.now(timezone.utc) - timedelta(minutes=5)
            await repository.transition_work_item(
                owner_id,
                item.id,
                from_status=WorkItemStatus.NEEDS_REVIEW,
                to_status=WorkItemStatus.SNOOZED,
                now=past - timedelta(hours=1),
                snooze_until=past,
            )
            await repository.mark_stale_work_items(owner_id)
            refreshed = await repository.get_work_item(owner_id, item.id)
            assert refreshed.status is WorkItemStatus.NEEDS_REVIEW
            assert refreshed.snooze_until is None
        finally:
            await repository.close()

    _run(scenario())


def test_email_flow_links_by_domain_and_converges(database_url: str) -> None:
    owner_id = str(uuid4())

    async def scenario() -> None:
        connection = await asyncpg.connect(database_url)
        try:
            company_id = await connection.fetchval(
                "insert into companies (owner_id, name, primary_domain) values ($1::uuid, 'Acme', 'acme.io') "
                "returning id::text",
                owner_id,
            )
            email_id = await connection.fetchval(
                """
                insert into inbox_items (owner_id, subject, snippet, from_email, received_at, is_read)
                values ($1::uuid, 'Intro', 'Hello there', 'founder@acme.io', now() - interval '1 hour', false)
                returning id::text
                """,
                owner_id,
            )
        finally:
            await connection.close()

        repository = _repository(database_url)
        writeback = WriteBackQueue()
        adapters = {adapter.source_type: adapter(repository) for adapter in POSTGRES_ADAPTERS}
        try:
            service = WorkItemService(repository, adapters)
            created = await service.ensure_work_item(owner_id, SourceType.EMAIL, email_id)
            assert created.is_new is True
            assert created.work_item.reason_codes == ["missing_summary"]

            links = await repository.list_entity_links(owner_id)
            assert [(link.target_id, link.reason) for link in links] == [(company_id, "domain_match")]

            queue = FocusQueueService(repository, adapters, writeback)
            first = await queue.read(owner_id)
            assert [entry.title for entry in first.items] == ["Intro"]
            assert first.items[0].primary_link is not None

            connection = await asyncpg.connect(database_url)
            try:
                await connection.execute(
                    """
                    insert into item_extracts (owner_id, source_type, source_id, extract_type, content)
                    values ($1::uuid, 'email', $2, 'summary', '{"one_liner": "Wants an intro call"}'::jsonb)
                    """,
                    owner_id,
                    email_id,
                )
            finally:
                await connection.close()

            second = await queue.read(owner_id)
            await writeback.flush()
            assert second.items == []
            assert second.diagnostics.resolved_count == 1

            refreshed = await repository.get_work_item(owner_id, created.work_item.id)
            assert refreshed.status is WorkItemStatus.TRUSTED
            assert refreshed.trusted_at is not None
        finally:
            await writeback.close()
            await repository.close()

    _run(scenario())


def test_entity_link_upsert_is_idempotent(database_url: str) -> None:
    owner_id = str(uuid4())
    link = LinkProposal(target_type="project", target_id="p-1", reason="manual", confidence=1.0)

    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            await repository.upsert_entity_links(owner_id, SourceType.TASK, "task-9", [link])
            await repository.upsert_entity_links(owner_id, SourceType.TASK, "task-9", [link])
            links = await repository.list_entity_links(owner_id)
            assert len(links) == 1
            assert links[0].source_key == (SourceType.TASK, "task-9")
        finally:
            await repository.close()

    _run(scenario())


def _repository(database_url: str) -> PostgresRepository:
    return PostgresRepository(database_url=database_url, min_pool_size=1, max_pool_size=2)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _reset(database_url: str) -> None:
    connection = await asyncpg.connect(database_url)
    try:
        await connection.execute(SCHEMA_PATH.read_text())
        await connection.execute(
            """
            truncate table
              entity_links,
              item_extracts,
              work_items,
              inbox_suggestions,
              inbox_items,
              calendar_event_links,
              calendar_events,
              tasks,
              project_notes,
              reading_items,
              commitments,
              people,
              companies,
              pipeline_companies
            restart identity cascade
            """
        )
    finally:
        await connection.close()
