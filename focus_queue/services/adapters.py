from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from functools import lru_cache
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
import httpx

from focus_queue.core.config import get_settings
from focus_queue.services.records import LinkProposal, SourceKey, SourceRecord, SourceType, UpcomingEvent
from focus_queue.services.repository import PostgresRepository, RepositoryError, get_repository
from focus_queue.services.scoring import parse_timestamp

logger = logging.getLogger(__name__)


class SourceAdapterError(Exception):
    """Raised when a source adapter cannot read its backing store."""


class SourceAdapter(Protocol):
    source_type: SourceType

    async def fetch_records(self, owner_id: str, source_ids: Sequence[str]) -> dict[str, SourceRecord]:
        ...


async def fetch_record(adapter: SourceAdapter, owner_id: str, source_id: str) -> SourceRecord | None:
    records = await adapter.fetch_records(owner_id, [source_id])
    return records.get(source_id)


async def fetch_all(
    adapters: Mapping[SourceType, SourceAdapter],
    owner_id: str,
    keys: Sequence[SourceKey],
) -> tuple[dict[SourceKey, SourceRecord], list[SourceType]]:
    """Fan out one batch fetch per source type and merge what comes back.

    Returns the merged records and the source types whose fetch failed.
    """
    ids_by_type: dict[SourceType, list[str]] = {}
    for source_type, source_id in keys:
        bucket = ids_by_type.setdefault(source_type, [])
        if source_id not in bucket:
            bucket.append(source_id)

    async def fetch_one(source_type: SourceType, source_ids: list[str]) -> dict[str, SourceRecord] | None:
        adapter = adapters.get(source_type)
        if adapter is None:
            logger.warning("source adapter missing source_type=%s", source_type.value)
            return None
        try:
            return await adapter.fetch_records(owner_id, source_ids)
        except (SourceAdapterError, RepositoryError) as exc:
            logger.warning(
                "source fetch failed source_type=%s count=%s error=%s",
                source_type.value,
                len(source_ids),
                exc,
            )
            return None
        except Exception:
            logger.exception(
                "source fetch raised source_type=%s count=%s", source_type.value, len(source_ids)
            )
            return None

    ordered = list(ids_by_type.items())
    results = await asyncio.gather(*(fetch_one(source_type, source_ids) for source_type, source_ids in ordered))

    merged: dict[SourceKey, SourceRecord] = {}
    failed: list[SourceType] = []
    for (source_type, _), records in zip(ordered, results):
        if records is None:
            failed.append(source_type)
            continue
        for source_id, record in records.items():
            merged[(source_type, source_id)] = record
    return merged, failed


class PostgresSourceAdapter:
    source_type: SourceType

    def __init__(self, repository: PostgresRepository) -> None:
        self.repository = repository

    async def fetch_records(self, owner_id: str, source_ids: Sequence[str]) -> dict[str, SourceRecord]:
        if not source_ids:
            return {}
        pool = await self.repository.pool()
        try:
            return await self._fetch(pool, owner_id, list(source_ids))
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
            raise SourceAdapterError(f"{self.source_type.value} fetch failed: {exc}") from exc

    async def _fetch(self, pool: asyncpg.Pool, owner_id: str, source_ids: list[str]) -> dict[str, SourceRecord]:
        raise NotImplementedError


class EmailSourceAdapter(PostgresSourceAdapter):
    source_type = SourceType.EMAIL

    async def _fetch(self, pool: asyncpg.Pool, owner_id: str, source_ids: list[str]) -> dict[str, SourceRecord]:
        rows = await pool.fetch(
            """
            select
              id::text as id,
              subject,
              snippet,
              display_subject,
              display_snippet,
              from_email,
              received_at,
              is_read,
              related_company_id::text as related_company_id
            from inbox_items
            where owner_id = $1::uuid
              and id::text = any($2::text[])
            """,
            owner_id,
            source_ids,
        )
        suggestion_rows = await pool.fetch(
            """
            select inbox_item_id::text as inbox_item_id, suggestions
            from inbox_suggestions
            where inbox_item_id::text = any($1::text[])
            """,
            source_ids,
        )
        buckets: dict[str, list[str]] = {}
        for row in suggestion_rows:
            for suggestion in _coerce_json_list(row["suggestions"]):
                bucket = suggestion.get("effort_bucket")
                if isinstance(bucket, str):
                    buckets.setdefault(row["inbox_item_id"], []).append(bucket)

        records: dict[str, SourceRecord] = {}
        for row in rows:
            direct_links = []
            if row["related_company_id"]:
                direct_links.append(
                    LinkProposal(
                        target_type="company",
                        target_id=row["related_company_id"],
                        reason="inbox_link",
                        confidence=1.0,
                    )
                )
            records[row["id"]] = SourceRecord(
                id=row["id"],
                title=row["display_subject"] or row["subject"] or "No subject",
                snippet=row["display_snippet"] or row["snippet"] or None,
                scoring_inputs={
                    "received_at": row["received_at"],
                    "is_read": bool(row["is_read"]),
                    "effort_buckets": buckets.get(row["id"], []),
                },
                has_direct_link=bool(direct_links),
                direct_links=direct_links,
                contact_emails=[row["from_email"]] if row["from_email"] else [],
            )
        return records


class CalendarSourceAdapter(PostgresSourceAdapter):
    source_type = SourceType.CALENDAR_EVENT

    async def _fetch(self, pool: asyncpg.Pool, owner_id: str, source_ids: list[str]) -> dict[str, SourceRecord]:
        rows = await pool.fetch(
            """
            select id::text as id, title, start_time, end_time, attendees
            from calendar_events
            where owner_id = $1::uuid
              and id::text = any($2::text[])
            """,
            owner_id,
            source_ids,
        )
        link_rows = await pool.fetch(
            """
            select calendar_event_id::text as calendar_event_id, company_id::text as company_id
            from calendar_event_links
            where calendar_event_id::text = any($1::text[])
              and company_id is not null
            order by created_at asc
            """,
            source_ids,
        )
        company_by_event: dict[str, str] = {}
        for row in link_rows:
            company_by_event.setdefault(row["calendar_event_id"], row["company_id"])

        records: dict[str, SourceRecord] = {}
        for row in rows:
            attendee_emails = _attendee_emails(row["attendees"])
            company_id = company_by_event.get(row["id"])
            direct_links = (
                [LinkProposal(target_type="company", target_id=company_id, reason="calendar_link", confidence=1.0)]
                if company_id
                else []
            )
            records[row["id"]] = SourceRecord(
                id=row["id"],
                title=row["title"] or "No title",
                scoring_inputs={
                    "start_at": row["start_time"],
                    "end_at": row["end_time"],
                    "attendee_count": len(attendee_emails),
                },
                has_direct_link=bool(direct_links),
                direct_links=direct_links,
                contact_emails=attendee_emails,
            )
        return records

    async def list_upcoming_events(self, owner_id: str, *, now: datetime, limit: int = 10) -> list[UpcomingEvent]:
        pool = await self.repository.pool()
        try:
            rows = await pool.fetch(
                """
                select title, start_time, end_time
                from calendar_events
                where owner_id = $1::uuid
                  and start_time > $2
                order by start_time asc
                limit $3
                """,
                owner_id,
                now,
                limit,
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise SourceAdapterError(f"upcoming calendar fetch failed: {exc}") from exc
        return [
            UpcomingEvent(title=row["title"] or "No title", start_at=row["start_time"], end_at=row["end_time"])
            for row in rows
        ]


class TaskSourceAdapter(PostgresSourceAdapter):
    source_type = SourceType.TASK

    async def _fetch(self, pool: asyncpg.Pool, owner_id: str, source_ids: list[str]) -> dict[str, SourceRecord]:
        rows = await pool.fetch(
            """
            select
              id::text as id,
              content,
              scheduled_for,
              priority,
              is_quick_task,
              updated_at,
              project_id::text as project_id,
              company_id::text as company_id,
              pipeline_company_id::text as pipeline_company_id
            from tasks
            where owner_id = $1::uuid
              and id::text = any($2::text[])
            """,
            owner_id,
            source_ids,
        )
        records: dict[str, SourceRecord] = {}
        for row in rows:
            direct_links = [
                LinkProposal(target_type=target_type, target_id=row[column], reason="direct_link", confidence=1.0)
                for column, target_type in (
                    ("project_id", "project"),
                    ("company_id", "company"),
                    ("pipeline_company_id", "pipeline_company"),
                )
                if row[column]
            ]
            records[row["id"]] = SourceRecord(
                id=row["id"],
                title=row["content"] or "Untitled task",
                scoring_inputs={
                    "scheduled_for": row["scheduled_for"],
                    "priority": row["priority"],
                    "is_quick_task": bool(row["is_quick_task"]),
                    "updated_at": row["updated_at"],
                },
                has_direct_link=bool(direct_links),
                direct_links=direct_links,
            )
        return records


class NoteSourceAdapter(PostgresSourceAdapter):
    source_type = SourceType.NOTE

    async def _fetch(self, pool: asyncpg.Pool, owner_id: str, source_ids: list[str]) -> dict[str, SourceRecord]:
        rows = await pool.fetch(
            """
            select id::text as id, title, content, updated_at, project_id::text as project_id
            from project_notes
            where owner_id = $1::uuid
              and id::text = any($2::text[])
            """,
            owner_id,
            source_ids,
        )
        records: dict[str, SourceRecord] = {}
        for row in rows:
            direct_links = _project_link(row["project_id"])
            content = row["content"] or ""
            records[row["id"]] = SourceRecord(
                id=row["id"],
                title=row["title"] or "Untitled note",
                snippet=content[:120] or None,
                scoring_inputs={"updated_at": row["updated_at"]},
                has_direct_link=bool(direct_links),
                direct_links=direct_links,
            )
        return records


class ReadingSourceAdapter(PostgresSourceAdapter):
    source_type = SourceType.READING

    async def _fetch(self, pool: asyncpg.Pool, owner_id: str, source_ids: list[str]) -> dict[str, SourceRecord]:
        rows = await pool.fetch(
            """
            select
              id::text as id,
              title,
              url,
              one_liner,
              processing_status,
              updated_at,
              project_id::text as project_id
            from reading_items
            where owner_id = $1::uuid
              and id::text = any($2::text[])
            """,
            owner_id,
            source_ids,
        )
        records: dict[str, SourceRecord] = {}
        for row in rows:
            direct_links = _project_link(row["project_id"])
            records[row["id"]] = SourceRecord(
                id=row["id"],
                title=row["title"] or row["url"] or "Untitled",
                snippet=row["one_liner"] or None,
                url=row["url"],
                scoring_inputs={
                    "processing_status": row["processing_status"],
                    "updated_at": row["updated_at"],
                },
                has_direct_link=bool(direct_links),
                direct_links=direct_links,
            )
        return records


class CommitmentSourceAdapter(PostgresSourceAdapter):
    source_type = SourceType.COMMITMENT

    async def _fetch(self, pool: asyncpg.Pool, owner_id: str, source_ids: list[str]) -> dict[str, SourceRecord]:
        rows = await pool.fetch(
            """
            select
              c.id::text as id,
              c.title,
              c.content,
              c.person_name,
              c.direction,
              c.due_at,
              c.expected_by,
              c.implied_urgency,
              c.updated_at,
              c.company_id::text as company_id,
              coalesce(p.is_vip, false) as is_vip,
              p.email as person_email
            from commitments c
            left join people p on p.id = c.person_id
            where c.owner_id = $1::uuid
              and c.id::text = any($2::text[])
            """,
            owner_id,
            source_ids,
        )
        records: dict[str, SourceRecord] = {}
        for row in rows:
            direct_links = (
                [LinkProposal(target_type="company", target_id=row["company_id"], reason="direct_link", confidence=1.0)]
                if row["company_id"]
                else []
            )
            snippet = None
            if row["person_name"]:
                snippet = f"{'From' if row['direction'] == 'owed_to_me' else 'To'}: {row['person_name']}"
            records[row["id"]] = SourceRecord(
                id=row["id"],
                title=row["title"] or row["content"] or "Untitled commitment",
                snippet=snippet,
                scoring_inputs={
                    "direction": row["direction"],
                    "due_at": row["due_at"],
                    "expected_by": row["expected_by"],
                    "implied_urgency": row["implied_urgency"],
                    "is_vip": bool(row["is_vip"]),
                    "person_name": row["person_name"],
                    "updated_at": row["updated_at"],
                },
                has_direct_link=bool(direct_links),
                direct_links=direct_links,
                contact_emails=[row["person_email"]] if row["person_email"] else [],
            )
        return records


class HttpSourceAdapter:
    """Reads normalized source records from an external records service."""

    def __init__(
        self,
        source_type: SourceType,
        base_url: str,
        api_key: str | None = None,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.source_type = source_type
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def fetch_records(self, owner_id: str, source_ids: Sequence[str]) -> dict[str, SourceRecord]:
        if not source_ids:
            return {}
        items = await self._get_items(
            f"/sources/{self.source_type.value}",
            {"owner_id": owner_id, "ids": ",".join(source_ids)},
        )
        records: dict[str, SourceRecord] = {}
        for item in items:
            record = record_from_payload(item)
            if record is not None:
                records[record.id] = record
        return records

    async def list_upcoming_events(self, owner_id: str, *, now: datetime, limit: int = 10) -> list[UpcomingEvent]:
        items = await self._get_items(
            f"/sources/{self.source_type.value}/upcoming",
            {"owner_id": owner_id, "after": now.isoformat(), "limit": limit},
        )
        events: list[UpcomingEvent] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            start_at = parse_timestamp(item.get("start_at"))
            if start_at is None:
                continue
            events.append(
                UpcomingEvent(
                    title=str(item.get("title") or "No title"),
                    start_at=start_at,
                    end_at=parse_timestamp(item.get("end_at")),
                )
            )
        return events

    async def _get_items(self, path: str, params: dict[str, Any]) -> list[Any]:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.get(url, params=params, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.get(url, params=params, headers=self.headers)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SourceAdapterError(f"{self.source_type.value} fetch failed: {exc}") from exc

        items = payload.get("items") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise SourceAdapterError(f"{self.source_type.value} fetch returned an unexpected payload")
        return items


def record_from_payload(payload: Any) -> SourceRecord | None:
    if not isinstance(payload, dict):
        return None
    record_id = payload.get("id")
    if record_id is None or str(record_id).strip() == "":
        return None

    direct_links: list[LinkProposal] = []
    raw_links = payload.get("direct_links")
    for link in raw_links if isinstance(raw_links, list) else []:
        if not isinstance(link, dict) or not link.get("target_type") or not link.get("target_id"):
            continue
        direct_links.append(
            LinkProposal(
                target_type=str(link["target_type"]),
                target_id=str(link["target_id"]),
                reason=str(link.get("reason") or "direct_link"),
                confidence=1.0,
            )
        )

    scoring_inputs = payload.get("scoring_inputs")
    contact_emails = payload.get("contact_emails")
    if not isinstance(contact_emails, list):
        contact_emails = []
    return SourceRecord(
        id=str(record_id),
        title=str(payload.get("title") or "Untitled"),
        snippet=payload.get("snippet") or None,
        url=payload.get("url") or None,
        scoring_inputs=scoring_inputs if isinstance(scoring_inputs, dict) else {},
        has_direct_link=bool(payload.get("has_direct_link")) or bool(direct_links),
        direct_links=direct_links,
        contact_emails=[str(email) for email in contact_emails if email],
    )


def _project_link(project_id: str | None) -> list[LinkProposal]:
    if not project_id:
        return []
    return [LinkProposal(target_type="project", target_id=project_id, reason="direct_link", confidence=1.0)]


def _attendee_emails(value: Any) -> list[str]:
    emails: list[str] = []
    for attendee in _coerce_json_list(value, allow_strings=True):
        if isinstance(attendee, str):
            email = attendee
        else:
            email = attendee.get("email") or attendee.get("emailAddress") or ""
            if isinstance(email, dict):
                email = email.get("address") or ""
        if isinstance(email, str) and email.strip():
            emails.append(email.strip())
    return emails


def _coerce_json_list(value: Any, *, allow_strings: bool = False) -> list[Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict) or (allow_strings and isinstance(item, str))]


POSTGRES_ADAPTERS: tuple[type[PostgresSourceAdapter], ...] = (
    EmailSourceAdapter,
    CalendarSourceAdapter,
    TaskSourceAdapter,
    NoteSourceAdapter,
    ReadingSourceAdapter,
    CommitmentSourceAdapter,
)


@lru_cache
def get_source_adapters() -> dict[SourceType, SourceAdapter]:
    settings = get_settings()
    if settings.source_api_base_url:
        return {
            source_type: HttpSourceAdapter(
                source_type,
                settings.source_api_base_url,
                settings.source_api_key,
                timeout_seconds=settings.source_api_timeout_seconds,
            )
            for source_type in SourceType
        }
    repository = get_repository()
    return {adapter.source_type: adapter(repository) for adapter in POSTGRES_ADAPTERS}
