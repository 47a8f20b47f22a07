from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from focus_queue.core.config import get_settings
from focus_queue.services.records import (
    ACTIVE_STATUSES,
    CompanyRegistry,
    EntityLink,
    ItemExtract,
    LinkProposal,
    RegistryCompany,
    SourceType,
    WorkItem,
    WorkItemStatus,
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class RepositoryDuplicateError(RepositoryError):
    """Raised when an insert loses the race on a unique key."""


WORK_ITEM_COLUMNS = """
  id::text as id,
  owner_id::text as owner_id,
  source_type,
  source_id,
  status,
  reason_codes,
  priority,
  snooze_until,
  last_touched_at,
  reviewed_at,
  trusted_at,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def pool(self) -> asyncpg.Pool:
        return await self._get_pool()

    async def get_work_item_by_source(
        self,
        owner_id: str,
        source_type: SourceType,
        source_id: str,
    ) -> WorkItem | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {WORK_ITEM_COLUMNS}
                from work_items
                where owner_id = $1::uuid
                  and source_type = $2
                  and source_id = $3
                """,
                owner_id,
                source_type.value,
                source_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(str(exc)) from exc
        return self._work_item_from_row(row) if row else None

    async def get_work_item(self, owner_id: str, work_item_id: str) -> WorkItem:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {WORK_ITEM_COLUMNS}
                from work_items
                where id = $1::uuid
                  and owner_id = $2::uuid
                """,
                work_item_id,
                owner_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("work item not found") from exc
        if not row:
            raise RepositoryNotFoundError("work item not found")
        return self._work_item_from_row(row)

    async def insert_work_item(
        self,
        *,
        owner_id: str,
        source_type: SourceType,
        source_id: str,
        status: WorkItemStatus,
        reason_codes: list[str],
        priority: int,
        trusted_at: datetime | None = None,
    ) -> WorkItem:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into work_items (
                  owner_id,
                  source_type,
                  source_id,
                  status,
                  reason_codes,
                  priority,
                  trusted_at
                )
                values ($1::uuid, $2, $3, $4, $5::text[], $6, $7)
                returning {WORK_ITEM_COLUMNS}
                """,
                owner_id,
                source_type.value,
                source_id,
                status.value,
                reason_codes,
                priority,
                trusted_at,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryDuplicateError(str(exc)) from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(str(exc)) from exc
        return self._work_item_from_row(row)

    async def list_active_work_items(self, owner_id: str) -> list[WorkItem]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {WORK_ITEM_COLUMNS}
            from work_items
            where owner_id = $1::uuid
              and status = any($2::text[])
            order by created_at asc, id asc
            """,
            owner_id,
            [status.value for status in ACTIVE_STATUSES],
        )
        return [self._work_item_from_row(row) for row in rows]

    async def update_reason_codes(
        self,
        owner_id: str,
        work_item_id: str,
        reason_codes: list[str],
        *,
        touched_at: datetime | None = None,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update work_items
            set
              reason_codes = $3::text[],
              last_touched_at = coalesce($4, last_touched_at),
              updated_at = now()
            where id = $1::uuid
              and owner_id = $2::uuid
            """,
            work_item_id,
            owner_id,
            reason_codes,
            touched_at,
        )

    async def mark_trusted(self, owner_id: str, work_item_ids: Sequence[str], *, trusted_at: datetime) -> int:
        """Auto-resolve path: only rows still in an active status are promoted."""
        if not work_item_ids:
            return 0
        pool = await self._get_pool()
        result = await pool.execute(
            """
            update work_items
            set
              status = 'trusted',
              trusted_at = $3,
              reason_codes = '{}'::text[],
              updated_at = now()
            where owner_id = $1::uuid
              and id = any($2::uuid[])
              and status = any($4::text[])
            """,
            owner_id,
            list(work_item_ids),
            trusted_at,
            [status.value for status in ACTIVE_STATUSES],
        )
        return self._affected_rows(result)

    async def transition_work_item(
        self,
        owner_id: str,
        work_item_id: str,
        *,
        from_status: WorkItemStatus,
        to_status: WorkItemStatus,
        now: datetime,
        snooze_until: datetime | None = None,
        reason_codes: list[str] | None = None,
        stamp_trusted: bool = False,
        stamp_reviewed: bool = False,
    ) -> WorkItem:
        """Compare-and-set on ``status``; a concurrent change surfaces as a conflict."""
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update work_items
                set
                  status = $4,
                  snooze_until = $5,
                  reason_codes = coalesce($6::text[], reason_codes),
                  trusted_at = case when $7 then $8 else trusted_at end,
                  reviewed_at = case when $9 then $8 else reviewed_at end,
                  last_touched_at = $8,
                  updated_at = $8
                where id = $1::uuid
                  and owner_id = $2::uuid
                  and status = $3
                returning {WORK_ITEM_COLUMNS}
                """,
                work_item_id,
                owner_id,
                from_status.value,
                to_status.value,
                snooze_until,
                reason_codes,
                stamp_trusted,
                now,
                stamp_reviewed,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("work item not found") from exc
        if row:
            return self._work_item_from_row(row)

        current = await self.get_work_item(owner_id, work_item_id)
        raise RepositoryConflictError(
            f"work item status changed: expected={from_status.value} actual={current.status.value}"
        )

    async def count_by_status(self, owner_id: str) -> dict[WorkItemStatus, int]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select status, count(*)::int as total
            from work_items
            where owner_id = $1::uuid
            group by status
            """,
            owner_id,
        )
        counts = {status: 0 for status in WorkItemStatus}
        for row in rows:
            try:
                counts[WorkItemStatus(row["status"])] = row["total"]
            except ValueError:
                continue
        return counts

    async def mark_stale_work_items(self, owner_id: str) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute("select mark_stale_work_items($1::uuid)", owner_id)
        except pg_exc.UndefinedFunctionError as exc:
            raise RepositoryNotFoundError("mark_stale_work_items procedure is not installed") from exc
        except asyncpg.PostgresError as exc:
            raise RepositoryError(f"mark_stale_work_items failed: {exc}") from exc

    async def upsert_entity_links(
        self,
        owner_id: str,
        source_type: SourceType,
        source_id: str,
        links: Sequence[LinkProposal],
    ) -> None:
        if not links:
            return
        pool = await self._get_pool()
        try:
            await self._write_entity_links(pool, owner_id, source_type, source_id, links)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(str(exc)) from exc
        except asyncpg.PostgresError as exc:
            raise RepositoryConflictError(str(exc)) from exc

    @staticmethod
    async def _write_entity_links(
        pool: asyncpg.Pool,
        owner_id: str,
        source_type: SourceType,
        source_id: str,
        links: Sequence[LinkProposal],
    ) -> None:
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    insert into entity_links (
                      owner_id,
                      source_type,
                      source_id,
                      target_type,
                      target_id,
                      link_reason,
                      confidence
                    )
                    values ($1::uuid, $2, $3, $4, $5, $6, $7)
                    on conflict (source_type, source_id, target_type, target_id, owner_id)
                    do update set
                      link_reason = excluded.link_reason,
                      confidence = excluded.confidence
                    """,
                    [
                        (
                            owner_id,
                            source_type.value,
                            source_id,
                            link.target_type,
                            link.target_id,
                            link.reason,
                            link.confidence,
                        )
                        for link in links
                    ],
                )

    async def list_entity_links(self, owner_id: str) -> list[EntityLink]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select
                  owner_id::text as owner_id,
                  source_type,
                  source_id,
                  target_type,
                  target_id,
                  link_reason,
                  confidence,
                  created_at
                from entity_links
                where owner_id = $1::uuid
                order by created_at asc
                """,
                owner_id,
            )
        except asyncpg.PostgresError as exc:
            raise RepositoryError(f"entity link lookup failed: {exc}") from exc
        links: list[EntityLink] = []
        for row in rows:
            try:
                source_type = SourceType(row["source_type"])
            except ValueError:
                continue
            links.append(
                EntityLink(
                    owner_id=row["owner_id"],
                    source_type=source_type,
                    source_id=row["source_id"],
                    target_type=row["target_type"],
                    target_id=row["target_id"],
                    reason=row["link_reason"] or "",
                    confidence=float(row["confidence"] or 0.0),
                    created_at=row["created_at"],
                )
            )
        return links

    async def list_summary_extracts(self, owner_id: str) -> list[ItemExtract]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select
                  owner_id::text as owner_id,
                  source_type,
                  source_id,
                  extract_type,
                  content,
                  created_at
                from item_extracts
                where owner_id = $1::uuid
                  and extract_type = 'summary'
                """,
                owner_id,
            )
        except asyncpg.PostgresError as exc:
            raise RepositoryError(f"summary extract lookup failed: {exc}") from exc
        extracts: list[ItemExtract] = []
        for row in rows:
            try:
                source_type = SourceType(row["source_type"])
            except ValueError:
                continue
            extracts.append(
                ItemExtract(
                    owner_id=row["owner_id"],
                    source_type=source_type,
                    source_id=row["source_id"],
                    extract_type=row["extract_type"],
                    content=self._coerce_json_dict(row["content"]),
                    created_at=row["created_at"],
                )
            )
        return extracts

    async def get_company_registry(self, owner_id: str) -> CompanyRegistry:
        pool = await self._get_pool()
        portfolio_rows = await pool.fetch(
            """
            select id::text as id, name, primary_domain
            from companies
            where owner_id = $1::uuid
            order by name asc, id asc
            """,
            owner_id,
        )
        pipeline_rows = await pool.fetch(
            """
            select id::text as id, company_name, primary_domain
            from pipeline_companies
            where owner_id = $1::uuid
            order by company_name asc, id asc
            """,
            owner_id,
        )
        return CompanyRegistry(
            portfolio=[
                RegistryCompany(
                    id=row["id"],
                    name=row["name"],
                    primary_domain=row["primary_domain"],
                    kind="portfolio",
                )
                for row in portfolio_rows
            ],
            pipeline=[
                RegistryCompany(
                    id=row["id"],
                    name=row["company_name"],
                    primary_domain=row["primary_domain"],
                    kind="pipeline",
                )
                for row in pipeline_rows
            ],
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("FQ_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _work_item_from_row(row: asyncpg.Record) -> WorkItem:
        return WorkItem(
            id=row["id"],
            owner_id=row["owner_id"],
            source_type=SourceType(row["source_type"]),
            source_id=row["source_id"],
            status=WorkItemStatus(row["status"]),
            reason_codes=list(row["reason_codes"] or []),
            priority=int(row["priority"] or 0),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            snooze_until=row["snooze_until"],
            last_touched_at=row["last_touched_at"],
            reviewed_at=row["reviewed_at"],
            trusted_at=row["trusted_at"],
        )

    @staticmethod
    def _affected_rows(command_status: str) -> int:
        try:
            return int(command_status.rsplit(" ", maxsplit=1)[-1])
        except (ValueError, AttributeError):
            return 0

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
