from __future__ import annotations

import json
from datetime import datetime
from functools import lru_cache
import logging
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from auditor.core.config import get_settings
from auditor.services.records import (
    POST_CRAWL_PHASES,
    AuditRecord,
    CitationRecord,
    FrontierCounts,
    FrontierEntry,
    PageRecord,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from auditor.services.store import InMemoryRepository

__all__ = [
    "PostgresRepository",
    "RepositoryConflictError",
    "RepositoryError",
    "RepositoryNotFoundError",
    "RepositoryUnavailableError",
    "RepositoryValidationError",
    "get_repository",
]

logger = logging.getLogger(__name__)

AUDIT_COLUMNS = """
  id::text as id,
  domain,
  status,
  phase,
  phase_started_at,
  phase_heartbeat_at,
  phase_attempts,
  pages_crawled,
  phase_state,
  failure_code,
  failure_detail,
  scores,
  created_at,
  completed_at
"""

FRONTIER_COLUMNS = """
  audit_id::text as audit_id,
  url,
  depth,
  priority,
  status,
  created_at,
  updated_at
"""

ANALYSIS_SUMMARY_KEYS = ("total_pages", "proper_h1_pages", "schema_pages", "faq_pages", "ok_pages")


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_audit(self, domain: str, *, now: datetime) -> AuditRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into audits (domain, status, phase, phase_started_at, phase_heartbeat_at, created_at)
            values ($1, 'running', 'init', $2, $2, $2)
            returning {AUDIT_COLUMNS}
            """,
            domain,
            now,
        )
        return self._audit_from_row(row)

    async def get_audit(self, audit_id: str) -> AuditRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {AUDIT_COLUMNS} from audits where id = $1::uuid", audit_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._audit_from_row(row) if row else None

    async def list_running_audits(self, limit: int | None = None) -> list[AuditRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {AUDIT_COLUMNS}
            from audits
            where status = 'running'
            order by phase_heartbeat_at asc nulls first, created_at asc
            limit $1
            """,
            limit,
        )
        return [self._audit_from_row(row) for row in rows]

    async def touch_heartbeat(self, audit_id: str, *, now: datetime) -> bool:
        pool = await self._get_pool()
        status = await pool.execute(
            "update audits set phase_heartbeat_at = $2 where id = $1::uuid and status = 'running'",
            audit_id,
            now,
        )
        return _affected(status) > 0

    async def advance_phase(
        self,
        audit_id: str,
        *,
        from_phase: str,
        to_phase: str,
        reset_attempts: bool,
        now: datetime,
        state_patch: dict[str, Any] | None = None,
    ) -> bool:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            with prior as (
              select id, phase_started_at
              from audits
              where id = $1::uuid and status = 'running' and phase = $2
            ),
            moved as (
              update audits a
              set
                phase = $3,
                phase_started_at = $5,
                phase_heartbeat_at = $5,
                phase_attempts = case when $4::boolean then 0 else a.phase_attempts end,
                phase_state = a.phase_state || $6::jsonb
              from prior p
              where a.id = p.id and a.status = 'running' and a.phase = $2
              returning a.id
            )
            insert into audit_phase_runs (audit_id, phase, started_at, ended_at)
            select p.id, $2, p.phase_started_at, $5
            from prior p
            join moved m on m.id = p.id
            returning id
            """,
            audit_id,
            from_phase,
            to_phase,
            reset_attempts,
            now,
            json.dumps(state_patch or {}),
        )
        return bool(rows)

    async def rewind_to_crawl(
        self,
        audit_id: str,
        *,
        from_phase: str,
        now: datetime,
        bump_attempts: bool = False,
    ) -> bool:
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update audits
            set
              phase = 'crawl',
              phase_started_at = $3,
              phase_heartbeat_at = $3,
              phase_attempts = phase_attempts + case when $4::boolean then 1 else 0 end
            where id = $1::uuid and status = 'running' and phase = $2
            """,
            audit_id,
            from_phase,
            now,
            bump_attempts,
        )
        return _affected(status) > 0

    async def update_phase_state(self, audit_id: str, patch: dict[str, Any]) -> bool:
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update audits
            set phase_state = phase_state || $2::jsonb
            where id = $1::uuid and status = 'running'
            """,
            audit_id,
            json.dumps(patch),
        )
        return _affected(status) > 0

    async def refresh_pages_crawled(self, audit_id: str, *, now: datetime) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            pages_crawled = await conn.fetchval(
                """
                update audits a
                set
                  pages_crawled = (select count(*) from audit_pages p where p.audit_id = a.id),
                  phase_heartbeat_at = $2
                where a.id = $1::uuid and a.status = 'running'
                returning a.pages_crawled
                """,
                audit_id,
                now,
            )
            if pages_crawled is None:
                pages_crawled = await conn.fetchval(
                    "select count(*) from audit_pages where audit_id = $1::uuid",
                    audit_id,
                )
        return int(pages_crawled or 0)

    async def complete_audit(self, audit_id: str, *, scores: dict[str, Any], now: datetime) -> bool:
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update audits
            set
              status = 'completed',
              scores = $2::jsonb,
              completed_at = $3,
              phase_heartbeat_at = $3
            where id = $1::uuid and status = 'running' and phase = 'finalize'
            """,
            audit_id,
            json.dumps(scores),
            now,
        )
        return _affected(status) > 0

    async def reset_for_retry(
        self,
        audit_id: str,
        *,
        expected_phase: str,
        expected_attempts: int,
        max_attempts: int,
        now: datetime,
    ) -> bool:
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update audits
            set
              phase = 'init',
              phase_started_at = $5,
              phase_heartbeat_at = $5,
              failure_code = null,
              failure_detail = null,
              phase_attempts = phase_attempts + 1
            where id = $1::uuid
              and status = 'running'
              and phase = $2
              and phase_attempts = $3
              and phase_attempts < $4
            """,
            audit_id,
            expected_phase,
            expected_attempts,
            max_attempts,
            now,
        )
        return _affected(status) > 0

    async def fail_audit(
        self,
        audit_id: str,
        *,
        failure_code: str,
        failure_detail: str,
        now: datetime,
        expected_phase: str | None = None,
    ) -> bool:
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update audits
            set
              status = 'failed',
              failure_code = $2,
              failure_detail = $3,
              completed_at = $4
            where id = $1::uuid
              and status = 'running'
              and ($5::text is null or phase = $5::text)
            """,
            audit_id,
            failure_code,
            failure_detail,
            now,
            expected_phase,
        )
        return _affected(status) > 0

    async def count_recent_failures(self, *, since: datetime) -> dict[str, int]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select failure_code, count(*) as failures
            from audits
            where status = 'failed'
              and failure_code is not null
              and completed_at > $1
            group by failure_code
            """,
            since,
        )
        return {row["failure_code"]: int(row["failures"]) for row in rows}

    async def phase_durations(self, phase: str, *, since: datetime) -> list[float]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select extract(epoch from (ended_at - started_at))::float8 as seconds
            from audit_phase_runs
            where phase = $1 and ended_at > $2 and started_at is not null
            """,
            phase,
            since,
        )
        return [float(row["seconds"]) for row in rows]

    async def list_frontier_stuck_audits(self, *, max_pages: int) -> list[AuditRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {AUDIT_COLUMNS}
            from audits a
            where a.status = 'running'
              and a.phase = any($1::text[])
              and a.pages_crawled < $2
              and exists (
                select 1
                from audit_frontier f
                where f.audit_id = a.id and f.status = 'pending'
              )
            """,
            list(POST_CRAWL_PHASES),
            max_pages,
        )
        return [self._audit_from_row(row) for row in rows]

    async def audit_stats(self, *, now: datetime, heartbeat_cap_seconds: int) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            phase_rows = await conn.fetch(
                "select phase, count(*) as audits from audits where status = 'running' group by phase"
            )
            stuck = await conn.fetchval(
                """
                select count(*)
                from audits
                where status = 'running'
                  and (
                    phase_heartbeat_at is null
                    or phase_heartbeat_at < $1 - ($2::int * interval '1 second')
                  )
                """,
                now,
                heartbeat_cap_seconds,
            )
            avg_minutes = await conn.fetchval(
                """
                select avg(extract(epoch from (completed_at - created_at)) / 60.0)::float8
                from audits
                where status = 'completed' and completed_at > $1 - interval '1 day'
                """,
                now,
            )
        by_phase = {row["phase"]: int(row["audits"]) for row in phase_rows}
        return {
            "running": sum(by_phase.values()),
            "by_phase": by_phase,
            "stuck": int(stuck or 0),
            "avg_duration_minutes": round(float(avg_minutes or 0.0), 2),
        }

    async def enqueue_urls(
        self,
        audit_id: str,
        entries: list[tuple[str, int, float]],
        *,
        now: datetime,
    ) -> int:
        if not entries:
            return 0
        unique: dict[str, tuple[str, int, float]] = {}
        for entry in entries:
            unique.setdefault(entry[0], entry)
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            insert into audit_frontier (audit_id, url, depth, priority, status, created_at, updated_at)
            select $1::uuid, e.url, e.depth, e.priority, 'pending', $5, $5
            from unnest($2::text[], $3::int[], $4::float8[]) as e(url, depth, priority)
            where exists (select 1 from audits where id = $1::uuid and status = 'running')
            on conflict (audit_id, url) do nothing
            returning url
            """,
            audit_id,
            [entry[0] for entry in unique.values()],
            [entry[1] for entry in unique.values()],
            [entry[2] for entry in unique.values()],
            now,
        )
        return len(rows)

    async def demote_stale_visiting(
        self,
        audit_id: str | None,
        *,
        older_than: datetime,
        now: datetime,
    ) -> int:
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update audit_frontier
            set status = 'pending', updated_at = $3
            where ($1::uuid is null or audit_id = $1::uuid)
              and status = 'visiting'
              and updated_at < $2
            """,
            audit_id,
            older_than,
            now,
        )
        return _affected(status)

    async def lease_next_url(self, audit_id: str, *, now: datetime) -> FrontierEntry | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update audit_frontier f
            set status = 'visiting', updated_at = $2
            where f.audit_id = $1::uuid
              and f.status = 'pending'
              and f.url = (
                select candidate.url
                from audit_frontier candidate
                where candidate.audit_id = $1::uuid and candidate.status = 'pending'
                order by candidate.priority asc, candidate.depth asc, candidate.created_at asc, candidate.url asc
                limit 1
                for update skip locked
              )
              and exists (select 1 from audits where id = $1::uuid and status = 'running')
            returning {FRONTIER_COLUMNS}
            """,
            audit_id,
            now,
        )
        return self._frontier_from_row(row) if row else None

    async def mark_url_done(self, audit_id: str, url: str, *, now: datetime) -> bool:
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update audit_frontier
            set status = 'done', updated_at = $3
            where audit_id = $1::uuid
              and url = $2
              and status <> 'done'
              and exists (select 1 from audits where id = $1::uuid and status = 'running')
            """,
            audit_id,
            url,
            now,
        )
        return _affected(status) > 0

    async def frontier_counts(self, audit_id: str) -> FrontierCounts:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select status, count(*) as urls from audit_frontier where audit_id = $1::uuid group by status",
            audit_id,
        )
        counts = FrontierCounts()
        for row in rows:
            if row["status"] == "pending":
                counts.pending = int(row["urls"])
            elif row["status"] == "visiting":
                counts.visiting = int(row["urls"])
            elif row["status"] == "done":
                counts.done = int(row["urls"])
        return counts

    async def list_frontier(self, audit_id: str) -> list[FrontierEntry]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {FRONTIER_COLUMNS}
            from audit_frontier
            where audit_id = $1::uuid
            order by created_at asc, url asc
            """,
            audit_id,
        )
        return [self._frontier_from_row(row) for row in rows]

    async def acquire_lock(
        self,
        audit_id: str,
        holder: str,
        *,
        expired_before: datetime,
        now: datetime,
    ) -> bool:
        pool = await self._get_pool()
        await pool.execute(
            "delete from audit_locks where audit_id = $1::uuid and locked_at < $2",
            audit_id,
            expired_before,
        )
        try:
            acquired = await pool.fetchval(
                """
                insert into audit_locks (audit_id, holder, locked_at)
                values ($1::uuid, $2, $3)
                on conflict (audit_id) do nothing
                returning audit_id::text
                """,
                audit_id,
                holder,
                now,
            )
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("audit not found") from exc
        return acquired is not None

    async def release_lock(self, audit_id: str, holder: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "delete from audit_locks where audit_id = $1::uuid and holder = $2",
            audit_id,
            holder,
        )

    async def upsert_page(
        self,
        audit_id: str,
        url: str,
        *,
        status_code: int,
        load_ms: int,
        content_type: str,
        body: str,
        now: datetime,
    ) -> bool:
        pool = await self._get_pool()
        status = await pool.execute(
            """
            insert into audit_pages (audit_id, url, status_code, load_ms, content_type, body, created_at, updated_at)
            select $1::uuid, $2, $3, $4, $5, $6, $7, $7
            where exists (select 1 from audits where id = $1::uuid and status = 'running')
            on conflict (audit_id, url) do update
            set
              status_code = excluded.status_code,
              load_ms = excluded.load_ms,
              content_type = excluded.content_type,
              body = excluded.body,
              updated_at = excluded.updated_at
            """,
            audit_id,
            url,
            status_code,
            load_ms,
            content_type,
            body,
            now,
        )
        return _affected(status) > 0

    async def count_unanalyzed_pages(self, audit_id: str) -> int:
        pool = await self._get_pool()
        value = await pool.fetchval(
            """
            select count(*)
            from audit_pages p
            left join audit_page_analysis a on a.audit_id = p.audit_id and a.url = p.url
            where p.audit_id = $1::uuid and a.url is null
            """,
            audit_id,
        )
        return int(value or 0)

    async def list_unanalyzed_pages(self, audit_id: str, *, limit: int) -> list[PageRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select p.audit_id::text as audit_id, p.url, p.status_code, p.load_ms, p.content_type, p.body, p.created_at
            from audit_pages p
            left join audit_page_analysis a on a.audit_id = p.audit_id and a.url = p.url
            where p.audit_id = $1::uuid and a.url is null
            order by p.created_at asc, p.url asc
            limit $2
            """,
            audit_id,
            limit,
        )
        return [
            PageRecord(
                audit_id=row["audit_id"],
                url=row["url"],
                status_code=int(row["status_code"]),
                load_ms=int(row["load_ms"]),
                content_type=row["content_type"],
                body=row["body"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def upsert_page_analysis(
        self,
        audit_id: str,
        url: str,
        analysis: dict[str, Any],
        *,
        now: datetime,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into audit_page_analysis (audit_id, url, title, h1_count, word_count, schema_types, analyzed_at)
            select $1::uuid, $2, $3, $4, $5, $6::text[], $7
            where exists (select 1 from audits where id = $1::uuid and status = 'running')
            on conflict (audit_id, url) do update
            set
              title = excluded.title,
              h1_count = excluded.h1_count,
              word_count = excluded.word_count,
              schema_types = excluded.schema_types,
              analyzed_at = excluded.analyzed_at
            """,
            audit_id,
            url,
            analysis.get("title"),
            int(analysis.get("h1_count") or 0),
            int(analysis.get("word_count") or 0),
            list(analysis.get("schema_types") or []),
            now,
        )

    async def analysis_summary(self, audit_id: str) -> dict[str, int]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              count(*) as total_pages,
              count(*) filter (where a.h1_count = 1) as proper_h1_pages,
              count(*) filter (where cardinality(a.schema_types) > 0) as schema_pages,
              count(*) filter (where 'FAQPage' = any(a.schema_types)) as faq_pages,
              count(*) filter (where p.status_code between 200 and 299) as ok_pages
            from audit_page_analysis a
            left join audit_pages p on p.audit_id = a.audit_id and p.url = a.url
            where a.audit_id = $1::uuid
            """,
            audit_id,
        )
        return {key: int(row[key] or 0) for key in ANALYSIS_SUMMARY_KEYS}

    async def record_citation_results(
        self,
        audit_id: str,
        records: list[CitationRecord],
        *,
        now: datetime,
    ) -> None:
        if not records:
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                """
                insert into audit_citations (
                  audit_id, query, provider, answer, citations, cited, error, duration_ms, created_at
                )
                select $1::uuid, $2, $3, $4, $5::jsonb, $6, $7, $8, $9
                where exists (select 1 from audits where id = $1::uuid and status = 'running')
                on conflict (audit_id, query) do update
                set
                  provider = excluded.provider,
                  answer = excluded.answer,
                  citations = excluded.citations,
                  cited = excluded.cited,
                  error = excluded.error,
                  duration_ms = excluded.duration_ms,
                  created_at = excluded.created_at
                """,
                [
                    (
                        audit_id,
                        record.query,
                        record.provider,
                        record.answer,
                        json.dumps(record.citations),
                        record.cited,
                        record.error,
                        record.duration_ms,
                        now,
                    )
                    for record in records
                ],
            )

    async def citation_summary(self, audit_id: str) -> dict[str, int]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              count(*) filter (where error is null) as answered,
              count(*) filter (where cited) as cited,
              count(*) filter (where error is not null) as errors
            from audit_citations
            where audit_id = $1::uuid
            """,
            audit_id,
        )
        return {key: int(row[key] or 0) for key in ("answered", "cited", "errors")}

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("AUDITOR_DATABASE_URL is required")

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

    @classmethod
    def _audit_from_row(cls, row: asyncpg.Record) -> AuditRecord:
        return AuditRecord(
            id=row["id"],
            domain=row["domain"],
            status=row["status"],
            phase=row["phase"],
            phase_started_at=row["phase_started_at"],
            phase_heartbeat_at=row["phase_heartbeat_at"],
            phase_attempts=int(row["phase_attempts"] or 0),
            pages_crawled=int(row["pages_crawled"] or 0),
            phase_state=cls._coerce_json_dict(row["phase_state"]),
            failure_code=row["failure_code"],
            failure_detail=row["failure_detail"],
            scores=cls._coerce_json_dict(row["scores"]),
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _frontier_from_row(row: asyncpg.Record) -> FrontierEntry:
        return FrontierEntry(
            audit_id=row["audit_id"],
            url=row["url"],
            depth=int(row["depth"]),
            priority=float(row["priority"]),
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

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


def _affected(status: str) -> int:
    try:
        return int(status.rsplit(" ", maxsplit=1)[-1])
    except (AttributeError, ValueError):
        return 0


@lru_cache
def get_repository() -> PostgresRepository | InMemoryRepository:
    settings = get_settings()
    if not settings.database_url:
        logger.warning("AUDITOR_DATABASE_URL not set; using in-memory audit store")
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
