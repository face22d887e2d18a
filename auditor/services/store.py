from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
import itertools
from typing import Any
from uuid import uuid4

from auditor.services.records import (
    POST_CRAWL_PHASES,
    AuditRecord,
    CitationRecord,
    FrontierCounts,
    FrontierEntry,
    PageRecord,
    RepositoryNotFoundError,
)


@dataclass(slots=True)
class _PhaseRun:
    audit_id: str
    phase: str
    started_at: datetime | None
    ended_at: datetime


class InMemoryRepository:
    """Process-local audit store with the same conditional-write contract as the Postgres repository."""

    def __init__(self) -> None:
        self.audits: dict[str, AuditRecord] = {}
        self.frontier: dict[str, dict[str, FrontierEntry]] = {}
        self.locks: dict[str, tuple[str, datetime]] = {}
        self.pages: dict[str, dict[str, PageRecord]] = {}
        self.analysis: dict[str, dict[str, dict[str, Any]]] = {}
        self.citations: dict[str, dict[str, CitationRecord]] = {}
        self.phase_runs: list[_PhaseRun] = []
        self._sequence = itertools.count()
        self._frontier_order: dict[tuple[str, str], int] = {}

    async def close(self) -> None:
        return None

    async def create_audit(self, domain: str, *, now: datetime) -> AuditRecord:
        audit_id = str(uuid4())
        audit = AuditRecord(
            id=audit_id,
            domain=domain,
            status="running",
            phase="init",
            phase_started_at=now,
            phase_heartbeat_at=now,
            created_at=now,
        )
        self.audits[audit_id] = audit
        return self._snapshot(audit)

    async def get_audit(self, audit_id: str) -> AuditRecord | None:
        audit = self.audits.get(audit_id)
        return self._snapshot(audit) if audit else None

    async def list_running_audits(self, limit: int | None = None) -> list[AuditRecord]:
        running = [audit for audit in self.audits.values() if audit.status == "running"]
        running.sort(key=lambda audit: (audit.phase_heartbeat_at is not None, audit.phase_heartbeat_at or datetime.min))
        if limit is not None:
            running = running[:limit]
        return [self._snapshot(audit) for audit in running]

    async def touch_heartbeat(self, audit_id: str, *, now: datetime) -> bool:
        audit = self._running(audit_id)
        if audit is None:
            return False
        audit.phase_heartbeat_at = now
        return True

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
        audit = self._running(audit_id)
        if audit is None or audit.phase != from_phase:
            return False
        self.phase_runs.append(
            _PhaseRun(audit_id=audit_id, phase=from_phase, started_at=audit.phase_started_at, ended_at=now)
        )
        audit.phase = to_phase
        audit.phase_started_at = now
        audit.phase_heartbeat_at = now
        if reset_attempts:
            audit.phase_attempts = 0
        if state_patch:
            audit.phase_state.update(state_patch)
        return True

    async def rewind_to_crawl(
        self,
        audit_id: str,
        *,
        from_phase: str,
        now: datetime,
        bump_attempts: bool = False,
    ) -> bool:
        audit = self._running(audit_id)
        if audit is None or audit.phase != from_phase:
            return False
        audit.phase = "crawl"
        audit.phase_started_at = now
        audit.phase_heartbeat_at = now
        if bump_attempts:
            audit.phase_attempts += 1
        return True

    async def update_phase_state(self, audit_id: str, patch: dict[str, Any]) -> bool:
        audit = self._running(audit_id)
        if audit is None:
            return False
        audit.phase_state.update(patch)
        return True

    async def refresh_pages_crawled(self, audit_id: str, *, now: datetime) -> int:
        pages_crawled = len(self.pages.get(audit_id, {}))
        audit = self._running(audit_id)
        if audit is not None:
            audit.pages_crawled = pages_crawled
            audit.phase_heartbeat_at = now
        return pages_crawled

    async def complete_audit(self, audit_id: str, *, scores: dict[str, Any], now: datetime) -> bool:
        audit = self._running(audit_id)
        if audit is None or audit.phase != "finalize":
            return False
        audit.status = "completed"
        audit.scores = dict(scores)
        audit.completed_at = now
        audit.phase_heartbeat_at = now
        return True

    async def reset_for_retry(
        self,
        audit_id: str,
        *,
        expected_phase: str,
        expected_attempts: int,
        max_attempts: int,
        now: datetime,
    ) -> bool:
        audit = self._running(audit_id)
        if audit is None or audit.phase != expected_phase:
            return False
        if audit.phase_attempts != expected_attempts or audit.phase_attempts >= max_attempts:
            return False
        audit.phase = "init"
        audit.phase_started_at = now
        audit.phase_heartbeat_at = now
        audit.failure_code = None
        audit.failure_detail = None
        audit.phase_attempts += 1
        return True

    async def fail_audit(
        self,
        audit_id: str,
        *,
        failure_code: str,
        failure_detail: str,
        now: datetime,
        expected_phase: str | None = None,
    ) -> bool:
        audit = self._running(audit_id)
        if audit is None:
            return False
        if expected_phase is not None and audit.phase != expected_phase:
            return False
        audit.status = "failed"
        audit.failure_code = failure_code
        audit.failure_detail = failure_detail
        audit.completed_at = now
        return True

    async def count_recent_failures(self, *, since: datetime) -> dict[str, int]:
        counts: dict[str, int] = {}
        for audit in self.audits.values():
            if audit.status != "failed" or not audit.failure_code:
                continue
            if audit.completed_at is None or audit.completed_at <= since:
                continue
            counts[audit.failure_code] = counts.get(audit.failure_code, 0) + 1
        return counts

    async def phase_durations(self, phase: str, *, since: datetime) -> list[float]:
        return [
            (run.ended_at - run.started_at).total_seconds()
            for run in self.phase_runs
            if run.phase == phase and run.started_at is not None and run.ended_at > since
        ]

    async def list_frontier_stuck_audits(self, *, max_pages: int) -> list[AuditRecord]:
        stuck: list[AuditRecord] = []
        for audit in self.audits.values():
            if audit.status != "running" or audit.phase not in POST_CRAWL_PHASES:
                continue
            if audit.pages_crawled >= max_pages:
                continue
            if any(entry.status == "pending" for entry in self.frontier.get(audit.id, {}).values()):
                stuck.append(self._snapshot(audit))
        return stuck

    async def audit_stats(self, *, now: datetime, heartbeat_cap_seconds: int) -> dict[str, Any]:
        by_phase: dict[str, int] = {}
        stuck = 0
        cutoff = now - timedelta(seconds=heartbeat_cap_seconds)
        durations: list[float] = []
        for audit in self.audits.values():
            if audit.status == "running":
                by_phase[audit.phase] = by_phase.get(audit.phase, 0) + 1
                if audit.phase_heartbeat_at is None or audit.phase_heartbeat_at < cutoff:
                    stuck += 1
            elif audit.status == "completed" and audit.completed_at and audit.created_at:
                if audit.completed_at > now - timedelta(days=1):
                    durations.append((audit.completed_at - audit.created_at).total_seconds() / 60.0)
        avg_minutes = sum(durations) / len(durations) if durations else 0.0
        return {
            "running": sum(by_phase.values()),
            "by_phase": by_phase,
            "stuck": stuck,
            "avg_duration_minutes": round(avg_minutes, 2),
        }

    async def enqueue_urls(
        self,
        audit_id: str,
        entries: list[tuple[str, int, float]],
        *,
        now: datetime,
    ) -> int:
        if self._running(audit_id) is None:
            return 0
        frontier = self.frontier.setdefault(audit_id, {})
        inserted = 0
        for url, depth, priority in entries:
            if url in frontier:
                continue
            frontier[url] = FrontierEntry(
                audit_id=audit_id,
                url=url,
                depth=depth,
                priority=float(priority),
                status="pending",
                created_at=now,
                updated_at=now,
            )
            self._frontier_order[(audit_id, url)] = next(self._sequence)
            inserted += 1
        return inserted

    async def demote_stale_visiting(
        self,
        audit_id: str | None,
        *,
        older_than: datetime,
        now: datetime,
    ) -> int:
        scopes = [self.frontier.get(audit_id, {})] if audit_id is not None else list(self.frontier.values())
        demoted = 0
        for frontier in scopes:
            for entry in frontier.values():
                if entry.status == "visiting" and entry.updated_at < older_than:
                    entry.status = "pending"
                    entry.updated_at = now
                    demoted += 1
        return demoted

    async def lease_next_url(self, audit_id: str, *, now: datetime) -> FrontierEntry | None:
        if self._running(audit_id) is None:
            return None
        pending = [entry for entry in self.frontier.get(audit_id, {}).values() if entry.status == "pending"]
        if not pending:
            return None
        entry = min(
            pending,
            key=lambda item: (
                item.priority,
                item.depth,
                item.created_at,
                self._frontier_order.get((audit_id, item.url), 0),
            ),
        )
        entry.status = "visiting"
        entry.updated_at = now
        return replace(entry)

    async def mark_url_done(self, audit_id: str, url: str, *, now: datetime) -> bool:
        if self._running(audit_id) is None:
            return False
        entry = self.frontier.get(audit_id, {}).get(url)
        if entry is None or entry.status == "done":
            return False
        entry.status = "done"
        entry.updated_at = now
        return True

    async def frontier_counts(self, audit_id: str) -> FrontierCounts:
        counts = FrontierCounts()
        for entry in self.frontier.get(audit_id, {}).values():
            if entry.status == "pending":
                counts.pending += 1
            elif entry.status == "visiting":
                counts.visiting += 1
            elif entry.status == "done":
                counts.done += 1
        return counts

    async def list_frontier(self, audit_id: str) -> list[FrontierEntry]:
        entries = sorted(
            self.frontier.get(audit_id, {}).values(),
            key=lambda item: self._frontier_order.get((audit_id, item.url), 0),
        )
        return [replace(entry) for entry in entries]

    async def acquire_lock(
        self,
        audit_id: str,
        holder: str,
        *,
        expired_before: datetime,
        now: datetime,
    ) -> bool:
        if audit_id not in self.audits:
            raise RepositoryNotFoundError("audit not found")
        existing = self.locks.get(audit_id)
        if existing is not None and existing[1] < expired_before:
            del self.locks[audit_id]
            existing = None
        if existing is not None:
            return False
        self.locks[audit_id] = (holder, now)
        return True

    async def release_lock(self, audit_id: str, holder: str) -> None:
        existing = self.locks.get(audit_id)
        if existing is not None and existing[0] == holder:
            del self.locks[audit_id]

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
        if self._running(audit_id) is None:
            return False
        pages = self.pages.setdefault(audit_id, {})
        created_at = pages[url].created_at if url in pages else now
        pages[url] = PageRecord(
            audit_id=audit_id,
            url=url,
            status_code=status_code,
            load_ms=load_ms,
            content_type=content_type,
            body=body,
            created_at=created_at,
        )
        return True

    async def count_unanalyzed_pages(self, audit_id: str) -> int:
        analyzed = self.analysis.get(audit_id, {})
        return sum(1 for url in self.pages.get(audit_id, {}) if url not in analyzed)

    async def list_unanalyzed_pages(self, audit_id: str, *, limit: int) -> list[PageRecord]:
        analyzed = self.analysis.get(audit_id, {})
        pending = [page for url, page in self.pages.get(audit_id, {}).items() if url not in analyzed]
        return [replace(page) for page in pending[:limit]]

    async def upsert_page_analysis(
        self,
        audit_id: str,
        url: str,
        analysis: dict[str, Any],
        *,
        now: datetime,
    ) -> None:
        if self._running(audit_id) is None:
            return
        self.analysis.setdefault(audit_id, {})[url] = {**analysis, "analyzed_at": now}

    async def analysis_summary(self, audit_id: str) -> dict[str, int]:
        analyzed = self.analysis.get(audit_id, {})
        pages = self.pages.get(audit_id, {})
        rows = list(analyzed.values())
        return {
            "total_pages": len(rows),
            "proper_h1_pages": sum(1 for row in rows if int(row.get("h1_count") or 0) == 1),
            "schema_pages": sum(1 for row in rows if row.get("schema_types")),
            "faq_pages": sum(1 for row in rows if "FAQPage" in (row.get("schema_types") or [])),
            "ok_pages": sum(1 for url in analyzed if url in pages and 200 <= pages[url].status_code < 300),
        }

    async def record_citation_results(
        self,
        audit_id: str,
        records: list[CitationRecord],
        *,
        now: datetime,
    ) -> None:
        if self._running(audit_id) is None:
            return
        stored = self.citations.setdefault(audit_id, {})
        for record in records:
            stored[record.query] = replace(record, citations=list(record.citations))

    async def citation_summary(self, audit_id: str) -> dict[str, int]:
        rows = list(self.citations.get(audit_id, {}).values())
        return {
            "answered": sum(1 for row in rows if row.error is None),
            "cited": sum(1 for row in rows if row.cited),
            "errors": sum(1 for row in rows if row.error is not None),
        }

    def _running(self, audit_id: str) -> AuditRecord | None:
        audit = self.audits.get(audit_id)
        if audit is None or audit.status != "running":
            return None
        return audit

    @staticmethod
    def _snapshot(audit: AuditRecord) -> AuditRecord:
        return replace(audit, phase_state=dict(audit.phase_state), scores=dict(audit.scores))
