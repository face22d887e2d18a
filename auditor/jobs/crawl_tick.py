from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, AsyncIterator
from uuid import uuid4

from opentelemetry import trace

from auditor.core.config import Settings
from auditor.core.urls import extract_internal_links
from auditor.jobs.transitions import try_advance_from_crawl
from auditor.services.fetcher import Fetcher, FetchResult
from auditor.services.records import AuditRecord, FrontierCounts, FrontierEntry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CRAWL_LINK_PRIORITY = 1.0


@dataclass(slots=True)
class CrawlTickResult:
    audit_id: str
    processed_url: str | None = None
    status_code: int | None = None
    should_continue: bool = False
    skipped_lock: bool = False
    advanced: bool = False
    demoted: int = 0
    enqueued: int = 0
    pending: int = 0
    pages_crawled: int = 0
    reason: str = ""


@asynccontextmanager
async def single_flight(
    repository: Any,
    audit_id: str,
    *,
    ttl_seconds: int,
    now: datetime,
) -> AsyncIterator[bool]:
    holder = uuid4().hex
    acquired = await repository.acquire_lock(
        audit_id,
        holder,
        expired_before=now - timedelta(seconds=ttl_seconds),
        now=now,
    )
    try:
        yield acquired
    finally:
        if acquired:
            await repository.release_lock(audit_id, holder)


async def run_crawl_tick(
    repository: Any,
    fetcher: Fetcher,
    audit_id: str,
    *,
    settings: Settings,
    now: datetime | None = None,
) -> CrawlTickResult:
    now = now or datetime.now(timezone.utc)
    result = CrawlTickResult(audit_id=audit_id)

    with tracer.start_as_current_span("crawl.tick") as span:
        span.set_attribute("audit.id", audit_id)
        async with single_flight(repository, audit_id, ttl_seconds=settings.lock_ttl_seconds, now=now) as acquired:
            if not acquired:
                logger.info("crawl tick skipped; lock held audit_id=%s", audit_id)
                result.skipped_lock = True
                result.should_continue = True
                result.reason = "locked"
                return result

            audit = await repository.get_audit(audit_id)
            if audit is None or audit.status != "running" or audit.phase != "crawl":
                result.reason = "not_crawling"
                return result

            result.demoted = await repository.demote_stale_visiting(
                audit_id,
                older_than=now - timedelta(seconds=settings.visiting_ttl_seconds),
                now=now,
            )
            if result.demoted:
                logger.info("demoted stale leases audit_id=%s count=%s", audit_id, result.demoted)

            entry: FrontierEntry | None = None
            if audit.pages_crawled < settings.crawl_max_pages:
                entry = await repository.lease_next_url(audit_id, now=now)

            if entry is None:
                result.pages_crawled = audit.pages_crawled
                result.advanced = await try_advance_from_crawl(
                    repository,
                    audit,
                    max_pages=settings.crawl_max_pages,
                    now=now,
                )
                result.reason = "complete" if result.advanced else "no_work"
                return result

            span.set_attribute("crawl.url", entry.url)
            fetched = await fetcher.fetch(entry.url, settings.fetch_timeout_ms)
            await repository.upsert_page(
                audit_id,
                entry.url,
                status_code=fetched.status_code,
                load_ms=fetched.elapsed_ms,
                content_type=fetched.content_type,
                body=fetched.body,
                now=now,
            )
            result.pages_crawled = await repository.refresh_pages_crawled(audit_id, now=now)
            result.enqueued = await _enqueue_discovered_links(repository, audit, entry, fetched, settings, now)
            await repository.mark_url_done(audit_id, entry.url, now=now)

            counts = await repository.frontier_counts(audit_id)
            result.processed_url = entry.url
            result.status_code = fetched.status_code
            result.pending = counts.pending
            result.reason = "fetched"
            result.should_continue = await _chain_decision(repository, audit, counts, result.pages_crawled, settings, now)

            logger.info(
                "crawl tick audit_id=%s url=%s status_code=%s load_ms=%s pages=%s pending=%s enqueued=%s continue=%s",
                audit_id,
                entry.url,
                fetched.status_code,
                fetched.elapsed_ms,
                result.pages_crawled,
                counts.pending,
                result.enqueued,
                result.should_continue,
            )
            return result


async def _enqueue_discovered_links(
    repository: Any,
    audit: AuditRecord,
    entry: FrontierEntry,
    fetched: FetchResult,
    settings: Settings,
    now: datetime,
) -> int:
    if not fetched.ok or "html" not in fetched.content_type.lower():
        return 0
    if entry.depth >= settings.crawl_max_depth:
        return 0

    counts = await repository.frontier_counts(audit.id)
    room = settings.max_frontier_urls - counts.total
    if room <= 0:
        return 0

    links = extract_internal_links(
        fetched.body,
        entry.url,
        audit.domain,
        limit=min(settings.max_enqueue_per_page, room),
    )
    if not links:
        return 0
    return await repository.enqueue_urls(
        audit.id,
        [(link, entry.depth + 1, CRAWL_LINK_PRIORITY) for link in links],
        now=now,
    )


async def _chain_decision(
    repository: Any,
    audit: AuditRecord,
    counts: FrontierCounts,
    pages_crawled: int,
    settings: Settings,
    now: datetime,
) -> bool:
    if not settings.self_chain_enabled:
        return False
    if counts.pending == 0 or pages_crawled >= settings.crawl_max_pages:
        return False

    now_ms = int(now.timestamp() * 1000)
    started_at_ms = _as_int(audit.phase_state.get("chain_started_at_ms"))
    chain_count = _as_int(audit.phase_state.get("chain_count")) or 0
    if started_at_ms is None:
        started_at_ms, chain_count = now_ms, 0

    if now_ms - started_at_ms > settings.chain_soft_deadline_ms or chain_count >= settings.chain_max:
        await repository.update_phase_state(audit.id, {"chain_started_at_ms": None, "chain_count": 0})
        logger.info("chain window closed audit_id=%s chain_count=%s", audit.id, chain_count)
        return False

    await repository.update_phase_state(
        audit.id,
        {"chain_started_at_ms": started_at_ms, "chain_count": chain_count + 1},
    )
    return True


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
