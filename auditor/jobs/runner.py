from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable

from opentelemetry import trace

from auditor.core.config import Settings
from auditor.core.telemetry import bind_audit
from auditor.core.urls import extract_internal_links, is_internal, origin_url
from auditor.jobs.crawl_tick import run_crawl_tick
from auditor.jobs.scoring import compute_scores
from auditor.jobs.seed import (
    HOMEPAGE_PRIORITY,
    NAV_PRIORITY,
    SITEMAP_DEPTH,
    SITEMAP_PRIORITY,
    parse_robots,
    parse_sitemap,
    summarize_probes,
)
from auditor.jobs.transitions import advance_audit, ensure_crawl_complete_or_rewind
from auditor.services.analysis import BasicPageAnalyzer, PageAnalyzer
from auditor.services.citations import CitationOrchestrator
from auditor.services.fetcher import Fetcher
from auditor.services.records import AuditRecord, CitationRecord, next_phase

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CITATION_QUERY_TEMPLATES = (
    "what is {brand}",
    "{brand} reviews",
    "is {brand} legit",
    "{brand} alternatives",
    "{brand} pricing",
    "how does {brand} work",
    "{domain}",
    "best {brand} features",
)


@dataclass(slots=True)
class TickResult:
    audit_id: str
    phase: str | None
    outcome: str
    advanced_to: str | None = None
    should_continue: bool = False
    error: str | None = None


def citation_queries(domain: str, *, limit: int) -> list[str]:
    brand = domain.removeprefix("www.").split(".", maxsplit=1)[0].replace("-", " ")
    queries: list[str] = []
    for template in CITATION_QUERY_TEMPLATES:
        query = template.format(brand=brand, domain=domain)
        if query not in queries:
            queries.append(query)
    return queries[: max(0, limit)]


class AuditRunner:
    """Executes one bounded unit of work for an audit's current phase per call."""

    def __init__(
        self,
        repository: Any,
        fetcher: Fetcher,
        citations: CitationOrchestrator,
        analyzer: PageAnalyzer,
        settings: Settings,
    ) -> None:
        self.repository = repository
        self.fetcher = fetcher
        self.citations = citations
        self.analyzer = analyzer
        self.settings = settings
        self._handlers: dict[str, Callable[[AuditRecord, datetime], Awaitable[TickResult]]] = {
            "init": self._run_init,
            "discovery": self._run_discovery,
            "robots": self._run_robots,
            "sitemap": self._run_sitemap,
            "probes": self._run_probes,
            "crawl": self._run_crawl,
            "citations": self._run_citations,
            "synth": self._run_synth,
            "finalize": self._run_finalize,
        }

    @classmethod
    def from_settings(cls, repository: Any, settings: Settings) -> "AuditRunner":
        return cls(
            repository,
            Fetcher.from_settings(settings),
            CitationOrchestrator.from_settings(settings),
            BasicPageAnalyzer(),
            settings,
        )

    async def tick(self, audit_id: str, now: datetime | None = None) -> TickResult:
        now = now or datetime.now(timezone.utc)
        with tracer.start_as_current_span("audit.tick") as span, bind_audit(audit_id):
            span.set_attribute("audit.id", audit_id)
            audit = await self.repository.get_audit(audit_id)
            if audit is None:
                return TickResult(audit_id=audit_id, phase=None, outcome="not_found")
            span.set_attribute("audit.phase", audit.phase)
            if audit.status != "running":
                return TickResult(audit_id=audit_id, phase=audit.phase, outcome=audit.status)

            handler = self._handlers.get(audit.phase)
            if handler is None:
                logger.error("unknown audit phase audit_id=%s phase=%s", audit_id, audit.phase)
                return TickResult(audit_id=audit_id, phase=audit.phase, outcome="error", error="unknown phase")

            try:
                return await handler(audit, now)
            except Exception as exc:
                span.record_exception(exc)
                logger.exception("audit tick failed audit_id=%s phase=%s", audit_id, audit.phase)
                return TickResult(
                    audit_id=audit_id,
                    phase=audit.phase,
                    outcome="error",
                    error=f"{exc.__class__.__name__}: {exc}",
                )

    async def _run_init(self, audit: AuditRecord, now: datetime) -> TickResult:
        return await self._advance(audit, now)

    async def _run_discovery(self, audit: AuditRecord, now: datetime) -> TickResult:
        homepage = origin_url(audit.domain)
        fetched = await self.fetcher.fetch(homepage, self.settings.fetch_timeout_ms)
        entries: list[tuple[str, int, float]] = [(homepage, 0, HOMEPAGE_PRIORITY)]
        if fetched.ok and fetched.body:
            links = extract_internal_links(fetched.body, homepage, audit.domain, limit=self.settings.nav_seed_limit)
            entries.extend((link, 1, NAV_PRIORITY) for link in links)
        enqueued = await self.repository.enqueue_urls(audit.id, entries, now=now)
        await self.repository.update_phase_state(
            audit.id,
            {"discovery": {"status_code": fetched.status_code, "enqueued": enqueued}},
        )
        logger.info(
            "discovery seeded audit_id=%s status_code=%s enqueued=%s",
            audit.id,
            fetched.status_code,
            enqueued,
        )
        return await self._advance(audit, now)

    async def _run_robots(self, audit: AuditRecord, now: datetime) -> TickResult:
        homepage = origin_url(audit.domain)
        fetched = await self.fetcher.fetch(f"{homepage}robots.txt", self.settings.fetch_timeout_ms)
        robots = parse_robots(fetched.body if fetched.ok else "", homepage)
        robots["status_code"] = fetched.status_code
        await self.repository.update_phase_state(audit.id, {"robots": robots})
        return await self._advance(audit, now)

    async def _run_sitemap(self, audit: AuditRecord, now: datetime) -> TickResult:
        robots = audit.phase_state.get("robots") or {}
        declared = [url for url in robots.get("sitemaps") or [] if isinstance(url, str)]
        sitemap_url = declared[0] if declared else f"{origin_url(audit.domain)}sitemap.xml"
        fetched = await self.fetcher.fetch(sitemap_url, self.settings.fetch_timeout_ms)
        urls = parse_sitemap(fetched.body, audit.domain, limit=self.settings.sitemap_url_cap) if fetched.ok else []
        enqueued = await self.repository.enqueue_urls(
            audit.id,
            [(url, SITEMAP_DEPTH, SITEMAP_PRIORITY) for url in urls],
            now=now,
        )
        await self.repository.update_phase_state(
            audit.id,
            {
                "sitemap": {"url": sitemap_url, "status_code": fetched.status_code, "found": len(urls), "enqueued": enqueued},
                "seeded": True,
            },
        )
        return await self._advance(audit, now)

    async def _run_probes(self, audit: AuditRecord, now: datetime) -> TickResult:
        await self.repository.update_phase_state(audit.id, {"probes": summarize_probes(audit.phase_state.get("robots"))})
        return await self._advance(audit, now)

    async def _run_crawl(self, audit: AuditRecord, now: datetime) -> TickResult:
        if not audit.phase_state.get("seeded"):
            await self.repository.enqueue_urls(
                audit.id,
                [(origin_url(audit.domain), 0, HOMEPAGE_PRIORITY)],
                now=now,
            )
            await self.repository.update_phase_state(audit.id, {"seeded": True})
            logger.info("frontier seeded with homepage fallback audit_id=%s", audit.id)

        crawl = await run_crawl_tick(self.repository, self.fetcher, audit.id, settings=self.settings, now=now)
        return TickResult(
            audit_id=audit.id,
            phase=audit.phase,
            outcome=crawl.reason,
            advanced_to="citations" if crawl.advanced else None,
            should_continue=crawl.should_continue or crawl.advanced,
        )

    async def _run_citations(self, audit: AuditRecord, now: datetime) -> TickResult:
        if not await self._crawl_complete(audit, now):
            return self._rewound(audit)

        queries = citation_queries(audit.domain, limit=self.settings.citation_query_limit)
        batch = await self.citations.batch_fetch_citations(queries)
        records = [
            CitationRecord(
                query=result.query,
                provider=result.provider,
                answer=result.answer,
                citations=list(result.citations),
                cited=any(is_internal(url, audit.domain) for url in result.citations),
                duration_ms=result.duration_ms,
            )
            for result in batch.results
        ]
        records.extend(
            CitationRecord(query=failure.query, provider=None, answer=None, error=failure.error)
            for failure in batch.errors
        )
        await self.repository.record_citation_results(audit.id, records, now=now)
        logger.info(
            "citations recorded audit_id=%s results=%s errors=%s",
            audit.id,
            len(batch.results),
            len(batch.errors),
        )
        return await self._advance(audit, now)

    async def _run_synth(self, audit: AuditRecord, now: datetime) -> TickResult:
        if not await self._crawl_complete(audit, now):
            return self._rewound(audit)

        pages = await self.repository.list_unanalyzed_pages(audit.id, limit=self.settings.synth_batch_size)
        for page in pages:
            await self.repository.upsert_page_analysis(audit.id, page.url, self.analyzer.analyze(page), now=now)
        if pages:
            await self.repository.touch_heartbeat(audit.id, now=now)

        remaining = await self.repository.count_unanalyzed_pages(audit.id)
        if remaining > 0:
            return TickResult(audit_id=audit.id, phase=audit.phase, outcome="analyzed", should_continue=True)

        if not await advance_audit(self.repository, audit, "finalize", now=now):
            return TickResult(audit_id=audit.id, phase=audit.phase, outcome="stale")
        finalizing = await self.repository.get_audit(audit.id)
        if finalizing is None or finalizing.status != "running" or finalizing.phase != "finalize":
            return TickResult(audit_id=audit.id, phase=audit.phase, outcome="advanced", advanced_to="finalize")
        result = await self._run_finalize(finalizing, now)
        result.phase = audit.phase
        result.advanced_to = "finalize"
        return result

    async def _run_finalize(self, audit: AuditRecord, now: datetime) -> TickResult:
        if not await self._crawl_complete(audit, now):
            return self._rewound(audit)

        scores = compute_scores(
            await self.repository.analysis_summary(audit.id),
            await self.repository.citation_summary(audit.id),
            max_pages=self.settings.crawl_max_pages,
        )
        completed = await self.repository.complete_audit(audit.id, scores=scores, now=now)
        if completed:
            logger.info("audit completed audit_id=%s overall=%s", audit.id, scores["overall"])
        return TickResult(audit_id=audit.id, phase=audit.phase, outcome="completed" if completed else "stale")

    async def _advance(self, audit: AuditRecord, now: datetime) -> TickResult:
        to_phase = next_phase(audit.phase)
        advanced = await advance_audit(self.repository, audit, to_phase, now=now)
        return TickResult(
            audit_id=audit.id,
            phase=audit.phase,
            outcome="advanced" if advanced else "stale",
            advanced_to=to_phase if advanced else None,
            should_continue=advanced,
        )

    async def _crawl_complete(self, audit: AuditRecord, now: datetime) -> bool:
        return await ensure_crawl_complete_or_rewind(
            self.repository,
            audit,
            max_pages=self.settings.crawl_max_pages,
            now=now,
        )

    @staticmethod
    def _rewound(audit: AuditRecord) -> TickResult:
        return TickResult(
            audit_id=audit.id,
            phase=audit.phase,
            outcome="rewound",
            advanced_to="crawl",
            should_continue=True,
        )
