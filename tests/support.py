from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from auditor.core.config import Settings
from auditor.services.fetcher import FetchResult
from auditor.services.records import AuditRecord
from auditor.services.store import InMemoryRepository

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "otel_enabled": False,
        "database_url": None,
        "api_key": None,
        "crawl_max_pages": 50,
        "self_chain_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


class FakeFetcher:
    def __init__(self, pages: dict[str, tuple[int, str, str]] | None = None) -> None:
        self.pages = pages or {}
        self.calls: list[str] = []

    async def fetch(self, url: str, timeout_ms: int) -> FetchResult:
        self.calls.append(url)
        if url not in self.pages:
            return FetchResult(ok=False, status_code=404, content_type="text/html", body="", elapsed_ms=3)
        status_code, content_type, body = self.pages[url]
        return FetchResult(
            ok=200 <= status_code < 300,
            status_code=status_code,
            content_type=content_type,
            body=body,
            elapsed_ms=7,
        )


def html_page(*hrefs: str, title: str = "Example", h1: int = 1, schema: str | None = None) -> tuple[int, str, str]:
    links = "".join(f'<a href="{href}">link</a>' for href in hrefs)
    headings = "".join("<h1>Heading</h1>" for _ in range(h1))
    script = f'<script type="application/ld+json">{schema}</script>' if schema else ""
    body = f"<html><head><title>{title}</title>{script}</head><body>{headings}<p>Plain words here.</p>{links}</body></html>"
    return 200, "text/html; charset=utf-8", body


async def crawling_audit(
    repository: InMemoryRepository,
    domain: str = "example.com",
    *,
    now: datetime = T0,
) -> AuditRecord:
    audit = await repository.create_audit(domain, now=now)
    stored = repository.audits[audit.id]
    stored.phase = "crawl"
    stored.phase_state.update({"seeded": True, "furthest_phase": "crawl"})
    return await repository.get_audit(audit.id)
