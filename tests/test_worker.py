from __future__ import annotations

import asyncio

from auditor.jobs.runner import AuditRunner, TickResult
from auditor.services.analysis import BasicPageAnalyzer
from auditor.services.citations import CitationOrchestrator
from auditor.services.store import InMemoryRepository
from auditor.worker_main import pump_once
from tests.support import FakeFetcher, at, make_settings


def _runner(repository: InMemoryRepository) -> AuditRunner:
    return AuditRunner(repository, FakeFetcher(), CitationOrchestrator([]), BasicPageAnalyzer(), make_settings())


def test_pump_once_ticks_each_running_audit() -> None:
    repository = InMemoryRepository()
    first = asyncio.run(repository.create_audit("example.com", now=at(0)))
    second = asyncio.run(repository.create_audit("example.org", now=at(1)))
    done = asyncio.run(repository.create_audit("example.net", now=at(2)))
    asyncio.run(repository.fail_audit(done.id, failure_code="X", failure_detail="{}", now=at(3)))

    busy = asyncio.run(pump_once(_runner(repository), repository, batch_size=10))

    assert busy is True
    assert asyncio.run(repository.get_audit(first.id)).phase == "discovery"
    assert asyncio.run(repository.get_audit(second.id)).phase == "discovery"
    assert asyncio.run(repository.get_audit(done.id)).phase == "init"


def test_pump_once_respects_batch_size_and_reports_idle(monkeypatch) -> None:
    repository = InMemoryRepository()
    for index in range(3):
        asyncio.run(repository.create_audit(f"site{index}.com", now=at(index)))
    runner = _runner(repository)
    ticked: list[str] = []

    async def idle_tick(audit_id: str, now=None) -> TickResult:
        ticked.append(audit_id)
        return TickResult(audit_id=audit_id, phase="crawl", outcome="no_work")

    monkeypatch.setattr(runner, "tick", idle_tick)
    busy = asyncio.run(pump_once(runner, repository, batch_size=2))

    assert busy is False
    assert len(ticked) == 2
