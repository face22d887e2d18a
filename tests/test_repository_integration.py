from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable
from pathlib import Path

import asyncpg  # type: ignore[import-untyped]
import pytest

from auditor.services.repository import PostgresRepository
from tests.support import at

MIGRATION = Path(__file__).resolve().parents[1] / "db" / "migrations" / "0001_audit_orchestration.sql"


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("AUDITOR_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require AUDITOR_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    asyncio.run(_prepare_schema(database_url))


async def _prepare_schema(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(MIGRATION.read_text())
        await conn.execute(
            """
            truncate table
              audit_phase_runs,
              audit_citations,
              audit_page_analysis,
              audit_pages,
              audit_locks,
              audit_frontier,
              audits
            restart identity cascade
            """
        )
    finally:
        await conn.close()


def _with_repository(database_url: str, scenario: Callable[[PostgresRepository], Awaitable[None]]) -> None:
    async def run() -> None:
        repository = PostgresRepository(database_url, min_pool_size=1, max_pool_size=2)
        try:
            await scenario(repository)
        finally:
            await repository.close()

    asyncio.run(run())


def test_frontier_lease_order_demotion_and_completion(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        audit = await repository.create_audit("example.com", now=at(0))
        assert await repository.get_audit("not-a-uuid") is None

        enqueued = await repository.enqueue_urls(
            audit.id,
            [
                ("https://example.com/deep", 2, 0.5),
                ("https://example.com/", 0, 0.0),
                ("https://example.com/nav", 1, 0.1),
                ("https://example.com/", 0, 0.0),
            ],
            now=at(0),
        )
        assert enqueued == 3

        first = await repository.lease_next_url(audit.id, now=at(1))
        second = await repository.lease_next_url(audit.id, now=at(2))
        assert first is not None and first.url == "https://example.com/"
        assert second is not None and second.url == "https://example.com/nav"

        assert await repository.demote_stale_visiting(audit.id, older_than=at(1.5), now=at(70)) == 1
        counts = await repository.frontier_counts(audit.id)
        assert (counts.pending, counts.visiting, counts.done) == (2, 1, 0)

        assert await repository.mark_url_done(audit.id, "https://example.com/nav", now=at(71))
        assert not await repository.mark_url_done(audit.id, "https://example.com/nav", now=at(72))

        await repository.upsert_page(
            audit.id,
            "https://example.com/nav",
            status_code=200,
            load_ms=12,
            content_type="text/html",
            body="<h1>Nav</h1>",
            now=at(71),
        )
        assert await repository.refresh_pages_crawled(audit.id, now=at(71)) == 1

    _with_repository(database_url, scenario)


def test_lock_is_exclusive_until_expiry(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        audit = await repository.create_audit("example.com", now=at(0))

        assert await repository.acquire_lock(audit.id, "first", expired_before=at(-20), now=at(0))
        assert not await repository.acquire_lock(audit.id, "second", expired_before=at(-10), now=at(10))

        await repository.release_lock(audit.id, "second")
        assert not await repository.acquire_lock(audit.id, "second", expired_before=at(-5), now=at(15))

        assert await repository.acquire_lock(audit.id, "second", expired_before=at(1), now=at(21))
        await repository.release_lock(audit.id, "second")
        assert await repository.acquire_lock(audit.id, "third", expired_before=at(2), now=at(22))

    _with_repository(database_url, scenario)


def test_phase_transitions_are_conditional_and_recorded(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        audit = await repository.create_audit("example.com", now=at(0))

        assert await repository.advance_phase(
            audit.id,
            from_phase="init",
            to_phase="discovery",
            reset_attempts=True,
            now=at(30),
            state_patch={"furthest_phase": "discovery"},
        )
        assert not await repository.advance_phase(
            audit.id,
            from_phase="init",
            to_phase="discovery",
            reset_attempts=True,
            now=at(31),
        )

        current = await repository.get_audit(audit.id)
        assert current is not None
        assert current.phase == "discovery"
        assert current.phase_state["furthest_phase"] == "discovery"
        assert await repository.phase_durations("init", since=at(-1)) == [30.0]

        assert await repository.reset_for_retry(
            audit.id,
            expected_phase="discovery",
            expected_attempts=0,
            max_attempts=3,
            now=at(40),
        )
        reset = await repository.get_audit(audit.id)
        assert reset is not None
        assert (reset.phase, reset.phase_attempts) == ("init", 1)

        assert not await repository.complete_audit(audit.id, scores={"overall": 1}, now=at(50))
        assert await repository.fail_audit(
            audit.id,
            failure_code="WATCHDOG_MAX_ATTEMPTS_INIT",
            failure_detail="{}",
            now=at(60),
            expected_phase="init",
        )
        assert await repository.count_recent_failures(since=at(0)) == {"WATCHDOG_MAX_ATTEMPTS_INIT": 1}
        assert await repository.list_running_audits() == []

    _with_repository(database_url, scenario)
