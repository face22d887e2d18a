from __future__ import annotations

import asyncio

import pytest

from auditor.jobs.crawl_tick import CrawlTickResult, run_crawl_tick, single_flight
from auditor.jobs.transitions import crawl_is_complete
from auditor.services.records import FrontierCounts
from auditor.services.store import InMemoryRepository
from tests.support import FakeFetcher, at, crawling_audit, html_page, make_settings


def _seed(repository: InMemoryRepository, audit_id: str, urls: list[str], *, seconds: float = 0.0) -> int:
    return asyncio.run(repository.enqueue_urls(audit_id, [(url, 1, 0.1) for url in urls], now=at(seconds)))


def test_crawl_is_complete_on_page_cap_or_exhausted_frontier() -> None:
    assert crawl_is_complete(FrontierCounts(pending=4, visiting=0, done=5), pages_crawled=5, max_pages=5)
    assert crawl_is_complete(FrontierCounts(pending=0, visiting=0, done=2), pages_crawled=2, max_pages=5)
    assert not crawl_is_complete(FrontierCounts(pending=0, visiting=1, done=2), pages_crawled=2, max_pages=5)
    assert not crawl_is_complete(FrontierCounts(pending=3, visiting=0, done=2), pages_crawled=2, max_pages=5)


def test_ten_seeded_urls_with_five_page_cap_advance_to_citations() -> None:
    repository = InMemoryRepository()
    fetcher = FakeFetcher()
    settings = make_settings(crawl_max_pages=5)
    audit = asyncio.run(crawling_audit(repository))
    urls = [f"https://example.com/page-{index}" for index in range(10)]
    assert _seed(repository, audit.id, urls) == 10

    results: list[CrawlTickResult] = []
    for tick in range(5):
        results.append(asyncio.run(run_crawl_tick(repository, fetcher, audit.id, settings=settings, now=at(tick + 1))))

    assert [result.processed_url for result in results] == urls[:5]
    assert results[-1].pages_crawled == 5
    assert not any(result.advanced for result in results)

    final = asyncio.run(run_crawl_tick(repository, fetcher, audit.id, settings=settings, now=at(10)))
    assert final.processed_url is None
    assert final.advanced is True

    stored = asyncio.run(repository.get_audit(audit.id))
    assert stored.phase == "citations"
    assert stored.pages_crawled == 5
    assert len(fetcher.calls) == 5
    counts = asyncio.run(repository.frontier_counts(audit.id))
    assert (counts.pending, counts.visiting, counts.done) == (5, 0, 5)


def test_killed_lease_is_demoted_after_visiting_ttl_and_released_again() -> None:
    repository = InMemoryRepository()
    fetcher = FakeFetcher()
    settings = make_settings(visiting_ttl_seconds=60)
    audit = asyncio.run(crawling_audit(repository))
    _seed(repository, audit.id, ["https://example.com/x"])

    leased = asyncio.run(repository.lease_next_url(audit.id, now=at(0)))
    assert leased is not None and leased.status == "visiting"

    early = asyncio.run(run_crawl_tick(repository, fetcher, audit.id, settings=settings, now=at(30)))
    assert early.demoted == 0
    assert early.processed_url is None
    assert early.advanced is False
    assert fetcher.calls == []

    recovered = asyncio.run(run_crawl_tick(repository, fetcher, audit.id, settings=settings, now=at(61)))
    assert recovered.demoted == 1
    assert recovered.processed_url == "https://example.com/x"
    assert fetcher.calls == ["https://example.com/x"]
    counts = asyncio.run(repository.frontier_counts(audit.id))
    assert (counts.pending, counts.visiting, counts.done) == (0, 0, 1)


def test_overlapping_invocation_yields_without_leasing() -> None:
    repository = InMemoryRepository()
    fetcher = FakeFetcher()
    settings = make_settings(lock_ttl_seconds=20)
    audit = asyncio.run(crawling_audit(repository))
    _seed(repository, audit.id, ["https://example.com/a", "https://example.com/b"])
    assert asyncio.run(repository.acquire_lock(audit.id, "other-tick", expired_before=at(-20), now=at(0)))

    blocked = asyncio.run(run_crawl_tick(repository, fetcher, audit.id, settings=settings, now=at(5)))
    assert blocked.skipped_lock is True
    assert blocked.should_continue is True
    assert fetcher.calls == []
    assert asyncio.run(repository.frontier_counts(audit.id)).pending == 2
    assert repository.locks[audit.id][0] == "other-tick"

    after_expiry = asyncio.run(run_crawl_tick(repository, fetcher, audit.id, settings=settings, now=at(21)))
    assert after_expiry.skipped_lock is False
    assert after_expiry.processed_url == "https://example.com/a"
    assert audit.id not in repository.locks


def test_lock_is_released_when_the_tick_raises() -> None:
    class ExplodingFetcher:
        async def fetch(self, url: str, timeout_ms: int):
            raise RuntimeError("worker killed")

    repository = InMemoryRepository()
    audit = asyncio.run(crawling_audit(repository))
    _seed(repository, audit.id, ["https://example.com/a"])

    with pytest.raises(RuntimeError):
        asyncio.run(run_crawl_tick(repository, ExplodingFetcher(), audit.id, settings=make_settings(), now=at(1)))
    assert repository.locks == {}


def test_single_flight_only_releases_its_own_lock() -> None:
    repository = InMemoryRepository()
    audit = asyncio.run(crawling_audit(repository))

    async def run() -> tuple[bool, bool]:
        async with single_flight(repository, audit.id, ttl_seconds=20, now=at(0)) as first:
            async with single_flight(repository, audit.id, ttl_seconds=20, now=at(1)) as second:
                pass
            still_held = audit.id in repository.locks
        return first and not second, still_held

    exclusive, still_held = asyncio.run(run())
    assert exclusive is True
    assert still_held is True
    assert repository.locks == {}


def test_crawl_over_fully_done_frontier_fetches_nothing_and_advances() -> None:
    repository = InMemoryRepository()
    fetcher = FakeFetcher()
    audit = asyncio.run(crawling_audit(repository))
    urls = ["https://example.com/a", "https://example.com/b"]
    _seed(repository, audit.id, urls)
    for url in urls:
        asyncio.run(repository.mark_url_done(audit.id, url, now=at(1)))

    result = asyncio.run(run_crawl_tick(repository, fetcher, audit.id, settings=make_settings(), now=at(2)))

    assert fetcher.calls == []
    assert result.advanced is True
    assert asyncio.run(repository.get_audit(audit.id)).phase == "citations"


def test_failed_fetch_still_marks_url_done() -> None:
    repository = InMemoryRepository()
    fetcher = FakeFetcher()
    audit = asyncio.run(crawling_audit(repository))
    _seed(repository, audit.id, ["https://example.com/missing"])

    result = asyncio.run(run_crawl_tick(repository, fetcher, audit.id, settings=make_settings(), now=at(1)))

    assert result.status_code == 404
    page = repository.pages[audit.id]["https://example.com/missing"]
    assert page.status_code == 404 and page.body == ""
    assert asyncio.run(repository.frontier_counts(audit.id)).done == 1


def test_fetched_html_enqueues_internal_links_one_level_deeper() -> None:
    repository = InMemoryRepository()
    fetcher = FakeFetcher(
        {"https://example.com/a": html_page("/b", "/c", "https://elsewhere.org/d", "/logo.png")}
    )
    audit = asyncio.run(crawling_audit(repository))
    _seed(repository, audit.id, ["https://example.com/a"])

    result = asyncio.run(run_crawl_tick(repository, fetcher, audit.id, settings=make_settings(), now=at(1)))

    assert result.enqueued == 2
    frontier = {entry.url: entry for entry in asyncio.run(repository.list_frontier(audit.id))}
    assert frontier["https://example.com/b"].depth == 2
    assert frontier["https://example.com/c"].status == "pending"
    assert "https://elsewhere.org/d" not in frontier


def test_links_are_not_followed_beyond_max_depth() -> None:
    repository = InMemoryRepository()
    fetcher = FakeFetcher({"https://example.com/deep": html_page("/deeper")})
    audit = asyncio.run(crawling_audit(repository))
    asyncio.run(repository.enqueue_urls(audit.id, [("https://example.com/deep", 3, 1.0)], now=at(0)))

    result = asyncio.run(
        run_crawl_tick(repository, fetcher, audit.id, settings=make_settings(crawl_max_depth=3), now=at(1))
    )
    assert result.enqueued == 0


def test_chain_window_yields_after_max_chain_length() -> None:
    repository = InMemoryRepository()
    fetcher = FakeFetcher()
    settings = make_settings(self_chain_enabled=True, chain_max=2)
    audit = asyncio.run(crawling_audit(repository))
    _seed(repository, audit.id, [f"https://example.com/p{index}" for index in range(6)])

    decisions = [
        asyncio.run(run_crawl_tick(repository, fetcher, audit.id, settings=settings, now=at(tick))).should_continue
        for tick in range(1, 5)
    ]

    assert decisions == [True, True, False, True]
    state = asyncio.run(repository.get_audit(audit.id)).phase_state
    assert state["chain_count"] == 1


def test_chain_window_yields_after_soft_deadline() -> None:
    repository = InMemoryRepository()
    fetcher = FakeFetcher()
    settings = make_settings(self_chain_enabled=True, chain_max=10, chain_soft_deadline_ms=18000)
    audit = asyncio.run(crawling_audit(repository))
    _seed(repository, audit.id, [f"https://example.com/p{index}" for index in range(4)])

    first = asyncio.run(run_crawl_tick(repository, fetcher, audit.id, settings=settings, now=at(0)))
    late = asyncio.run(run_crawl_tick(repository, fetcher, audit.id, settings=settings, now=at(19)))

    assert first.should_continue is True
    assert late.should_continue is False
    assert asyncio.run(repository.get_audit(audit.id)).phase_state["chain_started_at_ms"] is None


def test_tick_always_yields_when_self_chaining_disabled() -> None:
    repository = InMemoryRepository()
    audit = asyncio.run(crawling_audit(repository))
    _seed(repository, audit.id, ["https://example.com/a", "https://example.com/b"])

    result = asyncio.run(run_crawl_tick(repository, FakeFetcher(), audit.id, settings=make_settings(), now=at(1)))
    assert result.processed_url == "https://example.com/a"
    assert result.should_continue is False


def test_failed_audit_is_not_crawled() -> None:
    repository = InMemoryRepository()
    fetcher = FakeFetcher()
    audit = asyncio.run(crawling_audit(repository))
    _seed(repository, audit.id, ["https://example.com/a"])
    asyncio.run(repository.fail_audit(audit.id, failure_code="X", failure_detail="{}", now=at(0)))

    result = asyncio.run(run_crawl_tick(repository, fetcher, audit.id, settings=make_settings(), now=at(1)))
    assert result.reason == "not_crawling"
    assert fetcher.calls == []
