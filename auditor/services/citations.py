from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import random
import time
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import httpx
from opentelemetry import trace

from auditor.core.config import Settings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = {429, 503}
BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
MIN_QUERY_LENGTH = 3
SUMMARY_SOURCE_LIMIT = 8

Sleep = Callable[[float], Awaitable[Any]]


class CitationProviderError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        if retryable is None:
            retryable = status_code in RETRYABLE_STATUS_CODES
        self.retryable = retryable


class NoCitationProviderError(Exception):
    """Raised when every configured search provider failed or returned nothing."""


@dataclass(slots=True)
class SearchResult:
    title: str
    url: str
    snippet: str


@dataclass(slots=True)
class CitationAnswer:
    query: str
    answer: str
    citations: list[str]
    provider: str
    duration_ms: int


@dataclass(slots=True)
class CitationFailure:
    query: str
    error: str


@dataclass(slots=True)
class BatchCitationResult:
    results: list[CitationAnswer] = field(default_factory=list)
    errors: list[CitationFailure] = field(default_factory=list)


class SearchProvider(Protocol):
    name: str

    async def search(self, query: str, count: int = 10) -> list[SearchResult]: ...


class Summarizer(Protocol):
    name: str

    async def summarize(self, query: str, results: list[SearchResult]) -> str: ...


class RateLimiter:
    """Token bucket shared by every provider call of one orchestrator."""

    def __init__(
        self,
        capacity: int,
        refill_per_second: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        poll_seconds: float = 0.1,
    ) -> None:
        self.capacity = max(1, int(capacity))
        self.refill_per_second = max(0.001, float(refill_per_second))
        self.tokens = float(self.capacity)
        self._clock = clock
        self._sleep = sleep
        self._poll_seconds = poll_seconds
        self._updated_at = clock()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        while True:
            async with self._lock:
                self._refill()
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return
                wait_for = max((1.0 - self.tokens) / self.refill_per_second, self._poll_seconds)
            await self._sleep(wait_for)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.refill_per_second)
        self._updated_at = now


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay_seconds: float = 0.5,
    sleep: Sleep = asyncio.sleep,
    jitter: Callable[[], float] = random.random,
) -> T:
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except CitationProviderError as exc:
            if not exc.retryable or attempt >= attempts - 1:
                raise
            delay = base_delay_seconds * (2**attempt) * (0.5 + jitter() * 0.5)
            logger.info(
                "citation provider retry attempt=%s status_code=%s wait_seconds=%.2f",
                attempt + 1,
                exc.status_code,
                delay,
            )
            await sleep(delay)
    raise RuntimeError("retry loop exited without result")  # pragma: no cover


class BraveSearchProvider:
    name = "brave"

    def __init__(
        self,
        api_key: str,
        *,
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def search(self, query: str, count: int = 10) -> list[SearchResult]:
        params = {
            "q": query.strip(),
            "count": min(count, 20),
            "country": "us",
            "safesearch": "moderate",
        }
        headers = {"X-Subscription-Token": self.api_key, "Accept": "application/json"}
        if self._client is not None:
            payload = await _get_json(self._client, BRAVE_SEARCH_URL, params=params, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                payload = await _get_json(client, BRAVE_SEARCH_URL, params=params, headers=headers)

        web = payload.get("web") if isinstance(payload, dict) else None
        raw_results = web.get("results") if isinstance(web, dict) else None
        if not isinstance(raw_results, list):
            return []
        return [
            SearchResult(
                title=str(item.get("title") or ""),
                url=str(item.get("url") or ""),
                snippet=str(item.get("description") or ""),
            )
            for item in raw_results
            if isinstance(item, dict) and item.get("url")
        ]


class OpenAISummarizer:
    name = "gpt"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o",
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def summarize(self, query: str, results: list[SearchResult]) -> str:
        sources = "\n\n".join(
            f"- {result.title}\n  {result.url}\n  {result.snippet}" for result in results[:SUMMARY_SOURCE_LIMIT]
        )
        body = {
            "model": self.model,
            "temperature": 0.2,
            "messages": [
                {
                    "role": "system",
                    "content": (
                        "You are a search result summarizer. Create a brief, accurate summary using ONLY "
                        "the sources provided. Always cite sources with their exact URLs."
                    ),
                },
                {
                    "role": "user",
                    "content": (
                        f'Query: "{query}"\n\nSources:\n{sources}\n\n'
                        "Provide a brief answer (2-3 sentences) and list the URLs you referenced."
                    ),
                },
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url}/chat/completions"
        if self._client is not None:
            payload = await _post_json(self._client, url, json_body=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                payload = await _post_json(client, url, json_body=body, headers=headers)

        try:
            answer = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise CitationProviderError("summarizer returned no choices", retryable=False) from exc
        return str(answer or "")


class CitationOrchestrator:
    def __init__(
        self,
        search_providers: list[SearchProvider],
        *,
        summarizer: Summarizer | None = None,
        limiter: RateLimiter | None = None,
        retry_attempts: int = 3,
        retry_base_seconds: float = 0.5,
        max_concurrent: int = 3,
        chunk_delay_seconds: float = 0.2,
        result_count: int = 10,
        sleep: Sleep = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        self.search_providers = list(search_providers)
        self.summarizer = summarizer
        self.limiter = limiter or RateLimiter(5, 5.0, sleep=sleep)
        self.retry_attempts = retry_attempts
        self.retry_base_seconds = retry_base_seconds
        self.max_concurrent = max(1, max_concurrent)
        self.chunk_delay_seconds = max(0.0, chunk_delay_seconds)
        self.result_count = result_count
        self._sleep = sleep
        self._jitter = jitter

    @classmethod
    def from_settings(cls, settings: Settings) -> "CitationOrchestrator":
        search_providers: list[SearchProvider] = []
        if settings.brave_api_key:
            search_providers.append(
                BraveSearchProvider(settings.brave_api_key, timeout_seconds=settings.citation_timeout_seconds)
            )
        summarizer: Summarizer | None = None
        if settings.openai_api_key:
            summarizer = OpenAISummarizer(
                settings.openai_api_key,
                base_url=settings.openai_base_url,
                model=settings.openai_model,
                timeout_seconds=settings.citation_timeout_seconds,
            )
        return cls(
            search_providers,
            summarizer=summarizer,
            limiter=RateLimiter(settings.citation_rate_capacity, settings.citation_rate_refill_per_second),
            retry_attempts=settings.citation_retry_attempts,
            retry_base_seconds=settings.citation_retry_base_seconds,
            max_concurrent=settings.citation_max_concurrent,
            chunk_delay_seconds=settings.citation_chunk_delay_seconds,
        )

    async def fetch_citations(self, query: str) -> CitationAnswer:
        started_at = time.perf_counter()
        trimmed = query.strip()
        if len(trimmed) < MIN_QUERY_LENGTH:
            raise ValueError("query too short")

        for provider in self.search_providers:
            try:
                results = await self._retrying(lambda: self._limited_search(provider, trimmed))
            except CitationProviderError as exc:
                logger.warning(
                    "citation search failed provider=%s status_code=%s error=%s",
                    provider.name,
                    exc.status_code,
                    exc,
                )
                continue
            if not results:
                logger.info("citation search empty provider=%s", provider.name)
                continue

            citations = [result.url for result in results]
            if self.summarizer is not None:
                summarizer = self.summarizer
                try:
                    answer = await self._retrying(lambda: self._limited_summarize(summarizer, trimmed, results))
                except CitationProviderError as exc:
                    logger.warning(
                        "citation summarizer failed provider=%s status_code=%s; using raw results",
                        summarizer.name,
                        exc.status_code,
                    )
                else:
                    return CitationAnswer(
                        query=trimmed,
                        answer=answer,
                        citations=citations,
                        provider=f"{provider.name}+{summarizer.name}",
                        duration_ms=_elapsed_ms(started_at),
                    )

            return CitationAnswer(
                query=trimmed,
                answer=results[0].snippet or "See sources below",
                citations=citations,
                provider=f"{provider.name}-web",
                duration_ms=_elapsed_ms(started_at),
            )

        raise NoCitationProviderError("all citation providers failed")

    async def batch_fetch_citations(self, queries: list[str]) -> BatchCitationResult:
        unique: list[str] = []
        seen: set[str] = set()
        for query in queries:
            trimmed = query.strip()
            if len(trimmed) < MIN_QUERY_LENGTH or trimmed in seen:
                continue
            seen.add(trimmed)
            unique.append(trimmed)

        batch = BatchCitationResult()
        with tracer.start_as_current_span("citations.batch") as span:
            span.set_attribute("citations.query_count", len(unique))
            for index in range(0, len(unique), self.max_concurrent):
                if index > 0 and self.chunk_delay_seconds > 0:
                    await self._sleep(self.chunk_delay_seconds)
                chunk = unique[index : index + self.max_concurrent]
                outcomes = await asyncio.gather(
                    *(self.fetch_citations(query) for query in chunk),
                    return_exceptions=True,
                )
                for query, outcome in zip(chunk, outcomes):
                    if isinstance(outcome, CitationAnswer):
                        batch.results.append(outcome)
                    elif isinstance(outcome, Exception):
                        batch.errors.append(CitationFailure(query=query, error=str(outcome) or type(outcome).__name__))
                    else:
                        raise outcome

        logger.info(
            "citation batch finished queries=%s results=%s errors=%s",
            len(unique),
            len(batch.results),
            len(batch.errors),
        )
        return batch

    async def _limited_search(self, provider: SearchProvider, query: str) -> list[SearchResult]:
        await self.limiter.acquire()
        return await provider.search(query, self.result_count)

    async def _limited_summarize(self, summarizer: Summarizer, query: str, results: list[SearchResult]) -> str:
        await self.limiter.acquire()
        return await summarizer.summarize(query, results)

    async def _retrying(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await with_retry(
            operation,
            attempts=self.retry_attempts,
            base_delay_seconds=self.retry_base_seconds,
            sleep=self._sleep,
            jitter=self._jitter,
        )


async def _get_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: dict[str, Any],
    headers: dict[str, str],
) -> Any:
    try:
        response = await client.get(url, params=params, headers=headers)
    except httpx.TransportError as exc:
        raise CitationProviderError(f"transport error: {exc.__class__.__name__}", retryable=True) from exc
    return _json_or_raise(response)


async def _post_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    json_body: dict[str, Any],
    headers: dict[str, str],
) -> Any:
    try:
        response = await client.post(url, json=json_body, headers=headers)
    except httpx.TransportError as exc:
        raise CitationProviderError(f"transport error: {exc.__class__.__name__}", retryable=True) from exc
    return _json_or_raise(response)


def _json_or_raise(response: httpx.Response) -> Any:
    if response.status_code >= 400:
        raise CitationProviderError(
            f"provider responded {response.status_code}",
            status_code=response.status_code,
        )
    try:
        return response.json()
    except ValueError as exc:
        raise CitationProviderError("provider returned invalid json", retryable=False) from exc


def _elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000.0)
