from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time

import httpx

from auditor.core.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; AnswerAuditor/1.0; +https://answer-auditor.dev/bot)"


@dataclass(slots=True)
class FetchResult:
    ok: bool
    status_code: int
    content_type: str
    body: str
    elapsed_ms: int
    error: str | None = None


class Fetcher:
    """GET with a total deadline and a body cap; failures come back as a zero-status result."""

    def __init__(
        self,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        max_body_bytes: int = 2_000_000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.user_agent = user_agent
        self.max_body_bytes = max(1, max_body_bytes)
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "Fetcher":
        return cls(user_agent=settings.user_agent, max_body_bytes=settings.fetch_max_body_bytes)

    async def fetch(self, url: str, timeout_ms: int) -> FetchResult:
        started_at = time.perf_counter()
        timeout_seconds = max(0.1, timeout_ms / 1000.0)
        try:
            async with asyncio.timeout(timeout_seconds):
                if self._client is not None:
                    return await self._get(self._client, url, timeout_seconds, started_at)
                async with httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True) as client:
                    return await self._get(client, url, timeout_seconds, started_at)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError, TimeoutError) as exc:
            logger.info("fetch failed url=%s error=%s elapsed_ms=%s", url, exc.__class__.__name__, _elapsed_ms(started_at))
            return _failed(exc, started_at)
        except Exception as exc:
            logger.exception("fetch crashed url=%s", url)
            return _failed(exc, started_at)

    async def _get(
        self,
        client: httpx.AsyncClient,
        url: str,
        timeout_seconds: float,
        started_at: float,
    ) -> FetchResult:
        headers = {"User-Agent": self.user_agent}
        async with client.stream("GET", url, headers=headers, timeout=timeout_seconds) as response:
            raw = await self._read_capped(response)
            return FetchResult(
                ok=response.is_success,
                status_code=int(response.status_code),
                content_type=response.headers.get("content-type", ""),
                body=_decode(raw, response.charset_encoding),
                elapsed_ms=_elapsed_ms(started_at),
            )

    async def _read_capped(self, response: httpx.Response) -> bytes:
        chunks: list[bytes] = []
        received = 0
        async for chunk in response.aiter_bytes():
            chunks.append(chunk)
            received += len(chunk)
            if received >= self.max_body_bytes:
                break
        return b"".join(chunks)[: self.max_body_bytes]


def _decode(raw: bytes, encoding: str | None) -> str:
    try:
        return raw.decode(encoding or "utf-8", errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def _failed(exc: BaseException, started_at: float) -> FetchResult:
    return FetchResult(
        ok=False,
        status_code=0,
        content_type="",
        body="",
        elapsed_ms=_elapsed_ms(started_at),
        error=f"{exc.__class__.__name__}: {exc}",
    )


def _elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000.0)
