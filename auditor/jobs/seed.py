from __future__ import annotations

import re
from typing import Any
from urllib import robotparser

from bs4 import BeautifulSoup

from auditor.core.urls import is_internal, is_page_url, normalize_url

AI_CRAWLERS = ("GPTBot", "ClaudeBot", "PerplexityBot", "Google-Extended", "CCBot")
SITEMAP_DIRECTIVE_RE = re.compile(r"^\s*sitemap\s*:\s*(\S+)", re.IGNORECASE | re.MULTILINE)

HOMEPAGE_PRIORITY = 0.0
NAV_PRIORITY = 0.1
SITEMAP_PRIORITY = 0.5
SITEMAP_DEPTH = 2


def parse_robots(text: str, homepage_url: str) -> dict[str, Any]:
    parser = robotparser.RobotFileParser()
    parser.parse(text.splitlines())
    sitemaps = []
    for match in SITEMAP_DIRECTIVE_RE.finditer(text):
        candidate = match.group(1).strip()
        if candidate not in sitemaps:
            sitemaps.append(candidate)
    return {
        "found": bool(text.strip()),
        "sitemaps": sitemaps,
        "ai_bots": {bot: parser.can_fetch(bot, homepage_url) for bot in AI_CRAWLERS},
    }


def parse_sitemap(xml: str, domain: str, *, limit: int) -> list[str]:
    urls: list[str] = []
    seen: set[str] = set()
    for loc in BeautifulSoup(xml, "xml").find_all("loc"):
        if len(urls) >= limit:
            break
        raw = loc.get_text(strip=True)
        if not raw:
            continue
        try:
            url = normalize_url(raw)
        except ValueError:
            continue
        if url in seen or not is_internal(url, domain) or not is_page_url(url):
            continue
        seen.add(url)
        urls.append(url)
    return urls


def summarize_probes(robots: dict[str, Any] | None) -> dict[str, Any]:
    ai_bots = dict((robots or {}).get("ai_bots") or {})
    if not ai_bots:
        ai_bots = {bot: True for bot in AI_CRAWLERS}
    blocked = sorted(bot for bot, allowed in ai_bots.items() if not allowed)
    return {
        "robots_found": bool((robots or {}).get("found")),
        "ai_bots": ai_bots,
        "blocked_ai_bots": blocked,
        "all_ai_bots_allowed": not blocked,
    }
