from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup

TRACKING_KEYS = {"ref", "fbclid", "gclid", "msclkid", "mc_cid", "mc_eid"}
NON_PAGE_EXTENSIONS = {
    ".css",
    ".js",
    ".json",
    ".xml",
    ".txt",
    ".pdf",
    ".zip",
    ".gz",
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".svg",
    ".webp",
    ".ico",
    ".mp3",
    ".mp4",
    ".webm",
    ".woff",
    ".woff2",
    ".ttf",
}
DOMAIN_RE = re.compile(r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def normalize_domain(raw: str) -> str:
    candidate = raw.strip().lower()
    if "://" in candidate:
        candidate = urlparse(candidate).netloc
    candidate = candidate.split("/", maxsplit=1)[0].split(":", maxsplit=1)[0].rstrip(".")
    if not DOMAIN_RE.match(candidate):
        raise ValueError(f"invalid domain: {raw!r}")
    return candidate


def origin_url(domain: str) -> str:
    return f"https://{domain}/"


def normalize_url(raw_url: str) -> str:
    parsed = urlparse(raw_url.strip())

    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()
    if ":" in netloc:
        host, port = netloc.rsplit(":", maxsplit=1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host

    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path[:-1]

    filtered_query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key.lower())
    ]
    filtered_query_pairs.sort(key=lambda pair: pair[0])
    query = urlencode(filtered_query_pairs, doseq=True)
    return urlunparse((scheme, netloc, path, "", query, ""))


def resolve_link(href: str, base_url: str) -> str | None:
    stripped = href.strip()
    if not stripped or stripped.lower().startswith(("mailto:", "tel:", "javascript:", "data:")):
        return None
    absolute = urljoin(base_url, stripped)
    if urlparse(absolute).scheme.lower() not in {"http", "https"}:
        return None
    return normalize_url(absolute)


def is_internal(url: str, domain: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    bare = domain.lower().removeprefix("www.")
    return host == bare or host == f"www.{bare}"


def is_page_url(url: str) -> bool:
    path = urlparse(url).path.lower()
    last_segment = path.rsplit("/", maxsplit=1)[-1]
    if "." not in last_segment:
        return True
    return not any(last_segment.endswith(extension) for extension in NON_PAGE_EXTENSIONS)


def extract_internal_links(html: str, base_url: str, domain: str, *, limit: int) -> list[str]:
    links: list[str] = []
    seen: set[str] = set()
    for anchor in BeautifulSoup(html, "html.parser").find_all("a", href=True):
        if len(links) >= limit:
            break
        href = anchor["href"].strip()
        if href.startswith("#"):
            continue
        resolved = resolve_link(href, base_url)
        if not resolved or resolved in seen:
            continue
        if not is_internal(resolved, domain) or not is_page_url(resolved):
            continue
        seen.add(resolved)
        links.append(resolved)
    return links


def _is_tracking_param(key: str) -> bool:
    return key.startswith("utm_") or key in TRACKING_KEYS
