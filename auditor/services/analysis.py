from __future__ import annotations

import json
import re
from typing import Any, Protocol

from bs4 import BeautifulSoup

from auditor.services.records import PageRecord

WORD_RE = re.compile(r"\w+", re.UNICODE)
NON_CONTENT_TAGS = ("script", "style", "noscript", "template")


class PageAnalyzer(Protocol):
    def analyze(self, page: PageRecord) -> dict[str, Any]: ...


class BasicPageAnalyzer:
    """Extracts the few structural facts the final scores are built from."""

    def analyze(self, page: PageRecord) -> dict[str, Any]:
        html = page.body or ""
        if page.status_code == 0 or not html:
            return {"title": None, "h1_count": 0, "word_count": 0, "schema_types": []}

        soup = BeautifulSoup(html, "html.parser")
        title = soup.title.get_text(" ", strip=True) if soup.title else ""
        schema_types = _schema_types_from(soup)
        for tag in soup.find_all(NON_CONTENT_TAGS):
            tag.decompose()
        return {
            "title": " ".join(title.split()) or None,
            "h1_count": len(soup.find_all("h1")),
            "word_count": len(WORD_RE.findall(soup.get_text(" "))),
            "schema_types": schema_types,
        }


def extract_schema_types(html: str) -> list[str]:
    return _schema_types_from(BeautifulSoup(html, "html.parser"))


def _schema_types_from(soup: BeautifulSoup) -> list[str]:
    types: list[str] = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            payload = json.loads((script.string or "").strip())
        except json.JSONDecodeError:
            continue
        for schema_type in _collect_types(payload):
            if schema_type not in types:
                types.append(schema_type)
    return types


def _collect_types(payload: Any) -> list[str]:
    if isinstance(payload, list):
        return [schema_type for item in payload for schema_type in _collect_types(item)]
    if not isinstance(payload, dict):
        return []
    found: list[str] = []
    raw_type = payload.get("@type")
    if isinstance(raw_type, str):
        found.append(raw_type)
    elif isinstance(raw_type, list):
        found.extend(str(item) for item in raw_type if isinstance(item, str))
    graph = payload.get("@graph")
    if graph is not None:
        found.extend(_collect_types(graph))
    return found
