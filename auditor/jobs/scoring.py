from __future__ import annotations

from typing import Any

CRAWL_SCORE_CEILING = 91
DEFAULT_STRUCTURED_SCORE = 50
DEFAULT_ANSWERABILITY_SCORE = 80
DEFAULT_TRUST_SCORE = 85
WEIGHTS = {"crawlability": 0.4, "structured": 0.3, "answerability": 0.2, "trust": 0.1}


def compute_scores(
    analysis: dict[str, int],
    citations: dict[str, int],
    *,
    max_pages: int,
) -> dict[str, Any]:
    total_pages = int(analysis.get("total_pages") or 0)
    proper_h1_pages = int(analysis.get("proper_h1_pages") or 0)
    schema_pages = int(analysis.get("schema_pages") or 0)
    ok_pages = int(analysis.get("ok_pages") or 0)

    if total_pages >= max_pages:
        crawlability = CRAWL_SCORE_CEILING
    else:
        crawlability = round(total_pages / max(1, max_pages) * CRAWL_SCORE_CEILING)

    structured = _ratio_score(schema_pages, total_pages, default=DEFAULT_STRUCTURED_SCORE)
    answerability = _ratio_score(proper_h1_pages, total_pages, default=DEFAULT_ANSWERABILITY_SCORE)
    # share of analyzed pages the site actually served
    trust = _ratio_score(ok_pages, total_pages, default=DEFAULT_TRUST_SCORE)

    components = {
        "crawlability": crawlability,
        "structured": structured,
        "answerability": answerability,
        "trust": trust,
    }
    overall = round(sum(components[name] * weight for name, weight in WEIGHTS.items()))

    answered = int(citations.get("answered") or 0)
    cited = int(citations.get("cited") or 0)
    return {
        "overall": overall,
        **components,
        "pages_analyzed": total_pages,
        "faq_pages": int(analysis.get("faq_pages") or 0),
        "citation_queries": answered,
        "citation_rate": round(cited / answered, 3) if answered else 0.0,
    }


def _ratio_score(part: int, total: int, *, default: int) -> int:
    if total <= 0:
        return default
    return min(100, round(part / total * 100))
