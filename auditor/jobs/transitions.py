from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from auditor.services.records import AuditRecord, FrontierCounts, phase_index

logger = logging.getLogger(__name__)


def crawl_is_complete(counts: FrontierCounts, pages_crawled: int, max_pages: int) -> bool:
    """A crawl is finished once the page cap is reached or nothing is pending or leased."""
    return pages_crawled >= max_pages or counts.open == 0


async def advance_audit(repository: Any, audit: AuditRecord, to_phase: str, *, now: datetime) -> bool:
    furthest = phase_index(str(audit.phase_state.get("furthest_phase") or audit.phase))
    target = phase_index(to_phase)
    reached_new_phase = target > furthest
    advanced = await repository.advance_phase(
        audit.id,
        from_phase=audit.phase,
        to_phase=to_phase,
        reset_attempts=reached_new_phase,
        now=now,
        state_patch={"furthest_phase": to_phase} if reached_new_phase else None,
    )
    if advanced:
        logger.info("audit phase advanced audit_id=%s from=%s to=%s", audit.id, audit.phase, to_phase)
    return advanced


async def try_advance_from_crawl(
    repository: Any,
    audit: AuditRecord,
    *,
    max_pages: int,
    now: datetime,
) -> bool:
    if audit.phase != "crawl":
        return False
    counts = await repository.frontier_counts(audit.id)
    if not crawl_is_complete(counts, audit.pages_crawled, max_pages):
        return False
    return await advance_audit(repository, audit, "citations", now=now)


async def ensure_crawl_complete_or_rewind(
    repository: Any,
    audit: AuditRecord,
    *,
    max_pages: int,
    now: datetime,
) -> bool:
    counts = await repository.frontier_counts(audit.id)
    if crawl_is_complete(counts, audit.pages_crawled, max_pages):
        return True
    rewound = await repository.rewind_to_crawl(audit.id, from_phase=audit.phase, now=now)
    logger.warning(
        "crawl incomplete; rewinding audit_id=%s phase=%s pending=%s visiting=%s pages=%s rewound=%s",
        audit.id,
        audit.phase,
        counts.pending,
        counts.visiting,
        audit.pages_crawled,
        rewound,
    )
    return False
