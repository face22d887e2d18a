from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

AUDIT_STATUSES = {"running", "completed", "failed"}
AUDIT_PHASES = (
    "init",
    "discovery",
    "robots",
    "sitemap",
    "probes",
    "crawl",
    "citations",
    "synth",
    "finalize",
)
POST_CRAWL_PHASES = ("citations", "synth", "finalize")
FRONTIER_STATUSES = {"pending", "visiting", "done"}


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(slots=True)
class AuditRecord:
    id: str
    domain: str
    status: str
    phase: str
    phase_started_at: datetime | None
    phase_heartbeat_at: datetime | None
    phase_attempts: int = 0
    pages_crawled: int = 0
    phase_state: dict[str, Any] = field(default_factory=dict)
    failure_code: str | None = None
    failure_detail: str | None = None
    scores: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class FrontierEntry:
    audit_id: str
    url: str
    depth: int
    priority: float
    status: str
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class FrontierCounts:
    pending: int = 0
    visiting: int = 0
    done: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.visiting + self.done

    @property
    def open(self) -> int:
        return self.pending + self.visiting


@dataclass(slots=True)
class PageRecord:
    audit_id: str
    url: str
    status_code: int
    load_ms: int
    content_type: str
    body: str
    created_at: datetime | None = None


@dataclass(slots=True)
class CitationRecord:
    query: str
    provider: str | None
    answer: str | None
    citations: list[str] = field(default_factory=list)
    cited: bool = False
    error: str | None = None
    duration_ms: int | None = None


def phase_index(phase: str) -> int:
    try:
        return AUDIT_PHASES.index(phase)
    except ValueError:
        return 0


def next_phase(phase: str) -> str:
    index = phase_index(phase)
    return AUDIT_PHASES[min(index + 1, len(AUDIT_PHASES) - 1)]
