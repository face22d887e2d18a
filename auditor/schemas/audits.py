from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

AuditStatus = Literal["running", "completed", "failed"]
AuditPhase = Literal["init", "discovery", "robots", "sitemap", "probes", "crawl", "citations", "synth", "finalize"]


class AuditCreateRequest(BaseModel):
    domain: str = Field(min_length=3, max_length=253)


class AuditOut(BaseModel):
    id: str
    domain: str
    status: AuditStatus
    phase: AuditPhase
    phase_started_at: datetime | None = None
    phase_heartbeat_at: datetime | None = None
    phase_attempts: int = 0
    pages_crawled: int = 0
    phase_state: dict[str, Any] = Field(default_factory=dict)
    failure_code: str | None = None
    failure_detail: str | None = None
    scores: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    completed_at: datetime | None = None


class FrontierOut(BaseModel):
    audit_id: str
    pending: int
    visiting: int
    done: int
    total: int


class TickOut(BaseModel):
    audit_id: str
    phase: str | None = None
    outcome: str
    advanced_to: str | None = None
    should_continue: bool = False
    error: str | None = None


class WatchdogReportOut(BaseModel):
    checked: int
    stuck: int
    reenqueued: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    rewound: list[str] = Field(default_factory=list)
    visiting_demoted: int = 0
    alerts: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class AdminStatsOut(BaseModel):
    running: int
    by_phase: dict[str, int] = Field(default_factory=dict)
    stuck: int
    avg_duration_minutes: float
