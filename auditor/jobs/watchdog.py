from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import json
import logging
import math
from typing import Any

from opentelemetry import trace

from auditor.core.config import Settings
from auditor.services.records import AuditRecord, RepositoryError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class WatchdogConfig:
    crawl_timeout_seconds: int = 90
    general_timeout_seconds: int = 120
    heartbeat_hard_cap_seconds: int = 120
    max_attempts: int = 3
    visiting_ttl_seconds: int = 60
    max_pages: int = 50
    recurring_failure_window_seconds: int = 600
    recurring_failure_threshold: int = 3
    slow_phase: str = "citations"
    slow_phase_window_seconds: int = 3600
    slow_phase_p95_seconds: float = 45.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "WatchdogConfig":
        return cls(
            crawl_timeout_seconds=settings.crawl_timeout_seconds,
            general_timeout_seconds=settings.general_timeout_seconds,
            heartbeat_hard_cap_seconds=settings.heartbeat_hard_cap_seconds,
            max_attempts=settings.max_attempts,
            visiting_ttl_seconds=settings.visiting_ttl_seconds,
            max_pages=settings.crawl_max_pages,
            recurring_failure_window_seconds=settings.recurring_failure_window_seconds,
            recurring_failure_threshold=settings.recurring_failure_threshold,
            slow_phase_window_seconds=settings.slow_phase_window_seconds,
            slow_phase_p95_seconds=settings.slow_phase_p95_seconds,
        )


@dataclass(slots=True)
class WatchdogReport:
    checked: int = 0
    stuck: int = 0
    reenqueued: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    rewound: list[str] = field(default_factory=list)
    visiting_demoted: int = 0
    alerts: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def heartbeat_age(audit: AuditRecord, now: datetime | None = None) -> float | None:
    now = now or datetime.now(timezone.utc)
    if audit.phase_heartbeat_at is None:
        return None
    return (now - audit.phase_heartbeat_at).total_seconds()


def is_stuck(audit: AuditRecord, now: datetime | None = None, config: WatchdogConfig | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    config = config or WatchdogConfig()
    if audit.status != "running":
        return False

    age = heartbeat_age(audit, now)
    if age is None or age > config.heartbeat_hard_cap_seconds:
        return True
    if audit.phase == "crawl":
        return age > config.crawl_timeout_seconds
    if audit.phase_started_at is None:
        return True
    return (now - audit.phase_started_at).total_seconds() > config.general_timeout_seconds


def percentile(values: list[float], pct: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
    return ordered[min(rank, len(ordered)) - 1]


async def run_watchdog(
    repository: Any,
    config: WatchdogConfig | None = None,
    *,
    now: datetime | None = None,
) -> WatchdogReport:
    now = now or datetime.now(timezone.utc)
    config = config or WatchdogConfig()
    report = WatchdogReport()

    with tracer.start_as_current_span("watchdog.sweep") as span:
        report.visiting_demoted = await repository.demote_stale_visiting(
            None,
            older_than=now - timedelta(seconds=config.visiting_ttl_seconds),
            now=now,
        )
        if report.visiting_demoted:
            logger.info("watchdog demoted stale leases count=%s", report.visiting_demoted)

        for audit in await repository.list_frontier_stuck_audits(max_pages=config.max_pages):
            rewound = await repository.rewind_to_crawl(
                audit.id,
                from_phase=audit.phase,
                now=now,
                bump_attempts=audit.phase_attempts < config.max_attempts,
            )
            if rewound:
                report.rewound.append(audit.id)
                logger.warning(
                    "WATCHDOG_REWIND_TO_CRAWL audit_id=%s phase=%s pages=%s",
                    audit.id,
                    audit.phase,
                    audit.pages_crawled,
                )

        running = await repository.list_running_audits()
        report.checked = len(running)
        for audit in running:
            if audit.id in report.rewound or not is_stuck(audit, now, config):
                continue
            report.stuck += 1
            age = heartbeat_age(audit, now)
            if age is None or age > config.heartbeat_hard_cap_seconds:
                report.alerts.append(f"AUDIT_STUCK:{audit.id}")
                logger.critical(
                    "AUDIT_STUCK audit_id=%s phase=%s heartbeat_age_seconds=%s",
                    audit.id,
                    audit.phase,
                    None if age is None else round(age),
                )
            try:
                await _recover(repository, audit, config, now, report)
            except RepositoryError as exc:
                report.errors.append(f"{audit.id}: {exc}")
                logger.exception("watchdog recovery failed audit_id=%s", audit.id)

        await _pattern_alerts(repository, config, now, report)

        span.set_attribute("watchdog.checked", report.checked)
        span.set_attribute("watchdog.stuck", report.stuck)

    logger.info(
        "watchdog sweep checked=%s stuck=%s reenqueued=%s failed=%s rewound=%s demoted=%s alerts=%s",
        report.checked,
        report.stuck,
        len(report.reenqueued),
        len(report.failed),
        len(report.rewound),
        report.visiting_demoted,
        len(report.alerts),
    )
    return report


async def _recover(
    repository: Any,
    audit: AuditRecord,
    config: WatchdogConfig,
    now: datetime,
    report: WatchdogReport,
) -> None:
    if audit.phase_attempts >= config.max_attempts:
        failure_code = f"WATCHDOG_MAX_ATTEMPTS_{audit.phase.upper()}"
        if await _fail(repository, audit, failure_code, now, expected_phase=audit.phase):
            report.failed.append(audit.id)
        return

    try:
        reset = await repository.reset_for_retry(
            audit.id,
            expected_phase=audit.phase,
            expected_attempts=audit.phase_attempts,
            max_attempts=config.max_attempts,
            now=now,
        )
    except RepositoryError:
        logger.exception("watchdog re-enqueue failed audit_id=%s", audit.id)
        if await _fail(repository, audit, "WATCHDOG_REENQUEUE_FAILED", now):
            report.failed.append(audit.id)
        return

    if reset:
        report.reenqueued.append(audit.id)
        logger.warning(
            "watchdog re-enqueued audit_id=%s phase=%s attempt=%s",
            audit.id,
            audit.phase,
            audit.phase_attempts + 1,
        )


async def _fail(
    repository: Any,
    audit: AuditRecord,
    failure_code: str,
    now: datetime,
    *,
    expected_phase: str | None = None,
) -> bool:
    detail = json.dumps(
        {
            "reason": "watchdog timeout",
            "code": failure_code,
            "phase": audit.phase,
            "attempts": audit.phase_attempts,
            "timestamp": now.isoformat(),
            "action": "auto_failed",
        }
    )
    failed = await repository.fail_audit(
        audit.id,
        failure_code=failure_code,
        failure_detail=detail,
        now=now,
        expected_phase=expected_phase,
    )
    if failed:
        logger.error("watchdog failed audit_id=%s failure_code=%s", audit.id, failure_code)
    return failed


async def _pattern_alerts(
    repository: Any,
    config: WatchdogConfig,
    now: datetime,
    report: WatchdogReport,
) -> None:
    failures = await repository.count_recent_failures(
        since=now - timedelta(seconds=config.recurring_failure_window_seconds)
    )
    for failure_code, count in sorted(failures.items()):
        if count >= config.recurring_failure_threshold:
            report.alerts.append(f"ALERT_RECURRING_FAILURE:{failure_code}")
            logger.error(
                "ALERT_RECURRING_FAILURE failure_code=%s count=%s window_seconds=%s",
                failure_code,
                count,
                config.recurring_failure_window_seconds,
            )

    durations = await repository.phase_durations(
        config.slow_phase,
        since=now - timedelta(seconds=config.slow_phase_window_seconds),
    )
    p95 = percentile(durations, 95)
    if durations and p95 > config.slow_phase_p95_seconds:
        report.alerts.append(f"ALERT_SLOW_PHASE:{config.slow_phase}")
        logger.error(
            "ALERT_SLOW_PHASE phase=%s p95_seconds=%.1f threshold_seconds=%.1f runs=%s",
            config.slow_phase,
            p95,
            config.slow_phase_p95_seconds,
            len(durations),
        )
