from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from auditor.core.config import get_settings
from auditor.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from auditor.jobs.runner import AuditRunner
from auditor.jobs.watchdog import WatchdogConfig, run_watchdog
from auditor.services.repository import get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def pump_once(runner: AuditRunner, repository, *, batch_size: int) -> bool:
    """Runs one tick per running audit; returns True when any audit asked to continue right away."""
    audits = await repository.list_running_audits(limit=batch_size)
    should_continue = False
    for audit in audits:
        with tracer.start_as_current_span("worker.audit_tick") as span:
            span.set_attribute("audit.id", audit.id)
            result = await runner.tick(audit.id)
            if result.error:
                logger.warning("audit tick reported error audit_id=%s phase=%s error=%s", audit.id, result.phase, result.error)
            should_continue = should_continue or result.should_continue
    return should_continue


async def run_worker() -> None:
    settings = get_settings()
    configure_logging(settings)
    telemetry_runtime = setup_telemetry(settings, role="worker")
    repository = get_repository()
    runner = AuditRunner.from_settings(repository, settings)
    watchdog_config = WatchdogConfig.from_settings(settings)

    backoff = settings.poll_interval_seconds
    last_watchdog_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_watchdog_at >= settings.watchdog_interval_seconds:
                        report = await run_watchdog(repository, watchdog_config)
                        if report.reenqueued or report.failed or report.rewound:
                            logger.info(
                                "watchdog actions reenqueued=%s failed=%s rewound=%s",
                                report.reenqueued,
                                report.failed,
                                report.rewound,
                            )
                        last_watchdog_at = now

                    busy = await pump_once(runner, repository, batch_size=settings.pump_batch_size)
                    backoff = settings.poll_interval_seconds
                    if not busy:
                        await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
