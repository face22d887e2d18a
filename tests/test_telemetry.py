from __future__ import annotations

import logging

from auditor.core.telemetry import bind_audit, configure_logging, parse_otlp_headers, setup_telemetry
from tests.support import make_settings


def test_parse_otlp_headers_skips_malformed_pairs() -> None:
    assert parse_otlp_headers(None) == {}
    assert parse_otlp_headers("authorization=Bearer abc, x-team = audits ,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-team": "audits",
    }


def test_log_records_carry_bound_audit_id() -> None:
    configure_logging(make_settings())
    factory = logging.getLogRecordFactory()

    def make_record() -> logging.LogRecord:
        return factory("auditor.test", logging.INFO, __file__, 1, "message", (), None)

    with bind_audit("audit-42"):
        inside = make_record()
    outside = make_record()

    assert inside.audit_id == "audit-42"
    assert outside.audit_id == "-"
    assert inside.trace_id == "0" * 32


def test_disabled_telemetry_is_a_noop_runtime() -> None:
    runtime = setup_telemetry(make_settings(otel_enabled=False), role="worker")
    assert runtime.enabled is False
    assert runtime.provider is None
    assert runtime.role == "worker"
