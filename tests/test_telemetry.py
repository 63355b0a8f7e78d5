from __future__ import annotations

import logging

from busqueda.core.config import Settings
from busqueda.core.telemetry import parse_otlp_headers, setup_telemetry, shutdown_telemetry


def test_parse_otlp_headers_skips_malformed_entries() -> None:
    parsed = parse_otlp_headers("authorization=Bearer abc, x-team = search ,broken,=empty")

    assert parsed == {"authorization": "Bearer abc", "x-team": "search"}
    assert parse_otlp_headers(None) == {}


def test_disabled_telemetry_still_correlates_log_records() -> None:
    runtime = setup_telemetry(Settings(otel_enabled=False, storage_backend="memory"))

    record = logging.getLogRecordFactory()("test", logging.INFO, __file__, 1, "message", (), None)

    assert runtime.enabled is False
    assert record.trace_id == "0" * 32
    assert record.span_id == "0" * 16
    shutdown_telemetry(runtime)
