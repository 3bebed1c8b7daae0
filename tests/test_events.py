from __future__ import annotations

import logging

from lesson_portal.services.events import AUDIT, DB_QUERY, FILE_OP, emit_event


def test_emit_event_formats_payload_and_drops_empty_values(caplog) -> None:
    with caplog.at_level(logging.DEBUG, logger="lesson_portal.events"):
        emit_event(
            DB_QUERY,
            "lesson_results.insert",
            payload={"status": "ok", "lesson_id": None, "note": "  "},
            correlation={"request_id": "abc"},
            duration_ms=1.23456,
        )

    record = caplog.records[-1]
    assert record.levelno == logging.DEBUG
    assert record.getMessage() == "[DB_QUERY] lesson_results.insert (request_id=abc, status=ok, duration_ms=1.23)"
    assert record.event_type == DB_QUERY
    assert record.event_payload == {"status": "ok"}
    assert record.event_correlation == {"request_id": "abc"}


def test_emit_event_joins_lists_and_truncates_long_values(caplog) -> None:
    with caplog.at_level(logging.INFO, logger="lesson_portal.events"):
        emit_event(FILE_OP, "blob.delete", payload={"keys": ["a.pdf", "b.pdf"], "reason": "x" * 300})

    record = caplog.records[-1]
    assert record.levelno == logging.INFO
    assert record.event_payload["keys"] == "a.pdf, b.pdf"
    assert record.event_payload["reason"] == "x" * 200 + "…"
    assert not hasattr(record, "event_duration_ms")


def test_emit_event_honours_explicit_level(caplog) -> None:
    with caplog.at_level(logging.INFO, logger="lesson_portal.events"):
        emit_event(AUDIT, "suspicious_upload", payload={"severity": "high"}, level=logging.WARNING)

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert record.getMessage() == "[AUDIT] suspicious_upload (severity=high)"
