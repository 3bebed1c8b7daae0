"""Structured log events for queries, blob operations and audit entries."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional


EVENT_LOGGER = logging.getLogger("lesson_portal.events")

DB_QUERY = "DB_QUERY"
FILE_OP = "FILE_OP"
AUDIT = "AUDIT"

_DEFAULT_LEVELS = {DB_QUERY: logging.DEBUG}

_MAX_VALUE_LENGTH = 200


def _clean(values: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in (values or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            value = ", ".join(str(item) for item in value)
        elif not isinstance(value, (bool, int, float)):
            value = str(value).strip()
        if value == "":
            continue
        if isinstance(value, str) and len(value) > _MAX_VALUE_LENGTH:
            value = value[:_MAX_VALUE_LENGTH] + "…"
        cleaned[str(key)] = value
    return cleaned


def emit_event(
    event_type: str,
    action: str,
    *,
    payload: Optional[Mapping[str, Any]] = None,
    correlation: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: Optional[int] = None,
    logger: logging.Logger | logging.LoggerAdapter = EVENT_LOGGER,
) -> None:
    """Log ``[TYPE] action (key=value, ...)``.

    Empty payload entries are dropped. The cleaned payload, the correlation
    values and the duration are also attached to the record as ``event_*``
    attributes for handlers that ship structured logs.
    """

    details = _clean(payload)
    context = _clean(correlation)
    shown = {**context, **details}
    if duration_ms is not None:
        shown["duration_ms"] = round(float(duration_ms), 2)

    message = f"[{event_type}] {action}"
    if shown:
        message += " (" + ", ".join(f"{key}={value}" for key, value in shown.items()) + ")"

    extra: Dict[str, Any] = {"event_type": event_type, "event_name": action, "event_payload": details}
    if context:
        extra["event_correlation"] = context
    if duration_ms is not None:
        extra["event_duration_ms"] = float(duration_ms)
    if level is None:
        level = _DEFAULT_LEVELS.get(event_type, logging.INFO)
    logger.log(level, message, extra=extra)


__all__ = ["AUDIT", "DB_QUERY", "EVENT_LOGGER", "FILE_OP", "emit_event"]
