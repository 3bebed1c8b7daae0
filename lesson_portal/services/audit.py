"""Best-effort security and activity audit trail."""

from __future__ import annotations

import logging
from typing import Any, Literal, Optional, Protocol

from .events import AUDIT, emit_event


LOGGER = logging.getLogger(__name__)

Severity = Literal["low", "medium", "high"]

_SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.WARNING,
}


class AuditSink(Protocol):
    def insert_audit_event(
        self,
        action: str,
        *,
        severity: str = "low",
        details: Optional[dict] = None,
        user_id: Optional[int] = None,
    ) -> int:
        ...


class AuditTrail:
    """Append audit events without ever failing the caller.

    A broken sink is reported through the module logger and otherwise
    ignored.
    """

    def __init__(self, sink: Optional[AuditSink]) -> None:
        self._sink = sink

    def record(
        self,
        action: str,
        *,
        user_id: Optional[int] = None,
        severity: Severity = "low",
        **details: Any,
    ) -> bool:
        emit_event(
            AUDIT,
            action,
            payload={"user_id": user_id, "severity": severity, **details},
            level=_SEVERITY_LEVELS.get(severity, logging.INFO),
        )
        if self._sink is None:
            return False
        try:
            self._sink.insert_audit_event(
                action,
                severity=severity,
                details=details,
                user_id=user_id,
            )
        except Exception:  # noqa: BLE001 - the audit trail must never break a request
            LOGGER.warning("Could not persist audit event '%s'", action, exc_info=True)
            return False
        return True

    def login_attempt(self, user_no: str, *, success: bool, user_id: Optional[int] = None) -> bool:
        return self.record(
            "login_attempt",
            user_id=user_id,
            severity="low" if success else "medium",
            user_no=user_no,
            success=success,
        )

    def unauthorized_access(self, user_id: Optional[int], resource: str, attempted_action: str) -> bool:
        return self.record(
            "unauthorized_access",
            user_id=user_id,
            severity="high",
            resource=resource,
            attempted_action=attempted_action,
        )

    def suspicious_activity(self, user_id: Optional[int], activity: str, **details: Any) -> bool:
        return self.record(
            "suspicious_activity",
            user_id=user_id,
            severity="high",
            activity=activity,
            **details,
        )


__all__ = ["AuditSink", "AuditTrail", "Severity"]
