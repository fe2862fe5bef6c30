"""Admin alert queue for failures that must not block the clinical workflow."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db.models import AdminAlert, AlertSeverity
from .observability import ADMIN_ALERTS_TOTAL
from .time_utils import utc_now


logger = structlog.get_logger(__name__)


ALERT_EMAIL_FAILURE = "email-failure"
ALERT_RECIPIENT_FETCH_FAILURE = "recipient-fetch-failure"
ALERT_NOTIFICATION_HISTORY_FAILURE = "notification-history-failure"
ALERT_NOTIFICATION_FAILURE = "notification-failure"
ALERT_UNASSIGNED_TECHNICIAN = "unassigned-technician"

ALERT_TYPES = frozenset(
    {
        ALERT_EMAIL_FAILURE,
        ALERT_RECIPIENT_FETCH_FAILURE,
        ALERT_NOTIFICATION_HISTORY_FAILURE,
        ALERT_NOTIFICATION_FAILURE,
        ALERT_UNASSIGNED_TECHNICIAN,
    }
)


class AdminAlertNotFoundError(Exception):
    """Raised when resolving an alert that does not exist."""


def create_admin_alert(
    session: Session,
    severity: AlertSeverity | str,
    alert_type: str,
    title: str,
    message: str,
    context: Optional[Mapping[str, Any]] = None,
) -> AdminAlert:
    """Persist an alert for the admin queue and return it.

    ``context`` may carry ``drugTestId``/``clientId`` which are also stored
    as columns so the queue can be filtered per test.
    """

    level = AlertSeverity(getattr(severity, "value", severity))
    if alert_type not in ALERT_TYPES:
        raise ValueError(f"Unknown admin alert type {alert_type!r}")
    payload = dict(context or {})
    alert = AdminAlert(
        severity=level.value,
        alert_type=alert_type,
        title=title,
        message=message,
        context=payload or None,
        drug_test_id=payload.get("drugTestId"),
        client_id=payload.get("clientId"),
    )
    session.add(alert)
    session.flush()
    ADMIN_ALERTS_TOTAL.labels(alert_type=alert_type, severity=level.value).inc()
    log = logger.error if level is AlertSeverity.CRITICAL else logger.warning
    log("admin_alert_created", alert_id=alert.id, alert_type=alert_type, severity=level.value, title=title)
    return alert


def list_admin_alerts(
    session: Session,
    *,
    unresolved_only: bool = True,
    drug_test_id: Optional[int] = None,
) -> List[AdminAlert]:
    stmt = select(AdminAlert).order_by(AdminAlert.created_at.desc(), AdminAlert.id.desc())
    if unresolved_only:
        stmt = stmt.where(AdminAlert.is_resolved.is_(False))
    if drug_test_id is not None:
        stmt = stmt.where(AdminAlert.drug_test_id == drug_test_id)
    return list(session.execute(stmt).scalars().all())


def resolve_admin_alert(session: Session, alert_id: int, resolved_by: Optional[str] = None) -> AdminAlert:
    alert = session.get(AdminAlert, alert_id)
    if alert is None:
        raise AdminAlertNotFoundError(f"Admin alert {alert_id} not found")
    if not alert.is_resolved:
        alert.is_resolved = True
        alert.resolved_at = utc_now()
        alert.resolved_by = resolved_by
        session.flush()
        logger.info("admin_alert_resolved", alert_id=alert.id, resolved_by=resolved_by)
    return alert


def serialize_admin_alert(alert: AdminAlert) -> Dict[str, Any]:
    return {
        "id": alert.id,
        "severity": alert.severity,
        "alertType": alert.alert_type,
        "title": alert.title,
        "message": alert.message,
        "context": alert.context or {},
        "drugTestId": alert.drug_test_id,
        "isResolved": bool(alert.is_resolved),
        "resolvedAt": alert.resolved_at.isoformat() if alert.resolved_at else None,
        "createdAt": alert.created_at.isoformat() if alert.created_at else None,
    }


__all__ = [
    "ALERT_EMAIL_FAILURE",
    "ALERT_NOTIFICATION_FAILURE",
    "ALERT_NOTIFICATION_HISTORY_FAILURE",
    "ALERT_RECIPIENT_FETCH_FAILURE",
    "ALERT_TYPES",
    "ALERT_UNASSIGNED_TECHNICIAN",
    "AdminAlertNotFoundError",
    "create_admin_alert",
    "list_admin_alerts",
    "resolve_admin_alert",
    "serialize_admin_alert",
]
