import pytest

from drugtest import alerts
from drugtest.db.models import AlertSeverity


def test_create_list_and_resolve(session, make_client):
    client = make_client()
    alert = alerts.create_admin_alert(
        session,
        AlertSeverity.CRITICAL,
        alerts.ALERT_EMAIL_FAILURE,
        "Referral email failed",
        "Send manually",
        {"clientId": client.id, "recipientEmail": "po@example.com"},
    )
    session.commit()

    assert alert.id is not None
    assert alert.client_id == client.id
    assert alert.drug_test_id is None
    assert [item.id for item in alerts.list_admin_alerts(session)] == [alert.id]

    resolved = alerts.resolve_admin_alert(session, alert.id, resolved_by="office")
    session.commit()
    assert resolved.is_resolved is True
    assert resolved.resolved_by == "office"
    assert alerts.list_admin_alerts(session) == []
    assert len(alerts.list_admin_alerts(session, unresolved_only=False)) == 1

    payload = alerts.serialize_admin_alert(resolved)
    assert payload["severity"] == "critical"
    assert payload["alertType"] == "email-failure"
    assert payload["context"]["recipientEmail"] == "po@example.com"


def test_severity_accepts_strings_and_rejects_unknown_types(session):
    alert = alerts.create_admin_alert(session, "medium", alerts.ALERT_UNASSIGNED_TECHNICIAN, "t", "m")
    assert alert.severity == "medium"
    assert alert.context is None
    with pytest.raises(ValueError):
        alerts.create_admin_alert(session, "low", alerts.ALERT_UNASSIGNED_TECHNICIAN, "t", "m")
    with pytest.raises(ValueError):
        alerts.create_admin_alert(session, "high", "made-up", "t", "m")


def test_resolve_unknown_alert(session):
    with pytest.raises(alerts.AdminAlertNotFoundError):
        alerts.resolve_admin_alert(session, 404)
