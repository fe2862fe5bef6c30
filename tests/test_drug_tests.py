from datetime import date

import pytest
from sqlalchemy import select

from drugtest import drug_tests
from drugtest.alerts import list_admin_alerts
from drugtest.confirmation import ConfirmationPendingError
from drugtest.db.models import MedicationRecord, NotificationRecord
from drugtest.drug_tests import DrugTestLockedError
from drugtest.notifications_service import EmailDeliveryError, LoggingEmailSender, NotificationDispatcher
from drugtest.scheduling import LATE_MORNING, MORNING, TechnicianNotFoundError
from drugtest.screening import InvalidTransitionError


MONDAY = date(2025, 6, 2)

SUBOXONE = {
    "name": "Suboxone",
    "detected_as": ["buprenorphine"],
    "require_confirmation": True,
}


def _stages(session, test_id):
    rows = session.execute(
        select(NotificationRecord.stage)
        .where(NotificationRecord.drug_test_id == test_id)
        .order_by(NotificationRecord.id)
    ).scalars()
    return list(rows)


@pytest.fixture
def probation_client(make_client):
    return make_client(client_type="probation", referrals=[("Officer Lane", "po@example.com")])


@pytest.fixture
def morning_tech(make_technician):
    return make_technician(name="Morning Tech", email="morning@example.com", slots=[("monday", MORNING)])


def test_lab_workflow_with_overturned_positive(session, dispatcher, outbox_sender, probation_client, morning_tech):
    test = drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", MONDAY, "9:00 AM")
    assert test.status == "pending"
    assert test.technician_id == morning_tech.id
    assert outbox_sender.outbox[0]["to"] == "morning@example.com"

    drug_tests.record_collection(session, test.id)
    assert test.status == "collected"
    assert _stages(session, test.id) == ["collected"]

    drug_tests.record_screen(session, test.id, ["THC"])
    assert test.status == "screened"
    assert test.initial_screen_result == "unexpected-positive"
    assert test.unexpected_positives == ["thc"]
    assert test.disposition == "fail"

    drug_tests.record_confirmation_decision(session, test.id, "request-confirmation")
    assert test.status == "confirmation-pending"
    assert test.confirmation_substances == ["thc"]

    drug_tests.record_confirmation_results(session, test.id, [{"substance": "thc", "result": "confirmed-negative"}])
    assert test.status == "complete"
    assert test.final_status == "negative"
    assert test.disposition == "pass"
    assert test.confirmed_negatives == ["thc"]
    assert test.completed_at is not None
    assert _stages(session, test.id) == ["collected", "screened", "complete"]

    payload = drug_tests.serialize_drug_test(test)
    assert payload["confirmation"]["finalStatus"] == "negative"
    assert payload["confirmationResults"] == [{"substance": "thc", "result": "confirmed-negative", "notes": None}]


def test_completed_test_is_locked(session, dispatcher, probation_client, morning_tech):
    test = drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", MONDAY, "9:00 AM")
    drug_tests.record_collection(session, test.id)
    drug_tests.record_screen(session, test.id, [])
    assert test.status == "complete"

    with pytest.raises(DrugTestLockedError):
        drug_tests.record_screen(session, test.id, ["thc"])
    with pytest.raises(DrugTestLockedError):
        drug_tests.record_confirmation_decision(session, test.id, "accept")
    with pytest.raises(DrugTestLockedError):
        drug_tests.mark_inconclusive(session, test.id, "late")


def test_auto_accept_sends_only_the_completion_notice(session, dispatcher, make_client, morning_tech):
    client = make_client(medications=[SUBOXONE])
    test = drug_tests.create_drug_test(session, client.id, "15-panel-instant", MONDAY, "9:00 AM")
    drug_tests.record_collection(session, test.id)
    drug_tests.record_screen(session, test.id, ["buprenorphine"])

    assert test.status == "complete"
    assert test.initial_screen_result == "expected-positive"
    assert test.final_status == "expected-positive"
    assert test.confirmation_decision == "accept"
    assert _stages(session, test.id) == ["complete"]


def test_critical_negative_waits_for_a_decision(session, dispatcher, make_client, morning_tech):
    client = make_client(medications=[SUBOXONE])
    test = drug_tests.create_drug_test(session, client.id, "15-panel-instant", MONDAY, "9:00 AM")
    drug_tests.record_collection(session, test.id)
    drug_tests.record_screen(session, test.id, [])

    assert test.status == "screened"
    assert test.critical_negatives == ["buprenorphine"]
    with pytest.raises(ValueError):
        drug_tests.record_confirmation_decision(session, test.id, "request-confirmation")

    drug_tests.record_confirmation_decision(session, test.id, "accept")
    assert test.status == "complete"
    assert test.final_status == "unexpected-negative-critical"
    assert test.disposition == "fail"
    assert _stages(session, test.id) == ["screened", "complete"]


def test_snapshot_is_frozen_at_creation(session, dispatcher, make_client, morning_tech):
    client = make_client()
    test = drug_tests.create_drug_test(session, client.id, "15-panel-instant", MONDAY, "9:00 AM")
    session.add(MedicationRecord(client=client, name="Marinol", detected_as=["thc"]))
    session.commit()

    drug_tests.record_collection(session, test.id)
    drug_tests.record_screen(session, test.id, ["thc"])
    assert test.medication_snapshot == []
    assert test.initial_screen_result == "unexpected-positive"


def test_explicit_medications_override_client_list(session, dispatcher, make_client, morning_tech):
    client = make_client(medications=[SUBOXONE])
    test = drug_tests.create_drug_test(
        session,
        client.id,
        "15-panel-instant",
        MONDAY,
        "9:00 AM",
        medications=[{"name": "Marinol", "detectedAs": ["thc"]}],
    )
    assert [item["name"] for item in test.medication_snapshot] == ["Marinol"]


def test_missing_verdict_blocks_completion(session, dispatcher, probation_client, morning_tech):
    test = drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", MONDAY, "9:00 AM")
    drug_tests.record_collection(session, test.id)
    drug_tests.record_screen(session, test.id, ["thc", "cocaine"])
    drug_tests.record_confirmation_decision(session, test.id, "request-confirmation")

    drug_tests.record_confirmation_results(session, test.id, [{"substance": "thc", "result": "confirmed-positive"}])
    assert test.status == "confirmation-pending"
    assert test.final_status is None

    with pytest.raises(ConfirmationPendingError) as excinfo:
        drug_tests.finalize_confirmation(session, test.id)
    assert excinfo.value.pending == ["cocaine"]

    drug_tests.record_confirmation_results(session, test.id, [{"substance": "cocaine", "result": "inconclusive"}])
    assert test.status == "complete"
    assert test.final_status == "unexpected-positive"
    assert _stages(session, test.id) == ["collected", "screened", "complete"]


def test_confirmation_results_validate_substances(session, dispatcher, probation_client, morning_tech):
    test = drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", MONDAY, "9:00 AM")
    drug_tests.record_collection(session, test.id)
    drug_tests.record_screen(session, test.id, ["thc", "cocaine"])

    with pytest.raises(InvalidTransitionError):
        drug_tests.record_confirmation_results(session, test.id, [{"substance": "thc", "result": "confirmed-positive"}])
    with pytest.raises(ValueError):
        drug_tests.record_confirmation_decision(session, test.id, "request-confirmation", ["opiates"])
    with pytest.raises(ValueError):
        drug_tests.record_confirmation_decision(session, test.id, "maybe")

    drug_tests.record_confirmation_decision(session, test.id, "request-confirmation", ["cocaine"])
    with pytest.raises(ValueError):
        drug_tests.record_confirmation_results(session, test.id, [{"substance": "thc", "result": "confirmed-positive"}])

    drug_tests.record_confirmation_results(session, test.id, [{"substance": "cocaine", "result": "confirmed-negative"}])
    assert test.status == "complete"
    # thc was never sent to the lab, so it still fails the test.
    assert test.final_status == "unexpected-positive"


def test_decision_requires_screened_test(session, dispatcher, probation_client, morning_tech):
    test = drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", MONDAY, "9:00 AM")
    with pytest.raises(InvalidTransitionError):
        drug_tests.record_confirmation_decision(session, test.id, "accept")
    with pytest.raises(InvalidTransitionError):
        drug_tests.record_screen(session, test.id, ["thc"])


def test_screen_input_validation(session, dispatcher, probation_client, morning_tech):
    test = drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", MONDAY, "9:00 AM")
    drug_tests.record_collection(session, test.id)
    with pytest.raises(ValueError):
        drug_tests.record_screen(session, test.id, ["moonshine"])
    with pytest.raises(ValueError):
        drug_tests.record_screen(session, test.id, [], breathalyzer_taken=True, breathalyzer_result=-0.1)
    assert test.status == "collected"


def test_positive_breathalyzer_blocks_auto_accept(session, dispatcher, probation_client, morning_tech):
    test = drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", MONDAY, "9:00 AM")
    drug_tests.record_collection(session, test.id)
    drug_tests.record_screen(session, test.id, [], breathalyzer_taken=True, breathalyzer_result=0.05)

    assert test.status == "screened"
    assert test.initial_screen_result == "negative"
    assert test.disposition == "fail"

    drug_tests.record_confirmation_decision(session, test.id, "accept")
    assert test.final_status == "negative"
    assert test.disposition == "fail"


def test_unassigned_test_raises_admin_alert(session, dispatcher, outbox_sender, probation_client):
    test = drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", MONDAY, "3:00 PM")
    assert test.technician_id is None
    alerts = list_admin_alerts(session, drug_test_id=test.id)
    assert [alert.alert_type for alert in alerts] == ["unassigned-technician"]
    assert outbox_sender.outbox == []


def test_create_validates_references(session, dispatcher, probation_client):
    with pytest.raises(drug_tests.ClientNotFoundError):
        drug_tests.create_drug_test(session, 999, "11-panel-lab", MONDAY)
    with pytest.raises(ValueError):
        drug_tests.create_drug_test(session, probation_client.id, "hair", MONDAY)
    with pytest.raises(ValueError):
        drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", None)
    with pytest.raises(TechnicianNotFoundError):
        drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", MONDAY, technician_id=42)


def test_reschedule_notifies_new_technician(session, dispatcher, outbox_sender, probation_client, morning_tech, make_technician):
    cover = make_technician(name="Cover", email="cover@example.com")
    test = drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", MONDAY, "9:00 AM")

    drug_tests.reschedule_drug_test(session, test.id, collection_date="2025-06-03", technician_id=cover.id)
    assert test.collection_date == date(2025, 6, 3)
    assert test.technician_id == cover.id
    assert [item["to"] for item in outbox_sender.outbox] == ["morning@example.com", "cover@example.com"]

    drug_tests.reschedule_drug_test(session, test.id, technician_id=cover.id)
    assert len(outbox_sender.outbox) == 2

    drug_tests.record_collection(session, test.id)
    with pytest.raises(DrugTestLockedError):
        drug_tests.reschedule_drug_test(session, test.id, collection_time="10:00 AM")


def test_mark_inconclusive_after_collection(session, dispatcher, probation_client, morning_tech):
    test = drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", MONDAY, "9:00 AM")
    with pytest.raises(InvalidTransitionError):
        drug_tests.mark_inconclusive(session, test.id)

    drug_tests.record_collection(session, test.id)
    drug_tests.mark_inconclusive(session, test.id, " Specimen leaked ")
    assert test.status == "complete"
    assert test.is_inconclusive is True
    assert test.inconclusive_reason == "Specimen leaked"
    assert test.final_status is None
    assert _stages(session, test.id) == ["collected", "inconclusive"]


def test_instant_test_in_one_step(session, dispatcher, make_client, morning_tech):
    client = make_client()
    test = drug_tests.create_instant_test(session, client.id, "15-panel-instant", MONDAY, [], collection_time="9:00 AM")
    assert test.status == "complete"
    assert test.final_status == "negative"
    assert _stages(session, test.id) == ["complete"]

    with pytest.raises(ValueError):
        drug_tests.create_instant_test(session, client.id, "11-panel-lab", MONDAY, [])


def test_preview_does_not_persist(session, make_client):
    client = make_client(medications=[SUBOXONE])
    result = drug_tests.preview_classification(session, ["cocaine"], client_id=client.id)
    assert result.initial_screen_result.value == "mixed-unexpected"
    assert drug_tests.list_drug_tests(session) == []

    inline = drug_tests.preview_classification(session, ["thc"], medications=[{"name": "Marinol", "detectedAs": ["thc"]}])
    assert inline.expected_positives == ("thc",)


def test_list_and_get(session, dispatcher, probation_client, morning_tech):
    first = drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", MONDAY, "9:00 AM")
    second = drug_tests.create_drug_test(session, probation_client.id, "etg-lab", date(2025, 6, 9), "9:00 AM")
    drug_tests.record_collection(session, second.id)

    assert [item.id for item in drug_tests.list_drug_tests(session)] == [second.id, first.id]
    assert [item.id for item in drug_tests.list_drug_tests(session, status="pending")] == [first.id]
    assert drug_tests.get_drug_test(session, first.id) is first
    with pytest.raises(drug_tests.DrugTestNotFoundError):
        drug_tests.get_drug_test(session, 12345)


def test_reschedule_hands_test_to_technician_on_duty(
    session, dispatcher, outbox_sender, probation_client, morning_tech, make_technician
):
    saturday = make_technician(name="Saturday Tech", email="saturday@example.com", slots=[("saturday", LATE_MORNING)])
    test = drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", MONDAY, "9:00 AM")
    assert test.technician_id == morning_tech.id

    drug_tests.reschedule_drug_test(session, test.id, collection_date="2025-06-07", collection_time="11:10 AM")
    assert test.collection_date == date(2025, 6, 7)
    assert test.technician_id == saturday.id
    assert [item["to"] for item in outbox_sender.outbox] == ["morning@example.com", "saturday@example.com"]
    assert list_admin_alerts(session, drug_test_id=test.id) == []


def test_reschedule_to_uncovered_slot_unassigns(session, dispatcher, outbox_sender, probation_client, morning_tech):
    test = drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", MONDAY, "9:00 AM")

    drug_tests.reschedule_drug_test(session, test.id, collection_time="3:00 PM")
    assert test.collection_time == "3:00 PM"
    assert test.technician_id is None
    alerts = list_admin_alerts(session, drug_test_id=test.id)
    assert [alert.alert_type for alert in alerts] == ["unassigned-technician"]
    assert len(outbox_sender.outbox) == 1


class RefusingSender(LoggingEmailSender):
    def send(self, to, subject, body):
        raise EmailDeliveryError(f"relay unavailable for {to}")


def test_email_outage_keeps_committed_results(session, settings, probation_client, morning_tech):
    broken = NotificationDispatcher(sender=RefusingSender(), settings=settings)
    test = drug_tests.create_drug_test(
        session, probation_client.id, "11-panel-lab", MONDAY, "9:00 AM", dispatcher=broken
    )
    drug_tests.record_collection(session, test.id, dispatcher=broken)
    drug_tests.record_screen(session, test.id, [], dispatcher=broken)

    session.expire_all()
    stored = drug_tests.get_drug_test(session, test.id)
    assert stored.status == "complete"
    assert stored.initial_screen_result == "negative"
    assert stored.final_status == "negative"
    assert stored.technician_id == morning_tech.id
    alert_types = {alert.alert_type for alert in list_admin_alerts(session, drug_test_id=test.id)}
    assert alert_types == {"email-failure"}


def test_finalize_requires_requested_confirmation(session, dispatcher, probation_client, morning_tech):
    test = drug_tests.create_drug_test(session, probation_client.id, "11-panel-lab", MONDAY, "9:00 AM")
    drug_tests.record_collection(session, test.id)
    drug_tests.record_screen(session, test.id, ["cocaine"])

    with pytest.raises(InvalidTransitionError):
        drug_tests.finalize_confirmation(session, test.id)
    assert test.status == "screened"
