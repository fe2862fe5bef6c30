"""Client and referral e-mail notifications for drug test stages.

Each ``(drug test, stage)`` pair is delivered at most once: a row in
``notification_records`` is claimed and committed before any e-mail leaves
the process.  Delivery problems are written to the admin alert queue and
never propagate to the caller, so a failed e-mail cannot undo a committed
classification.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

import requests
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .alerts import (
    ALERT_EMAIL_FAILURE,
    ALERT_NOTIFICATION_FAILURE,
    ALERT_NOTIFICATION_HISTORY_FAILURE,
    ALERT_RECIPIENT_FETCH_FAILURE,
    create_admin_alert,
)
from .config import AppSettings, get_app_settings
from .db.models import AlertSeverity, Client, ClientType, DrugTest, NotificationRecord, Technician
from .observability import NOTIFICATION_DELIVERIES_TOTAL
from .screening import NotificationStage
from .substances import format_substances


logger = structlog.get_logger(__name__)

TEST_MODE_PREFIX = "[TEST MODE]"

# Client types whose referral party must receive every result.
_REFERRAL_REQUIRED_TYPES = frozenset({ClientType.PROBATION.value, ClientType.EMPLOYMENT.value})

_RESULT_LABELS = {
    "negative": "NEGATIVE",
    "expected-positive": "EXPECTED POSITIVE",
    "unexpected-positive": "UNEXPECTED POSITIVE",
    "unexpected-negative-critical": "UNEXPECTED NEGATIVE (CRITICAL)",
    "unexpected-negative-warning": "UNEXPECTED NEGATIVE (WARNING)",
    "mixed-unexpected": "MIXED UNEXPECTED",
    "inconclusive": "INCONCLUSIVE",
}


class EmailDeliveryError(Exception):
    """Raised by an :class:`EmailSender` when a message could not be delivered."""


@dataclass(frozen=True)
class EmailMessage:
    subject: str
    body: str


@dataclass(frozen=True)
class StageMessages:
    referral: EmailMessage
    client: Optional[EmailMessage] = None


@dataclass(frozen=True)
class Recipient:
    name: str
    email: str


@dataclass(frozen=True)
class RecipientList:
    client_email: str
    referral_recipients: Sequence[Recipient]
    has_explicit_referral_recipients: bool

    @property
    def referral_emails(self) -> List[str]:
        return [recipient.email for recipient in self.referral_recipients]


@dataclass
class DispatchOutcome:
    stage: NotificationStage
    sent_to: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.failed and self.sent_to:
            return "partial"
        if self.failed:
            return "failed"
        return "sent"


class EmailSender(Protocol):
    def send(self, to: str, subject: str, body: str) -> None:
        ...


class LoggingEmailSender:
    """Sender that only logs; used when no e-mail API is configured."""

    def __init__(self) -> None:
        self.outbox: List[Dict[str, str]] = []

    def send(self, to: str, subject: str, body: str) -> None:
        self.outbox.append({"to": to, "subject": subject, "body": body})
        logger.info("email_logged", to=to, subject=subject)


class HttpEmailSender:
    """POST messages as JSON to a transactional e-mail API."""

    def __init__(
        self,
        api_url: str,
        *,
        api_key: Optional[str] = None,
        from_address: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._api_url = api_url
        self._api_key = api_key
        self._from_address = from_address
        self._timeout = timeout
        self._http = session or requests.Session()

    def send(self, to: str, subject: str, body: str) -> None:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        payload = {"from": self._from_address, "to": to, "subject": subject, "text": body}
        try:
            response = self._http.post(self._api_url, json=payload, headers=headers, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise EmailDeliveryError(f"E-mail API rejected message to {to}: {exc}") from exc


def build_email_sender(settings: Optional[AppSettings] = None) -> EmailSender:
    resolved = settings or get_app_settings()
    if resolved.email_api_url:
        return HttpEmailSender(
            resolved.email_api_url,
            api_key=resolved.email_api_key,
            from_address=resolved.email_from_address,
            timeout=resolved.email_timeout,
        )
    return LoggingEmailSender()


# ---------------------------------------------------------------------------
# Recipients
# ---------------------------------------------------------------------------


def _add_recipient(recipients: Dict[str, Recipient], name: Optional[str], email: Optional[str]) -> None:
    address = (email or "").strip()
    if not address:
        return
    key = address.lower()
    label = (name or "").strip()
    existing = recipients.get(key)
    if existing is None:
        recipients[key] = Recipient(name=label, email=address)
    elif not existing.name and label:
        recipients[key] = Recipient(name=label, email=existing.email)


def resolve_recipients(client: Client) -> RecipientList:
    """Work out who receives results for ``client``.

    Referral contacts are de-duplicated case-insensitively keeping the first
    non-empty name.  Self-referred clients are also listed as their own
    referral recipient so they receive the referral version of each e-mail.
    """

    client_email = "" if client.disable_client_emails else (client.email or "").strip()
    recipients: Dict[str, Recipient] = {}
    for contact in client.referral_contacts or []:
        _add_recipient(recipients, contact.name, contact.email)
    has_explicit = bool(recipients)
    if client.client_type == ClientType.SELF.value and client_email:
        _add_recipient(recipients, client.full_name or "Self", client_email)
    return RecipientList(
        client_email=client_email,
        referral_recipients=tuple(recipients.values()),
        has_explicit_referral_recipients=has_explicit,
    )


# ---------------------------------------------------------------------------
# Message content
# ---------------------------------------------------------------------------


def _substance_line(label: str, codes: Sequence[str]) -> Optional[str]:
    if not codes:
        return None
    return f"{label}: {', '.join(format_substances(codes, simple=True))}"


def _result_lines(test: DrugTest, status: Optional[str]) -> List[str]:
    lines = [f"Result: {_RESULT_LABELS.get(status or '', (status or 'pending').upper())}"]
    unexpected_negatives = list(test.warning_negatives or []) + list(test.critical_negatives or [])
    for line in (
        _substance_line("Detected", test.detected_substances or []),
        _substance_line("Expected positives", test.expected_positives or []),
        _substance_line("Unexpected positives", test.unexpected_positives or []),
        _substance_line("Unexpected negatives", unexpected_negatives),
        _substance_line("Confirmed negative at lab", test.confirmed_negatives or []),
    ):
        if line:
            lines.append(line)
    if test.is_dilute:
        lines.append("Specimen was dilute.")
    if test.breathalyzer_taken:
        reading = test.breathalyzer_result if test.breathalyzer_result is not None else 0.0
        lines.append(f"Breathalyzer: {reading:.3f}")
    return lines


def build_stage_messages(
    stage: NotificationStage,
    test: DrugTest,
    client: Client,
    settings: Optional[AppSettings] = None,
) -> StageMessages:
    """Return plain-text client and referral messages for ``stage``."""

    resolved = settings or get_app_settings()
    name = client.full_name
    header = [
        f"Client: {name}",
        f"Collection date: {test.collection_date.isoformat() if test.collection_date else 'unknown'}",
        f"Test type: {test.test_type}",
    ]
    footer = ["", resolved.clinic_name]

    if stage is NotificationStage.COLLECTED:
        body = "\n".join(
            ["A specimen was collected and sent to the laboratory.", *header, *footer]
        )
        return StageMessages(referral=EmailMessage(f"Drug Test Sample Collected - {name}", body))

    if stage is NotificationStage.INCONCLUSIVE:
        reason = test.inconclusive_reason or "The specimen could not be screened."
        lines = ["The drug test result is INCONCLUSIVE.", *header, f"Reason: {reason}"]
        referral = EmailMessage(f"Drug Test Results - {name}", "\n".join([*lines, *footer]))
        client_msg = EmailMessage(
            f"Drug Test Results - {name}",
            "\n".join([*lines, "Please contact the clinic to schedule a retest.", *footer]),
        )
        return StageMessages(referral=referral, client=client_msg)

    if stage is NotificationStage.SCREENED:
        subject = f"Drug Test Results - {name}"
        lines = ["Screening results are available.", *header, *_result_lines(test, test.initial_screen_result)]
        if test.confirmation_decision == "request-confirmation":
            lines.append("Laboratory confirmation has been requested; final results will follow.")
    else:
        subject = f"Final Drug Test Results - {name}"
        lines = ["Final results are available.", *header, *_result_lines(test, test.final_status)]
        for record in getattr(test, "confirmation_results", None) or []:
            lines.append(f"Confirmation {record.substance}: {record.result}")
    referral = EmailMessage(subject, "\n".join([*lines, *footer]))
    client_msg = EmailMessage(subject, "\n".join([f"Hello {client.first_name},", *lines, *footer]))
    return StageMessages(referral=referral, client=client_msg)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    """Send stage notifications for drug tests, at most once per stage."""

    def __init__(self, sender: Optional[EmailSender] = None, settings: Optional[AppSettings] = None) -> None:
        self._settings = settings
        self._sender = sender

    @property
    def settings(self) -> AppSettings:
        return self._settings or get_app_settings()

    @property
    def sender(self) -> EmailSender:
        if self._sender is None:
            self._sender = build_email_sender(self.settings)
        return self._sender

    def dispatch(self, session: Session, test: DrugTest, stage: NotificationStage) -> Optional[DispatchOutcome]:
        """Deliver ``stage`` for ``test``; returns ``None`` when already sent.

        Never raises: unexpected errors are logged and turned into a
        ``notification-failure`` admin alert.
        """

        try:
            if not self._claim(session, test, stage):
                return None
            outcome = self._deliver(session, test, stage)
            self._record_outcome(session, test, outcome)
            NOTIFICATION_DELIVERIES_TOTAL.labels(stage=stage.value, outcome=outcome.status).inc()
            return outcome
        except Exception as exc:
            logger.exception("notification_dispatch_failed", drug_test_id=test.id, stage=stage.value)
            NOTIFICATION_DELIVERIES_TOTAL.labels(stage=stage.value, outcome="error").inc()
            self._alert_safely(
                session,
                AlertSeverity.HIGH,
                ALERT_NOTIFICATION_FAILURE,
                f"Notification dispatch failed for drug test {test.id}",
                f"The {stage.value} notification could not be processed: {exc}",
                {"drugTestId": test.id, "clientId": test.client_id, "emailStage": stage.value},
            )
            return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _claim(self, session: Session, test: DrugTest, stage: NotificationStage) -> bool:
        existing = session.execute(
            select(NotificationRecord.id).where(
                NotificationRecord.drug_test_id == test.id,
                NotificationRecord.stage == stage.value,
            )
        ).first()
        if existing is not None:
            logger.info("notification_already_sent", drug_test_id=test.id, stage=stage.value)
            return False
        session.add(NotificationRecord(drug_test_id=test.id, stage=stage.value))
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info("notification_claimed_elsewhere", drug_test_id=test.id, stage=stage.value)
            return False
        return True

    def _send(self, to: str, message: EmailMessage) -> None:
        settings = self.settings
        subject = message.subject
        if settings.email_test_mode:
            to = settings.email_test_address
            subject = f"{TEST_MODE_PREFIX} {subject}"
        self.sender.send(to, subject, message.body)

    def _referral_targets(self, referral_emails: List[str]) -> List[str]:
        # Test mode collapses every referral copy into one message to the test inbox.
        settings = self.settings
        if settings.email_test_mode and referral_emails:
            return [settings.email_test_address]
        return list(referral_emails)

    def _deliver(self, session: Session, test: DrugTest, stage: NotificationStage) -> DispatchOutcome:
        client = test.client or session.get(Client, test.client_id)
        if client is None:
            raise LookupError(f"Client {test.client_id} not found")
        recipients = resolve_recipients(client)
        messages = build_stage_messages(stage, test, client, self.settings)
        outcome = DispatchOutcome(stage=stage)
        context = {
            "drugTestId": test.id,
            "clientId": client.id,
            "clientName": client.full_name,
            "clientType": client.client_type,
            "emailStage": stage.value,
        }

        referral_emails = recipients.referral_emails
        if not referral_emails:
            logger.warning(
                "notification_no_referral_recipients",
                drug_test_id=test.id,
                client_type=client.client_type,
            )
            if client.client_type in _REFERRAL_REQUIRED_TYPES:
                create_admin_alert(
                    session,
                    AlertSeverity.HIGH,
                    ALERT_RECIPIENT_FETCH_FAILURE,
                    f"No referral emails for {client.client_type} client",
                    f"Drug test {test.id} for {client.full_name} has no referral e-mail addresses "
                    "configured; the referral party will not receive this notification.",
                    context,
                )

        if messages.client is not None and recipients.client_email:
            in_referrals = recipients.client_email.lower() in {email.lower() for email in referral_emails}
            if in_referrals:
                logger.info("notification_client_in_referrals", drug_test_id=test.id)
            else:
                try:
                    self._send(recipients.client_email, messages.client)
                    outcome.sent_to.append(recipients.client_email)
                except Exception:
                    logger.exception("notification_client_email_failed", drug_test_id=test.id, stage=stage.value)
                    outcome.failed.append(recipients.client_email)

        for email in self._referral_targets(referral_emails):
            try:
                self._send(email, messages.referral)
                outcome.sent_to.append(email)
            except Exception as exc:
                logger.exception("notification_referral_email_failed", drug_test_id=test.id, stage=stage.value)
                outcome.failed.append(email)
                create_admin_alert(
                    session,
                    AlertSeverity.CRITICAL,
                    ALERT_EMAIL_FAILURE,
                    f"Referral email failed - {client.full_name}",
                    f"Failed to send the {stage.value} e-mail for drug test {test.id} to {email}. "
                    f"Send the results to this referral manually. Error: {exc}",
                    {**context, "recipientEmail": email, "recipientType": "referral", "errorMessage": str(exc)},
                )
        logger.info(
            "notification_stage_delivered",
            drug_test_id=test.id,
            stage=stage.value,
            sent=len(outcome.sent_to),
            failed=len(outcome.failed),
        )
        return outcome

    def _record_outcome(self, session: Session, test: DrugTest, outcome: DispatchOutcome) -> None:
        try:
            record = session.execute(
                select(NotificationRecord).where(
                    NotificationRecord.drug_test_id == test.id,
                    NotificationRecord.stage == outcome.stage.value,
                )
            ).scalar_one()
            record.status = outcome.status
            record.recipients = list(outcome.sent_to)
            record.failures = list(outcome.failed)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("notification_history_update_failed", drug_test_id=test.id)
            self._alert_safely(
                session,
                AlertSeverity.MEDIUM,
                ALERT_NOTIFICATION_HISTORY_FAILURE,
                f"Notification history not updated for drug test {test.id}",
                f"The {outcome.stage.value} notification was sent but its history could not be saved: {exc}",
                {"drugTestId": test.id, "emailStage": outcome.stage.value},
            )

    def _alert_safely(
        self,
        session: Session,
        severity: AlertSeverity,
        alert_type: str,
        title: str,
        message: str,
        context: Dict[str, Any],
    ) -> None:
        try:
            session.rollback()
            create_admin_alert(session, severity, alert_type, title, message, context)
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception("admin_alert_persist_failed", alert_type=alert_type)


def notify_technician_assignment(
    test: DrugTest,
    technician: Optional[Technician],
    *,
    sender: Optional[EmailSender] = None,
    settings: Optional[AppSettings] = None,
) -> bool:
    """E-mail ``technician`` about the collection they were assigned.

    Returns ``False`` when nothing was sent.  Failures are logged and
    swallowed; an unnotified technician never blocks test creation.
    """

    if technician is None or not technician.email:
        return False
    resolved = settings or get_app_settings()
    client = test.client
    client_name = client.full_name if client is not None else f"client {test.client_id}"
    when = test.collection_date.strftime("%A, %B %d, %Y") if test.collection_date else "unscheduled"
    body = "\n".join(
        [
            f"Hi {technician.name},",
            "You have been assigned to observe a drug test:",
            f"Client: {client_name}",
            f"Date: {when}",
            f"Time: {test.collection_time or 'Not specified'}",
            f"Test type: {test.test_type or 'Not specified'}",
            "Please confirm your availability or contact the office if you need coverage.",
            "",
            resolved.clinic_name,
        ]
    )
    to = technician.email
    subject = f"Drug Test Assignment - {when}"
    if resolved.email_test_mode:
        to = resolved.email_test_address
        subject = f"{TEST_MODE_PREFIX} {subject}"
    try:
        (sender or build_email_sender(resolved)).send(to, subject, body)
    except Exception:
        logger.exception("technician_notification_failed", drug_test_id=test.id, technician_id=technician.id)
        return False
    logger.info("technician_notified", drug_test_id=test.id, technician_id=technician.id)
    return True


__all__ = [
    "DispatchOutcome",
    "EmailDeliveryError",
    "EmailMessage",
    "EmailSender",
    "HttpEmailSender",
    "LoggingEmailSender",
    "NotificationDispatcher",
    "Recipient",
    "RecipientList",
    "StageMessages",
    "build_email_sender",
    "build_stage_messages",
    "notify_technician_assignment",
    "resolve_recipients",
]
