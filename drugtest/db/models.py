"""SQLAlchemy models for clients, medications, drug tests and the technician roster."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class ClientType(str, enum.Enum):
    """Why the client is being tested; drives referral recipient checks."""

    PROBATION = "probation"
    EMPLOYMENT = "employment"
    SELF = "self"
    OTHER = "other"


class AlertSeverity(str, enum.Enum):
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Client(Base):
    __tablename__ = "clients"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    first_name = sa.Column(String, nullable=False)
    last_name = sa.Column(String, nullable=False)
    email = sa.Column(String, nullable=True, index=True)
    phone = sa.Column(String, nullable=True)
    client_type = sa.Column(String, nullable=False, server_default=ClientType.SELF.value, default=ClientType.SELF.value)
    disable_client_emails = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ReferralContact(Base):
    __tablename__ = "referral_contacts"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    client_id = sa.Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    name = sa.Column(String, nullable=True)
    email = sa.Column(String, nullable=False)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    client = sa.orm.relationship(
        Client,
        backref=sa.orm.backref("referral_contacts", order_by="ReferralContact.id"),
    )


class MedicationRecord(Base):
    __tablename__ = "medications"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    client_id = sa.Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    name = sa.Column(String, nullable=False)
    detected_as = sa.Column(sa.JSON, nullable=False, default=list)
    require_confirmation = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    category = sa.Column(String, nullable=True)
    status = sa.Column(String, nullable=False, server_default="active", default="active")
    start_date = sa.Column(Date, nullable=True)
    end_date = sa.Column(Date, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=True, default=_utcnow, onupdate=_utcnow)

    client = sa.orm.relationship(
        Client,
        backref=sa.orm.backref("medications", order_by="MedicationRecord.id"),
    )


class Technician(Base):
    __tablename__ = "technicians"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    name = sa.Column(String, nullable=False)
    email = sa.Column(String, nullable=True)
    is_active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class TechnicianSchedule(Base):
    __tablename__ = "technician_schedules"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    technician_id = sa.Column(Integer, ForeignKey("technicians.id"), nullable=False)
    day_of_week = sa.Column(String, nullable=False)
    time_slot = sa.Column(String, nullable=False)
    is_active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)

    technician = sa.orm.relationship(
        Technician,
        backref=sa.orm.backref("schedules", order_by="TechnicianSchedule.id"),
    )

    __table_args__ = (
        sa.UniqueConstraint("technician_id", "day_of_week", "time_slot", name="uq_technician_schedule_slot"),
        sa.Index("idx_technician_schedules_slot", "day_of_week", "time_slot"),
    )


class ScheduleOverride(Base):
    __tablename__ = "schedule_overrides"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    date = sa.Column(Date, nullable=False)
    time_slot = sa.Column(String, nullable=False)
    technician_id = sa.Column(Integer, ForeignKey("technicians.id"), nullable=False)
    reason = sa.Column(Text, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    covering_technician = sa.orm.relationship(Technician)

    __table_args__ = (sa.Index("idx_schedule_overrides_slot", "date", "time_slot"),)


class DrugTest(Base):
    __tablename__ = "drug_tests"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    client_id = sa.Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    test_type = sa.Column(String, nullable=False)
    status = sa.Column(String, nullable=False, server_default="pending", default="pending", index=True)
    collection_date = sa.Column(Date, nullable=False)
    collection_time = sa.Column(String, nullable=True)
    technician_id = sa.Column(Integer, ForeignKey("technicians.id"), nullable=True)
    medication_snapshot = sa.Column(sa.JSON, nullable=False, default=list)
    detected_substances = sa.Column(sa.JSON, nullable=False, default=list)
    expected_positives = sa.Column(sa.JSON, nullable=False, default=list)
    unexpected_positives = sa.Column(sa.JSON, nullable=False, default=list)
    critical_negatives = sa.Column(sa.JSON, nullable=False, default=list)
    warning_negatives = sa.Column(sa.JSON, nullable=False, default=list)
    confirmed_negatives = sa.Column(sa.JSON, nullable=False, default=list)
    initial_screen_result = sa.Column(String, nullable=True)
    final_status = sa.Column(String, nullable=True)
    disposition = sa.Column(String, nullable=True)
    breathalyzer_taken = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    breathalyzer_result = sa.Column(Float, nullable=True)
    is_dilute = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    confirmation_decision = sa.Column(String, nullable=True)
    confirmation_substances = sa.Column(sa.JSON, nullable=False, default=list)
    is_inconclusive = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    inconclusive_reason = sa.Column(Text, nullable=True)
    collected_at = sa.Column(DateTime(timezone=True), nullable=True)
    screened_at = sa.Column(DateTime(timezone=True), nullable=True)
    completed_at = sa.Column(DateTime(timezone=True), nullable=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )

    client = sa.orm.relationship(Client)
    technician = sa.orm.relationship(Technician)


class ConfirmationResultRecord(Base):
    __tablename__ = "confirmation_results"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    drug_test_id = sa.Column(Integer, ForeignKey("drug_tests.id"), nullable=False)
    substance = sa.Column(String, nullable=False)
    result = sa.Column(String, nullable=False)
    notes = sa.Column(Text, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    drug_test = sa.orm.relationship(
        DrugTest,
        backref=sa.orm.backref("confirmation_results", order_by="ConfirmationResultRecord.id"),
    )

    __table_args__ = (
        sa.UniqueConstraint("drug_test_id", "substance", name="uq_confirmation_results_test_substance"),
    )


class NotificationRecord(Base):
    __tablename__ = "notification_records"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    drug_test_id = sa.Column(Integer, ForeignKey("drug_tests.id"), nullable=False)
    stage = sa.Column(String, nullable=False)
    status = sa.Column(String, nullable=False, server_default="claimed", default="claimed")
    recipients = sa.Column(sa.JSON, nullable=False, default=list)
    failures = sa.Column(sa.JSON, nullable=False, default=list)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=True, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("drug_test_id", "stage", name="uq_notification_records_test_stage"),
    )


class AdminAlert(Base):
    __tablename__ = "admin_alerts"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    severity = sa.Column(String, nullable=False)
    alert_type = sa.Column(String, nullable=False, index=True)
    title = sa.Column(String, nullable=False)
    message = sa.Column(Text, nullable=False)
    context = sa.Column(sa.JSON, nullable=True)
    drug_test_id = sa.Column(Integer, ForeignKey("drug_tests.id"), nullable=True)
    client_id = sa.Column(Integer, ForeignKey("clients.id"), nullable=True)
    is_resolved = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    resolved_at = sa.Column(DateTime(timezone=True), nullable=True)
    resolved_by = sa.Column(String, nullable=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )

    __table_args__ = (sa.Index("idx_admin_alerts_unresolved", "is_resolved", "created_at"),)


__all__ = [
    "AdminAlert",
    "AlertSeverity",
    "Base",
    "Client",
    "ClientType",
    "ConfirmationResultRecord",
    "DrugTest",
    "MedicationRecord",
    "NotificationRecord",
    "ReferralContact",
    "ScheduleOverride",
    "Technician",
    "TechnicianSchedule",
]
