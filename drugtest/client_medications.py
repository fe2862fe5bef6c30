"""Client medication list maintenance.

Edits follow the front-desk rules in :mod:`drugtest.medications`: a record
may only be changed during its first week and never once discontinued.
Drug tests keep their own snapshot, so nothing here touches historical
results.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db.models import Client, MedicationRecord
from .drug_tests import ClientNotFoundError
from .medications import (
    STATUS_ACTIVE,
    STATUS_DISCONTINUED,
    Medication,
    can_update_medication_status,
    is_medication_editable,
    medication_age_description,
)
from .substances import is_known_substance, normalize_substances


logger = structlog.get_logger(__name__)

_STATUSES = {STATUS_ACTIVE, STATUS_DISCONTINUED}


class MedicationNotFoundError(Exception):
    """Raised when a medication id does not belong to the client."""


class MedicationLockedError(Exception):
    """Raised when editing a medication outside its edit window."""


def _get_client(session: Session, client_id: int) -> Client:
    client = session.get(Client, client_id)
    if client is None:
        raise ClientNotFoundError(f"Client {client_id} not found")
    return client


def _get_record(session: Session, client_id: int, medication_id: int) -> MedicationRecord:
    record = session.get(MedicationRecord, medication_id)
    if record is None or record.client_id != client_id:
        raise MedicationNotFoundError(f"Medication {medication_id} not found for client {client_id}")
    return record


def _detected_codes(values: Any) -> List[str]:
    codes = normalize_substances(values if isinstance(values, (list, tuple)) else [])
    unknown = [code for code in codes if not is_known_substance(code)]
    if unknown:
        raise ValueError(f"Unknown substance code(s): {', '.join(unknown)}")
    return codes


def list_client_medications(session: Session, client_id: int) -> List[MedicationRecord]:
    client = _get_client(session, client_id)
    stmt = select(MedicationRecord).where(MedicationRecord.client_id == client.id).order_by(MedicationRecord.id)
    return list(session.execute(stmt).scalars().all())


def add_client_medication(session: Session, client_id: int, payload: Mapping[str, Any]) -> MedicationRecord:
    """Store a new medication for ``client_id``."""

    client = _get_client(session, client_id)
    medication = Medication.from_mapping(payload)
    if not medication.name:
        raise ValueError("Medication name is required")
    if medication.status not in _STATUSES:
        raise ValueError(f"Unknown medication status {medication.status!r}")
    record = MedicationRecord(
        client=client,
        name=medication.name,
        detected_as=_detected_codes(payload.get("detectedAs", payload.get("detected_as"))),
        require_confirmation=medication.require_confirmation,
        category=medication.category,
        status=medication.status,
        start_date=medication.start_date,
        end_date=medication.end_date,
    )
    session.add(record)
    session.flush()
    logger.info("client_medication_added", client_id=client.id, medication_id=record.id)
    return record


def update_client_medication(
    session: Session,
    client_id: int,
    medication_id: int,
    changes: Mapping[str, Any],
    *,
    now: Optional[datetime] = None,
) -> MedicationRecord:
    """Apply ``changes`` to a medication that is still inside its edit window.

    A status change additionally requires the medication to be active, so a
    discontinued record cannot be revived.
    """

    record = _get_record(session, client_id, medication_id)
    current = Medication.from_record(record)
    if not is_medication_editable(current, now):
        raise MedicationLockedError(
            f"Medication {medication_id} can no longer be edited ({medication_age_description(current, now).lower()})"
        )

    if "status" in changes and changes["status"] is not None:
        status = str(changes["status"]).strip().lower()
        if status not in _STATUSES:
            raise ValueError(f"Unknown medication status {changes['status']!r}")
        if status != current.status:
            if not can_update_medication_status(current, now):
                raise MedicationLockedError(f"Medication {medication_id} status can no longer be changed")
            record.status = status

    parsed = Medication.from_mapping({**Medication.from_record(record).to_dict(), **changes})
    if "name" in changes:
        if not parsed.name:
            raise ValueError("Medication name is required")
        record.name = parsed.name
    if "detectedAs" in changes or "detected_as" in changes:
        record.detected_as = _detected_codes(changes.get("detectedAs", changes.get("detected_as")))
    if "requireConfirmation" in changes or "require_confirmation" in changes:
        record.require_confirmation = parsed.require_confirmation
    if "category" in changes:
        record.category = parsed.category
    if "startDate" in changes or "start_date" in changes:
        record.start_date = parsed.start_date
    if "endDate" in changes or "end_date" in changes:
        record.end_date = parsed.end_date
    session.flush()
    logger.info("client_medication_updated", client_id=client_id, medication_id=record.id, status=record.status)
    return record


def serialize_medication_record(record: MedicationRecord, now: Optional[datetime] = None) -> Dict[str, Any]:
    medication = Medication.from_record(record)
    payload = medication.to_dict()
    payload.update(
        {
            "id": record.id,
            "clientId": record.client_id,
            "ageDescription": medication_age_description(medication, now),
            "editable": is_medication_editable(medication, now),
            "canUpdateStatus": can_update_medication_status(medication, now),
        }
    )
    return payload


__all__ = [
    "MedicationLockedError",
    "MedicationNotFoundError",
    "add_client_medication",
    "list_client_medications",
    "serialize_medication_record",
    "update_client_medication",
]
