"""Client medications and the immutable snapshot attached to each drug test.

The snapshot is captured when a test is created, before any classification
runs, so later edits to a client's medication list never change a historical
result.  Parsing is deliberately tolerant: a medication with a missing or
malformed ``detectedAs`` simply contributes no expected substances.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .substances import normalize_substances
from .time_utils import ensure_utc, parse_date, utc_now

STATUS_ACTIVE = "active"
STATUS_DISCONTINUED = "discontinued"

EDITABLE_WINDOW_DAYS = 7

_TRUTHY = {"1", "true", "yes", "y", "on"}

# ---------------------------------------------------------------------------
# Required-medication rules
# ---------------------------------------------------------------------------
# A missing expected substance is *critical* when the medication that should
# have produced it matches any row below; otherwise it is only a warning.
#
#   rule                      fires when
#   ------------------------  ------------------------------------------------
#   require-confirmation      the medication record has requireConfirmation
#   mandatory-category        category is one of MANDATORY_CATEGORIES
#   mat-medication            normalised name is one of MAT_MEDICATION_NAMES

RULE_REQUIRE_CONFIRMATION = "require-confirmation"
RULE_MANDATORY_CATEGORY = "mandatory-category"
RULE_MAT_MEDICATION = "mat-medication"

MANDATORY_CATEGORIES = frozenset({"mat"})

MAT_MEDICATION_NAMES = frozenset(
    {
        "suboxone",
        "subutex",
        "zubsolv",
        "sublocade",
        "brixadi",
        "buprenorphine",
        "methadone",
        "methadose",
        "dolophine",
    }
)


@dataclass(frozen=True)
class Medication:
    """One entry of a client's medication list."""

    name: str
    detected_as: Tuple[str, ...] = ()
    require_confirmation: bool = False
    status: str = STATUS_ACTIVE
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    category: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Medication":
        """Build a medication from an API payload or stored snapshot row.

        Both ``camelCase`` and ``snake_case`` keys are accepted.  Dates that
        cannot be parsed are dropped rather than rejected.
        """

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return None

        detected = pick("detected_as", "detectedAs")
        status = str(pick("status") or STATUS_ACTIVE).strip().lower()
        category = pick("category")
        created_at = pick("created_at", "createdAt")
        return cls(
            name=str(pick("name", "medicationName") or "").strip(),
            detected_as=tuple(normalize_substances(detected)),
            require_confirmation=_coerce_bool(pick("require_confirmation", "requireConfirmation")),
            status=status,
            start_date=_safe_date(pick("start_date", "startDate")),
            end_date=_safe_date(pick("end_date", "endDate")),
            category=str(category).strip().lower() if category else None,
            created_at=_safe_datetime(created_at),
        )

    @classmethod
    def from_record(cls, record: Any) -> "Medication":
        """Build a medication from a :class:`~drugtest.db.models.MedicationRecord`."""

        return cls(
            name=record.name,
            detected_as=tuple(normalize_substances(record.detected_as)),
            require_confirmation=bool(record.require_confirmation),
            status=(record.status or STATUS_ACTIVE).strip().lower(),
            start_date=record.start_date,
            end_date=record.end_date,
            category=record.category.strip().lower() if record.category else None,
            created_at=record.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "detectedAs": list(self.detected_as),
            "requireConfirmation": self.require_confirmation,
            "status": self.status,
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
            "category": self.category,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return bool(value)


def _safe_date(value: Any) -> Optional[date]:
    try:
        return parse_date(value)
    except (TypeError, ValueError):
        return None


def _safe_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def is_active_at(medication: Medication, on_date: Optional[date] = None) -> bool:
    """Return ``True`` when ``medication`` counts towards the expected set.

    Without ``on_date`` only the status is considered.
    """

    if medication.status != STATUS_ACTIVE:
        return False
    if on_date is None:
        return True
    if medication.start_date is not None and medication.start_date > on_date:
        return False
    if medication.end_date is not None and medication.end_date < on_date:
        return False
    return True


def required_reason(medication: Medication) -> Optional[str]:
    """Return the rule that makes ``medication`` required, or ``None``."""

    if medication.require_confirmation:
        return RULE_REQUIRE_CONFIRMATION
    if medication.category and medication.category in MANDATORY_CATEGORIES:
        return RULE_MANDATORY_CATEGORY
    if medication.name.strip().lower() in MAT_MEDICATION_NAMES:
        return RULE_MAT_MEDICATION
    return None


def is_required(medication: Medication) -> bool:
    return required_reason(medication) is not None


def capture_snapshot(
    medications: Iterable[Medication],
    collection_date: Optional[date] = None,
) -> Tuple[Medication, ...]:
    """Freeze the medications active at ``collection_date``."""

    return tuple(replace(med) for med in medications if is_active_at(med, collection_date))


def snapshot_to_json(snapshot: Sequence[Medication]) -> List[Dict[str, Any]]:
    """Return a JSON-compatible list for storage on the drug test row."""

    return [med.to_dict() for med in snapshot]


def snapshot_from_json(payload: Any) -> Tuple[Medication, ...]:
    """Rebuild a snapshot from storage; malformed entries are skipped."""

    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError:
            return ()
    if not isinstance(payload, list):
        return ()
    return tuple(Medication.from_mapping(item) for item in payload if isinstance(item, Mapping))


# ---------------------------------------------------------------------------
# Dashboard editing rules
# ---------------------------------------------------------------------------


def medication_age_days(medication: Medication, now: Optional[datetime] = None) -> Optional[int]:
    if medication.created_at is None:
        return None
    current = ensure_utc(now or utc_now())
    delta = current - ensure_utc(medication.created_at)
    return max(0, delta.days)


def is_medication_editable(medication: Medication, now: Optional[datetime] = None) -> bool:
    """Medications can be edited during their first week unless discontinued.

    Records without a creation timestamp are treated as historical and locked.
    """

    if medication.status == STATUS_DISCONTINUED:
        return False
    age = medication_age_days(medication, now)
    if age is None:
        return False
    return age < EDITABLE_WINDOW_DAYS


def can_update_medication_status(medication: Medication, now: Optional[datetime] = None) -> bool:
    return medication.status == STATUS_ACTIVE and is_medication_editable(medication, now)


def medication_age_description(medication: Medication, now: Optional[datetime] = None) -> str:
    age = medication_age_days(medication, now)
    if age is None:
        return "Unknown"
    if age == 0:
        return "Added today"
    if age == 1:
        return "Added yesterday"
    if age < 7:
        return f"Added {age} days ago"
    weeks = age // 7
    if weeks == 1:
        return "Added 1 week ago"
    if weeks < 4:
        return f"Added {weeks} weeks ago"
    months = max(1, age // 30)
    if months == 1:
        return "Added 1 month ago"
    return f"Added {months} months ago"


__all__ = [
    "MANDATORY_CATEGORIES",
    "MAT_MEDICATION_NAMES",
    "Medication",
    "RULE_MANDATORY_CATEGORY",
    "RULE_MAT_MEDICATION",
    "RULE_REQUIRE_CONFIRMATION",
    "STATUS_ACTIVE",
    "STATUS_DISCONTINUED",
    "can_update_medication_status",
    "capture_snapshot",
    "is_active_at",
    "is_medication_editable",
    "is_required",
    "medication_age_days",
    "medication_age_description",
    "required_reason",
    "snapshot_from_json",
    "snapshot_to_json",
]
