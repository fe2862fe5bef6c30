"""Apply laboratory confirmation verdicts to a screen classification.

The resolver never assumes a verdict.  A substance sent for confirmation
without a result stays in the failing set and is reported as pending; the
workflow layer refuses to complete the test until nothing is pending.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .classification import (
    ClassificationResult,
    Disposition,
    ScreenResult,
    classify_counts,
    disposition_for,
)
from .substances import normalize_substance, normalize_substances


class ConfirmationVerdict(str, enum.Enum):
    CONFIRMED_POSITIVE = "confirmed-positive"
    CONFIRMED_NEGATIVE = "confirmed-negative"
    INCONCLUSIVE = "inconclusive"


class ConfirmationPendingError(Exception):
    """Raised when finalising a test whose flagged substances lack verdicts."""

    def __init__(self, pending: Sequence[str]):
        self.pending = list(pending)
        super().__init__(
            "Confirmation results missing for: " + ", ".join(self.pending)
        )


@dataclass(frozen=True)
class ConfirmationResult:
    substance: str
    result: ConfirmationVerdict
    notes: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ConfirmationResult":
        """Validate one ``{substance, result, notes}`` entry.

        Raises ``ValueError`` for a blank substance or an unknown verdict.
        """

        substance = normalize_substance(data.get("substance"))
        if not substance:
            raise ValueError("Confirmation result is missing a substance")
        raw = data.get("result")
        try:
            verdict = ConfirmationVerdict(str(raw).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown confirmation verdict {raw!r} for {substance}") from exc
        notes = data.get("notes")
        return cls(substance=substance, result=verdict, notes=str(notes) if notes else None)

    def to_dict(self) -> Dict[str, Any]:
        return {"substance": self.substance, "result": self.result.value, "notes": self.notes}


@dataclass(frozen=True)
class ConfirmationResolution:
    """Outcome of applying confirmation verdicts."""

    final_status: ScreenResult
    unexpected_positives: Tuple[str, ...]
    expected_positives: Tuple[str, ...]
    critical_negatives: Tuple[str, ...]
    warning_negatives: Tuple[str, ...]
    confirmed_negatives: Tuple[str, ...]
    confirmed_positives: Tuple[str, ...]
    inconclusive_substances: Tuple[str, ...]
    pending_substances: Tuple[str, ...]
    breathalyzer_positive: bool = False

    @property
    def failing_substances(self) -> Tuple[str, ...]:
        return self.unexpected_positives

    @property
    def unexpected_negatives(self) -> Tuple[str, ...]:
        return self.warning_negatives + self.critical_negatives

    @property
    def is_complete(self) -> bool:
        return not self.pending_substances

    @property
    def disposition(self) -> Disposition:
        return disposition_for(self.final_status, self.breathalyzer_positive)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "finalStatus": self.final_status.value,
            "disposition": self.disposition.value,
            "unexpectedPositives": list(self.unexpected_positives),
            "expectedPositives": list(self.expected_positives),
            "unexpectedNegatives": list(self.unexpected_negatives),
            "confirmedNegatives": list(self.confirmed_negatives),
            "confirmedPositives": list(self.confirmed_positives),
            "inconclusiveSubstances": list(self.inconclusive_substances),
            "pendingSubstances": list(self.pending_substances),
            "isComplete": self.is_complete,
            "breathalyzerPositive": self.breathalyzer_positive,
        }


def _index_results(
    results: Iterable[ConfirmationResult | Mapping[str, Any]],
) -> Dict[str, ConfirmationResult]:
    indexed: Dict[str, ConfirmationResult] = {}
    for item in results or ():
        parsed = item if isinstance(item, ConfirmationResult) else ConfirmationResult.from_mapping(item)
        # A later entry for the same substance replaces the earlier one.
        indexed[parsed.substance] = parsed
    return indexed


def resolve_confirmation(
    classification: ClassificationResult,
    confirmation_results: Iterable[ConfirmationResult | Mapping[str, Any]],
    *,
    confirmation_substances: Optional[Iterable[str]] = None,
) -> ConfirmationResolution:
    """Recompute the final status after laboratory confirmation.

    ``confirmation_substances`` lists what was sent to the lab; it defaults
    to every unexpected positive.  Confirmed-negative substances leave the
    failing set, everything else stays.  The final status is what
    :func:`~drugtest.classification.classify_results` would have produced had
    the overturned substances never been detected.
    """

    verdicts = _index_results(confirmation_results)
    if confirmation_substances is None:
        flagged = set(classification.unexpected_positives)
    else:
        flagged = set(normalize_substances(confirmation_substances))

    remaining: List[str] = []
    confirmed_negatives: List[str] = list(classification.confirmed_negatives)
    confirmed_positives: List[str] = []
    inconclusive: List[str] = []
    pending: List[str] = []

    for code in classification.unexpected_positives:
        verdict = verdicts.get(code)
        if verdict is None:
            remaining.append(code)
            if code in flagged:
                pending.append(code)
            continue
        if verdict.result is ConfirmationVerdict.CONFIRMED_NEGATIVE:
            if code not in confirmed_negatives:
                confirmed_negatives.append(code)
            continue
        remaining.append(code)
        if verdict.result is ConfirmationVerdict.INCONCLUSIVE:
            inconclusive.append(code)
        else:
            confirmed_positives.append(code)

    # Expected positives sent to the lab only need a verdict to unblock completion.
    for code in classification.expected_positives:
        if code in flagged and code not in verdicts:
            pending.append(code)

    detected_after = len(remaining) + len(classification.expected_positives)
    final_status = classify_counts(
        detected=detected_after,
        expected=len(classification.expected_substances),
        unexpected_positives=len(remaining),
        warning_negatives=len(classification.warning_negatives),
        critical_negatives=len(classification.critical_negatives),
    )
    return ConfirmationResolution(
        final_status=final_status,
        unexpected_positives=tuple(remaining),
        expected_positives=classification.expected_positives,
        critical_negatives=classification.critical_negatives,
        warning_negatives=classification.warning_negatives,
        confirmed_negatives=tuple(confirmed_negatives),
        confirmed_positives=tuple(confirmed_positives),
        inconclusive_substances=tuple(inconclusive),
        pending_substances=tuple(pending),
        breathalyzer_positive=classification.breathalyzer_positive,
    )


def pending_confirmation_substances(
    substances: Iterable[str],
    results: Iterable[ConfirmationResult | Mapping[str, Any]],
) -> List[str]:
    """Return the flagged substances that have no verdict yet."""

    verdicts = _index_results(results)
    return [code for code in normalize_substances(substances) if code not in verdicts]


def is_confirmation_complete(
    decision: Optional[str],
    substances: Sequence[str],
    results: Sequence[Mapping[str, Any] | ConfirmationResult],
) -> bool:
    """Return ``True`` when a requested confirmation has a verdict per substance."""

    if decision != "request-confirmation":
        return False
    if not substances or not results or len(substances) != len(results):
        return False
    for item in results:
        if isinstance(item, ConfirmationResult):
            continue
        if not item.get("substance") or not item.get("result"):
            return False
    return True


__all__ = [
    "ConfirmationPendingError",
    "ConfirmationResolution",
    "ConfirmationResult",
    "ConfirmationVerdict",
    "is_confirmation_complete",
    "pending_confirmation_substances",
    "resolve_confirmation",
]
