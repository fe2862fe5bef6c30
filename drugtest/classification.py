"""Classify screen results against the client's medication snapshot.

:func:`classify_results` is a pure function: given the detected substances,
the medication snapshot and the breathalyzer reading it partitions the
detected substances into expected and unexpected positives, lists the
expected substances that were not detected, and derives the initial screen
result.  Nothing here touches the database.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .medications import Medication, is_active_at, is_required
from .substances import normalize_substances, panel_substances

# Breathalyzer readings at or below this are treated as zero.
BAC_EPSILON = 0.0001


class ScreenResult(str, enum.Enum):
    NEGATIVE = "negative"
    EXPECTED_POSITIVE = "expected-positive"
    UNEXPECTED_POSITIVE = "unexpected-positive"
    UNEXPECTED_NEGATIVE_CRITICAL = "unexpected-negative-critical"
    UNEXPECTED_NEGATIVE_WARNING = "unexpected-negative-warning"
    MIXED_UNEXPECTED = "mixed-unexpected"


class Disposition(str, enum.Enum):
    PASS = "pass"
    WARNING = "warning"
    FAIL = "fail"


_AUTO_ACCEPT_RESULTS = frozenset(
    {
        ScreenResult.NEGATIVE,
        ScreenResult.EXPECTED_POSITIVE,
        ScreenResult.UNEXPECTED_NEGATIVE_WARNING,
    }
)

_DISPOSITIONS: Dict[ScreenResult, Disposition] = {
    ScreenResult.NEGATIVE: Disposition.PASS,
    ScreenResult.EXPECTED_POSITIVE: Disposition.PASS,
    ScreenResult.UNEXPECTED_NEGATIVE_WARNING: Disposition.WARNING,
    ScreenResult.UNEXPECTED_NEGATIVE_CRITICAL: Disposition.FAIL,
    ScreenResult.UNEXPECTED_POSITIVE: Disposition.FAIL,
    ScreenResult.MIXED_UNEXPECTED: Disposition.FAIL,
}


@dataclass(frozen=True)
class ClassificationResult:
    """Partition of a screen plus the derived result."""

    detected_substances: Tuple[str, ...]
    expected_substances: Tuple[str, ...]
    expected_positives: Tuple[str, ...]
    unexpected_positives: Tuple[str, ...]
    critical_negatives: Tuple[str, ...]
    warning_negatives: Tuple[str, ...]
    confirmed_negatives: Tuple[str, ...]
    initial_screen_result: ScreenResult
    breathalyzer_taken: bool = False
    breathalyzer_result: Optional[float] = None

    @property
    def unexpected_negatives(self) -> Tuple[str, ...]:
        """Every expected substance that was not detected, warnings first."""

        return self.warning_negatives + self.critical_negatives

    @property
    def breathalyzer_positive(self) -> bool:
        return is_breathalyzer_positive(self.breathalyzer_taken, self.breathalyzer_result)

    @property
    def disposition(self) -> Disposition:
        return disposition_for(self.initial_screen_result, self.breathalyzer_positive)

    @property
    def auto_accept(self) -> bool:
        return is_auto_accept(self.initial_screen_result, self.breathalyzer_positive)

    @property
    def requires_decision(self) -> bool:
        return not self.auto_accept

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detectedSubstances": list(self.detected_substances),
            "expectedSubstances": list(self.expected_substances),
            "expectedPositives": list(self.expected_positives),
            "unexpectedPositives": list(self.unexpected_positives),
            "unexpectedNegatives": list(self.unexpected_negatives),
            "criticalNegatives": list(self.critical_negatives),
            "warningNegatives": list(self.warning_negatives),
            "confirmedNegatives": list(self.confirmed_negatives),
            "initialScreenResult": self.initial_screen_result.value,
            "breathalyzerPositive": self.breathalyzer_positive,
            "disposition": self.disposition.value,
            "autoAccept": self.auto_accept,
            "requiresDecision": self.requires_decision,
        }


def is_breathalyzer_positive(taken: bool, result: Optional[float]) -> bool:
    if not taken or result is None:
        return False
    return float(result) > BAC_EPSILON


def classify_counts(
    *,
    detected: int,
    expected: int,
    unexpected_positives: int,
    warning_negatives: int,
    critical_negatives: int,
) -> ScreenResult:
    """Derive the screen result from partition sizes.

    Order matters: an empty screen is judged on its negatives alone, then
    unexpected positives dominate, and critical negatives outrank warnings.
    """

    if detected == 0:
        if expected == 0:
            return ScreenResult.NEGATIVE
        if critical_negatives > 0:
            return ScreenResult.UNEXPECTED_NEGATIVE_CRITICAL
        if warning_negatives > 0:
            return ScreenResult.UNEXPECTED_NEGATIVE_WARNING
    has_negatives = critical_negatives > 0 or warning_negatives > 0
    if unexpected_positives > 0:
        return ScreenResult.MIXED_UNEXPECTED if has_negatives else ScreenResult.UNEXPECTED_POSITIVE
    if critical_negatives > 0:
        return ScreenResult.UNEXPECTED_NEGATIVE_CRITICAL
    if warning_negatives > 0:
        return ScreenResult.UNEXPECTED_NEGATIVE_WARNING
    return ScreenResult.EXPECTED_POSITIVE


def disposition_for(result: ScreenResult, breathalyzer_positive: bool = False) -> Disposition:
    if breathalyzer_positive:
        return Disposition.FAIL
    return _DISPOSITIONS[result]


def is_auto_accept(result: ScreenResult, breathalyzer_positive: bool = False) -> bool:
    return not breathalyzer_positive and result in _AUTO_ACCEPT_RESULTS


def expected_substances(
    medications: Iterable[Medication],
    *,
    test_type: Optional[str] = None,
    collection_date: Optional[date] = None,
) -> Tuple[List[str], List[str]]:
    """Return ``(expected, required)`` substance lists in first-seen order.

    ``required`` is the subset contributed by at least one required
    medication.  When ``test_type`` names a known panel both lists are
    restricted to the substances that panel screens for.
    """

    panel = panel_substances(test_type)
    expected: Dict[str, None] = {}
    required: Dict[str, None] = {}
    for med in medications:
        if not is_active_at(med, collection_date):
            continue
        med_required = is_required(med)
        for code in normalize_substances(med.detected_as):
            if panel is not None and code not in panel:
                continue
            expected.setdefault(code, None)
            if med_required:
                required.setdefault(code, None)
    return list(expected), list(required)


def classify_results(
    detected_substances: Optional[Iterable[Any]],
    medications: Sequence[Medication],
    *,
    breathalyzer_taken: bool = False,
    breathalyzer_result: Optional[float] = None,
    test_type: Optional[str] = None,
    collection_date: Optional[date] = None,
) -> ClassificationResult:
    """Classify a screen against the medication snapshot."""

    detected = normalize_substances(detected_substances)
    expected, required = expected_substances(
        medications, test_type=test_type, collection_date=collection_date
    )
    expected_set = set(expected)
    required_set = set(required)
    detected_set = set(detected)

    expected_positives = [code for code in detected if code in expected_set]
    unexpected_positives = [code for code in detected if code not in expected_set]
    missing = [code for code in expected if code not in detected_set]
    critical = [code for code in missing if code in required_set]
    warning = [code for code in missing if code not in required_set]

    result = classify_counts(
        detected=len(detected),
        expected=len(expected),
        unexpected_positives=len(unexpected_positives),
        warning_negatives=len(warning),
        critical_negatives=len(critical),
    )
    return ClassificationResult(
        detected_substances=tuple(detected),
        expected_substances=tuple(expected),
        expected_positives=tuple(expected_positives),
        unexpected_positives=tuple(unexpected_positives),
        critical_negatives=tuple(critical),
        warning_negatives=tuple(warning),
        confirmed_negatives=(),
        initial_screen_result=result,
        breathalyzer_taken=bool(breathalyzer_taken),
        breathalyzer_result=breathalyzer_result,
    )


__all__ = [
    "BAC_EPSILON",
    "ClassificationResult",
    "Disposition",
    "ScreenResult",
    "classify_counts",
    "classify_results",
    "disposition_for",
    "expected_substances",
    "is_auto_accept",
    "is_breathalyzer_positive",
]
