"""Screening status lifecycle for a drug test record."""

from __future__ import annotations

import enum
from typing import Dict, FrozenSet, Optional

from .substances import is_lab_test


class ScreeningStatus(str, enum.Enum):
    PENDING = "pending"
    COLLECTED = "collected"
    SCREENED = "screened"
    CONFIRMATION_PENDING = "confirmation-pending"
    COMPLETE = "complete"


class ConfirmationDecision(str, enum.Enum):
    ACCEPT = "accept"
    REQUEST_CONFIRMATION = "request-confirmation"


class NotificationStage(str, enum.Enum):
    COLLECTED = "collected"
    SCREENED = "screened"
    COMPLETE = "complete"
    INCONCLUSIVE = "inconclusive"


class InvalidTransitionError(Exception):
    """Raised when a drug test is moved between statuses the lifecycle forbids."""

    def __init__(self, current: str, target: str, reason: Optional[str] = None):
        self.current = current
        self.target = target
        self.reason = reason
        message = f"Cannot move drug test from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


TRANSITIONS: Dict[ScreeningStatus, FrozenSet[ScreeningStatus]] = {
    ScreeningStatus.PENDING: frozenset({ScreeningStatus.COLLECTED}),
    ScreeningStatus.COLLECTED: frozenset({ScreeningStatus.SCREENED}),
    ScreeningStatus.SCREENED: frozenset(
        {ScreeningStatus.CONFIRMATION_PENDING, ScreeningStatus.COMPLETE}
    ),
    ScreeningStatus.CONFIRMATION_PENDING: frozenset({ScreeningStatus.COMPLETE}),
    ScreeningStatus.COMPLETE: frozenset(),
}


def _value(item: object) -> str:
    return str(getattr(item, "value", item))


def _coerce(status: ScreeningStatus | str) -> ScreeningStatus:
    return status if isinstance(status, ScreeningStatus) else ScreeningStatus(_value(status))


def can_transition(
    current: ScreeningStatus | str,
    target: ScreeningStatus | str,
    *,
    decision: Optional[ConfirmationDecision | str] = None,
    confirmation_complete: bool = True,
) -> bool:
    """Return ``True`` when ``current -> target`` is allowed.

    ``screened -> confirmation-pending`` additionally requires an explicit
    ``request-confirmation`` decision and ``confirmation-pending -> complete``
    requires every flagged substance to have a verdict.
    """

    try:
        source = _coerce(current)
        destination = _coerce(target)
    except ValueError:
        return False
    if destination not in TRANSITIONS[source]:
        return False
    if destination is ScreeningStatus.CONFIRMATION_PENDING:
        return decision is not None and _value(decision) == ConfirmationDecision.REQUEST_CONFIRMATION.value
    if source is ScreeningStatus.CONFIRMATION_PENDING:
        return confirmation_complete
    return True


def require_transition(
    current: ScreeningStatus | str,
    target: ScreeningStatus | str,
    *,
    decision: Optional[ConfirmationDecision | str] = None,
    confirmation_complete: bool = True,
) -> ScreeningStatus:
    """Validate the transition and return the target status."""

    if not can_transition(
        current,
        target,
        decision=decision,
        confirmation_complete=confirmation_complete,
    ):
        source, destination = _value(current), _value(target)
        reason = None
        if source == ScreeningStatus.COMPLETE.value:
            reason = "completed tests are final"
        elif destination == ScreeningStatus.CONFIRMATION_PENDING.value:
            reason = "confirmation must be explicitly requested"
        elif not confirmation_complete:
            reason = "confirmation results are still pending"
        raise InvalidTransitionError(source, destination, reason)
    return _coerce(target)


def notification_stage_for(
    status: ScreeningStatus | str,
    test_type: Optional[str],
    is_inconclusive: bool = False,
) -> Optional[NotificationStage]:
    """Return the notification stage triggered by entering ``status``.

    Collection notices only go out for lab tests; instant tests are screened
    on the spot.  An invalid specimen replaces the completion notice with
    the inconclusive one.
    """

    current = _coerce(status)
    if current is ScreeningStatus.COLLECTED:
        return NotificationStage.COLLECTED if is_lab_test(test_type) else None
    if current is ScreeningStatus.SCREENED:
        return NotificationStage.SCREENED
    if current is ScreeningStatus.COMPLETE:
        return NotificationStage.INCONCLUSIVE if is_inconclusive else NotificationStage.COMPLETE
    return None


__all__ = [
    "ConfirmationDecision",
    "InvalidTransitionError",
    "NotificationStage",
    "ScreeningStatus",
    "TRANSITIONS",
    "can_transition",
    "notification_stage_for",
    "require_transition",
]
