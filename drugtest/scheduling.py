"""Technician roster and duty lookup.

The clinic runs three collection windows a day.  A technician's recurring
weekly schedule says which windows they normally cover; a schedule override
reassigns a single window on a single date.  :func:`find_technician_on_duty`
always prefers an override over the weekly schedule.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import date, time
from typing import Any, Dict, Iterator, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db import SessionLocal
from .db.models import ScheduleOverride, Technician, TechnicianSchedule
from .observability import DUTY_LOOKUPS_TOTAL
from .time_utils import parse_clock_time, parse_date


logger = structlog.get_logger(__name__)


MORNING = "morning"
LATE_MORNING = "late-morning"
AFTERNOON = "afternoon"

TIME_SLOTS = (MORNING, LATE_MORNING, AFTERNOON)

DAYS_OF_WEEK = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

# The fixed Saturday collection is booked at 11:10 and always belongs to the
# late-morning technician.
_SATURDAY_FIXED_TIME = time(11, 10)

# (start hour inclusive, end hour exclusive, slot)
_SLOT_HOURS = (
    (8, 10, MORNING),
    (10, 12, LATE_MORNING),
    (12, 17, AFTERNOON),
)


class TechnicianNotFoundError(Exception):
    """Raised when a schedule change references an unknown technician."""


@contextmanager
def schedule_session_scope(session: Optional[Session] = None) -> Iterator[Session]:
    """Yield *session* or a short-lived one from the configured factory."""

    if session is not None:
        yield session
        return

    scoped = SessionLocal()
    try:
        yield scoped
    finally:
        scoped.close()


def day_of_week(value: date) -> str:
    """Return the lower-case English weekday name for ``value``."""

    return DAYS_OF_WEEK[value.weekday()]


def determine_time_slot(time_text: Optional[str], weekday: str) -> str:
    """Map a wall-clock time to a collection window.

    Times outside clinic hours, and text that cannot be parsed, fall back to
    the morning window.
    """

    parsed = parse_clock_time(time_text)
    if parsed is None:
        return MORNING
    if weekday == "saturday" and parsed == _SATURDAY_FIXED_TIME:
        return LATE_MORNING
    for start, end, slot in _SLOT_HOURS:
        if start <= parsed.hour < end:
            return slot
    return MORNING


def _normalise_slot(value: str) -> str:
    slot = (value or "").strip().lower().replace("_", "-")
    if slot not in TIME_SLOTS:
        raise ValueError(f"Unknown time slot {value!r}; expected one of {', '.join(TIME_SLOTS)}")
    return slot


def find_technician_on_duty(
    session: Optional[Session],
    on_date: date | str,
    time_text: Optional[str],
) -> Optional[Technician]:
    """Return the technician covering ``on_date`` at ``time_text`` or ``None``.

    A failed query is logged and the next source is tried; a missing
    technician is not an error, the caller queues the test for manual
    assignment.
    """

    target = parse_date(on_date)
    if target is None:
        raise ValueError("A date is required to look up the technician on duty")
    weekday = day_of_week(target)
    slot = determine_time_slot(time_text, weekday)

    with schedule_session_scope(session) as db:
        try:
            override = db.execute(
                select(ScheduleOverride)
                .where(ScheduleOverride.date == target, ScheduleOverride.time_slot == slot)
                .order_by(ScheduleOverride.id.desc())
                .limit(1)
            ).scalar_one_or_none()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("schedule_override_lookup_failed", date=target.isoformat(), slot=slot)
            override = None
        if override is not None and override.covering_technician is not None:
            DUTY_LOOKUPS_TOTAL.labels(source="override").inc()
            logger.info(
                "technician_on_duty_override",
                date=target.isoformat(),
                slot=slot,
                technician_id=override.technician_id,
            )
            return override.covering_technician

        try:
            technician = db.execute(
                select(Technician)
                .join(TechnicianSchedule, TechnicianSchedule.technician_id == Technician.id)
                .where(
                    Technician.is_active.is_(True),
                    TechnicianSchedule.day_of_week == weekday,
                    TechnicianSchedule.time_slot == slot,
                    TechnicianSchedule.is_active.is_(True),
                )
                .order_by(Technician.id)
                .limit(1)
            ).scalar_one_or_none()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("technician_schedule_lookup_failed", day=weekday, slot=slot)
            technician = None

    DUTY_LOOKUPS_TOTAL.labels(source="schedule" if technician is not None else "none").inc()
    if technician is None:
        logger.info("technician_on_duty_not_found", date=target.isoformat(), slot=slot)
    return technician


def create_schedule_override(
    session: Session,
    on_date: date | str,
    time_slot: str,
    technician_id: int,
    reason: Optional[str] = None,
) -> ScheduleOverride:
    """Reassign one collection window on one date to ``technician_id``."""

    target = parse_date(on_date)
    if target is None:
        raise ValueError("Override date is required")
    slot = _normalise_slot(time_slot)
    technician = session.get(Technician, technician_id)
    if technician is None:
        raise TechnicianNotFoundError(f"Technician {technician_id} does not exist")
    override = ScheduleOverride(
        date=target,
        time_slot=slot,
        technician_id=technician.id,
        reason=(reason or "").strip() or None,
    )
    session.add(override)
    session.flush()
    logger.info(
        "schedule_override_created",
        override_id=override.id,
        date=target.isoformat(),
        slot=slot,
        technician_id=technician.id,
    )
    return override


def list_schedule_overrides(
    session: Session,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[ScheduleOverride]:
    stmt = select(ScheduleOverride).order_by(ScheduleOverride.date, ScheduleOverride.time_slot, ScheduleOverride.id)
    if start is not None:
        stmt = stmt.where(ScheduleOverride.date >= start)
    if end is not None:
        stmt = stmt.where(ScheduleOverride.date <= end)
    return list(session.execute(stmt).scalars().all())


def list_technicians(session: Session, *, active_only: bool = True) -> List[Technician]:
    stmt = select(Technician).order_by(Technician.id)
    if active_only:
        stmt = stmt.where(Technician.is_active.is_(True))
    return list(session.execute(stmt).scalars().all())


def weekly_roster(session: Session) -> Dict[str, Dict[str, List[Dict[str, Any]]]]:
    """Return ``{day: {slot: [technician, ...]}}`` for the recurring schedule."""

    roster: Dict[str, Dict[str, List[Dict[str, Any]]]] = {
        day: {slot: [] for slot in TIME_SLOTS} for day in DAYS_OF_WEEK
    }
    rows = session.execute(
        select(TechnicianSchedule, Technician)
        .join(Technician, TechnicianSchedule.technician_id == Technician.id)
        .where(Technician.is_active.is_(True), TechnicianSchedule.is_active.is_(True))
        .order_by(Technician.id)
    ).all()
    for schedule, technician in rows:
        day = roster.get(schedule.day_of_week)
        if day is None or schedule.time_slot not in day:
            continue
        day[schedule.time_slot].append(serialize_technician(technician))
    return roster


def serialize_technician(technician: Optional[Technician]) -> Optional[Dict[str, Any]]:
    if technician is None:
        return None
    return {
        "id": technician.id,
        "name": technician.name,
        "email": technician.email,
        "isActive": bool(technician.is_active),
    }


def serialize_override(override: ScheduleOverride) -> Dict[str, Any]:
    return {
        "id": override.id,
        "date": override.date.isoformat(),
        "timeSlot": override.time_slot,
        "reason": override.reason,
        "coveringTechnician": serialize_technician(override.covering_technician),
    }


__all__ = [
    "AFTERNOON",
    "DAYS_OF_WEEK",
    "LATE_MORNING",
    "MORNING",
    "TIME_SLOTS",
    "TechnicianNotFoundError",
    "create_schedule_override",
    "day_of_week",
    "determine_time_slot",
    "find_technician_on_duty",
    "list_schedule_overrides",
    "list_technicians",
    "schedule_session_scope",
    "serialize_override",
    "serialize_technician",
    "weekly_roster",
]
