#!/usr/bin/env python3
"""Bootstrap the drug-test clinic database with its schema and a starter roster."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Dict, List, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from drugtest.db import init_db
from drugtest.db.config import DatabaseSettings, get_database_settings
from drugtest.db.models import Technician, TechnicianSchedule
from drugtest.scheduling import AFTERNOON, LATE_MORNING, MORNING


# Weekday windows covered by each starter technician.  Saturday only runs the
# fixed late-morning collection.
_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday")

DEFAULT_TECHNICIANS: Tuple[Dict[str, object], ...] = (
    {
        "name": "Morning Technician",
        "email": "morning.tech@exampleclinic.com",
        "slots": [(day, MORNING) for day in _WEEKDAYS],
    },
    {
        "name": "Late Morning Technician",
        "email": "late.tech@exampleclinic.com",
        "slots": [(day, LATE_MORNING) for day in _WEEKDAYS] + [("saturday", LATE_MORNING)],
    },
    {
        "name": "Afternoon Technician",
        "email": "afternoon.tech@exampleclinic.com",
        "slots": [(day, AFTERNOON) for day in _WEEKDAYS],
    },
)


def seed_roster(session: Session) -> List[Tuple[str, int]]:
    """Create the starter technicians and their weekly slots if missing."""

    created: List[Tuple[str, int]] = []
    for entry in DEFAULT_TECHNICIANS:
        technician = session.execute(
            select(Technician).where(Technician.email == entry["email"])
        ).scalar_one_or_none()
        if technician is not None:
            continue
        technician = Technician(name=entry["name"], email=entry["email"], is_active=True)
        session.add(technician)
        session.flush()
        slots = list(entry["slots"])
        for day, slot in slots:
            session.add(TechnicianSchedule(technician_id=technician.id, day_of_week=day, time_slot=slot))
        created.append((technician.name, len(slots)))
    session.commit()
    return created


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create the drug-test clinic tables and seed a starter technician roster.",
    )
    parser.add_argument(
        "--database-url",
        "-d",
        default=get_database_settings().url,
        help="SQLAlchemy database URL (default: %(default)s)",
    )
    parser.add_argument(
        "--skip-roster-seed",
        action="store_true",
        help="Do not create the starter technicians and weekly schedule.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    url: str = args.database_url
    if url.startswith("sqlite:///"):
        Path(url[len("sqlite:///"):]).expanduser().parent.mkdir(parents=True, exist_ok=True)

    env_settings = get_database_settings()
    db_settings = env_settings if env_settings.url == url else DatabaseSettings(url=url)
    engine = db_settings.create_engine()
    try:
        init_db(engine)
        created: List[Tuple[str, int]] = []
        if not args.skip_roster_seed:
            with Session(engine) as session:
                created = seed_roster(session)
    finally:
        engine.dispose()

    print(f"Database initialised at {db_settings.display_url}")

    if args.skip_roster_seed:
        print("Roster seeding skipped.")
    elif created:
        print("Created the following technicians (edit the roster before going live):")
        for name, slot_count in created:
            print(f"  - {name} ({slot_count} weekly slots)")
    else:
        print("Starter technicians already existed; roster unchanged.")

    return 0


if __name__ == "__main__":
    sys.exit(main())
