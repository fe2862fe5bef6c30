import importlib.util
from datetime import date
from pathlib import Path

from sqlalchemy import func, select

from drugtest.db.models import TechnicianSchedule
from drugtest.scheduling import find_technician_on_duty


SCRIPT = Path(__file__).resolve().parents[1] / 'scripts' / 'bootstrap_database.py'


def _load_script():
    spec = importlib.util.spec_from_file_location('bootstrap_database', SCRIPT)
    assert spec and spec.loader
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)  # type: ignore[union-attr]
    return module


def test_seed_roster_is_idempotent(session):
    bootstrap = _load_script()

    created = bootstrap.seed_roster(session)
    assert [name for name, _ in created] == [
        'Morning Technician',
        'Late Morning Technician',
        'Afternoon Technician',
    ]
    assert bootstrap.seed_roster(session) == []
    assert session.execute(select(func.count(TechnicianSchedule.id))).scalar_one() == 16

    saturday = find_technician_on_duty(session, date(2025, 6, 7), '11:10 AM')
    assert saturday.name == 'Late Morning Technician'
