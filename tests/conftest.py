import os
import sys
from typing import Dict, Iterable, Iterator, Optional, Sequence, Tuple

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the drugtest package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from drugtest.config import AppSettings, get_app_settings
from drugtest.db import Base, SessionLocal, configure_engine, get_session, init_db
from drugtest.db.config import get_database_settings
from drugtest.db.models import Client, MedicationRecord, ReferralContact, Technician, TechnicianSchedule
from drugtest.drug_tests import set_dispatcher
from drugtest.notifications_service import LoggingEmailSender, NotificationDispatcher


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    for name in ('EMAIL_API_URL', 'EMAIL_API_KEY', 'EMAIL_TEST_MODE', 'DRUGTEST_DATABASE_URL', 'DATABASE_URL'):
        monkeypatch.delenv(name, raising=False)
    get_app_settings.cache_clear()
    get_database_settings.cache_clear()
    yield
    get_app_settings.cache_clear()
    get_database_settings.cache_clear()


@pytest.fixture
def engine() -> Iterator[sa.engine.Engine]:
    engine = sa.create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
        future=True,
    )
    configure_engine(engine)
    init_db(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture
def session(engine) -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(clinic_name='Test Clinic')


@pytest.fixture
def outbox_sender() -> LoggingEmailSender:
    return LoggingEmailSender()


@pytest.fixture
def dispatcher(outbox_sender, settings) -> Iterator[NotificationDispatcher]:
    active = NotificationDispatcher(sender=outbox_sender, settings=settings)
    set_dispatcher(active)
    yield active
    set_dispatcher(None)


@pytest.fixture
def make_client(session):
    def _make(
        first_name: str = 'Jamie',
        last_name: str = 'Rivera',
        email: Optional[str] = 'jamie@example.com',
        client_type: str = 'self',
        referrals: Sequence[Tuple[Optional[str], str]] = (),
        medications: Iterable[Dict[str, object]] = (),
        disable_client_emails: bool = False,
    ) -> Client:
        client = Client(
            first_name=first_name,
            last_name=last_name,
            email=email,
            client_type=client_type,
            disable_client_emails=disable_client_emails,
        )
        session.add(client)
        for name, address in referrals:
            session.add(ReferralContact(client=client, name=name, email=address))
        for med in medications:
            session.add(MedicationRecord(client=client, **med))
        session.commit()
        return client

    return _make


@pytest.fixture
def make_technician(session):
    def _make(
        name: str = 'Alex Tech',
        email: Optional[str] = 'alex.tech@example.com',
        slots: Sequence[Tuple[str, str]] = (),
        is_active: bool = True,
    ) -> Technician:
        technician = Technician(name=name, email=email, is_active=is_active)
        session.add(technician)
        session.flush()
        for day, slot in slots:
            session.add(TechnicianSchedule(technician_id=technician.id, day_of_week=day, time_slot=slot))
        session.commit()
        return technician

    return _make


@pytest.fixture
def api_client(engine, dispatcher) -> Iterator[TestClient]:
    from drugtest import main

    def _override_session():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[get_session] = _override_session
    client = TestClient(main.app)
    try:
        yield client
    finally:
        client.close()
        main.app.dependency_overrides.clear()
