# tests/conftest.py
import os
from datetime import datetime, time, timedelta, timezone

# Settings are read at import time by the database module
os.environ["SECRET_KEY"] = "test-secret-key-that-is-at-least-32-characters-long"
os.environ["DATABASE_URL"] = "sqlite:///./test_clinic_scheduler.db"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "testing"
for _name in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_WHATSAPP_FROM"):
    os.environ.pop(_name, None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from clinic_scheduler import models
from clinic_scheduler.database import create_tables, drop_tables, get_db
from clinic_scheduler.dependencies import get_notifier
from clinic_scheduler.models import StaffRole
from clinic_scheduler.security import create_access_token
from clinic_scheduler.services.container import build_services
from clinic_scheduler.services.notifier import Notifier


class FakeNotifier(Notifier):
    """Records every message instead of sending it."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    def _record(self, method, **payload):
        if self.fail:
            raise RuntimeError("transport down")
        self.calls.append((method, payload))
        return {"success": True, "message_id": f"fake-{len(self.calls)}", "error": None}

    def send_booking_confirmation(self, phone, patient_name, appointment, clinic_id=None):
        return self._record("booking_confirmation", phone=phone, patient_name=patient_name,
                            appointment_id=appointment.id)

    def send_waitlist_offer(self, phone, patient_name, slot, waitlist_id, clinic_id=None, service_name=None,
                            window_minutes=None):
        return self._record("waitlist_offer", phone=phone, patient_name=patient_name,
                            slot=slot, waitlist_id=waitlist_id, window_minutes=window_minutes)

    def send_reminder(self, phone, appointment, lead_hours, clinic_id=None):
        return self._record("reminder", phone=phone, appointment_id=appointment.id, lead_hours=lead_hours)

    def send_message(self, phone, text, message_type="text", clinic_id=None):
        return self._record("message", phone=phone, text=text, message_type=message_type)

    def sent(self, method):
        return [payload for name, payload in self.calls if name == method]


class FakeClock:
    def __init__(self, now=None):
        self.now = now or datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def engine(tmp_path):
    # A file database so worker threads get real, separate connections
    engine = create_engine(
        f"sqlite:///{tmp_path / 'scheduler.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    create_tables(bind=engine)
    yield engine
    drop_tables(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed(db):
    """Two clinics; the first with a specialist working 09:00-17:00 except Fridays."""
    clinic = models.Clinic(name="Main Clinic", whatsapp_number="+15550001111")
    other_clinic = models.Clinic(name="Other Clinic", whatsapp_number="+15550002222")
    db.add_all([clinic, other_clinic])
    db.flush()

    staff = models.StaffMember(clinic_id=clinic.id, full_name="Dr. Lina", role=StaffRole.specialist)
    second_staff = models.StaffMember(clinic_id=clinic.id, full_name="Dr. Omar", role=StaffRole.specialist)
    other_staff = models.StaffMember(clinic_id=other_clinic.id, full_name="Dr. Elsewhere")
    db.add_all([staff, second_staff, other_staff])
    db.flush()

    service = models.Service(clinic_id=clinic.id, name_ar="تنظيف بشرة", name_en="Facial", duration_minutes=30)
    long_service = models.Service(clinic_id=clinic.id, name_ar="ليزر", name_en="Laser", duration_minutes=60)
    other_service = models.Service(clinic_id=other_clinic.id, name_ar="استشارة", duration_minutes=30)
    db.add_all([service, long_service, other_service])
    db.flush()

    # Sunday(0) .. Thursday(4) and Saturday(6) working, Friday(5) off
    for member in (staff, second_staff):
        for day in range(7):
            working = day != 5
            db.add(models.WorkingHours(
                clinic_id=clinic.id,
                staff_id=member.id,
                day_of_week=day,
                is_working=working,
                open_time=time(9, 0) if working else None,
                close_time=time(17, 0) if working else None,
            ))

    patient = models.Patient(clinic_id=clinic.id, full_name="Sara Haddad", phone="+15551230001")
    second_patient = models.Patient(clinic_id=clinic.id, full_name="Rami Khoury", phone="+15551230002")
    other_patient = models.Patient(clinic_id=other_clinic.id, full_name="Not Ours", phone="+15551239999")
    db.add_all([patient, second_patient, other_patient])
    db.commit()

    return {
        "clinic": clinic,
        "other_clinic": other_clinic,
        "staff": staff,
        "second_staff": second_staff,
        "other_staff": other_staff,
        "service": service,
        "long_service": long_service,
        "other_service": other_service,
        "patient": patient,
        "second_patient": second_patient,
        "other_patient": other_patient,
    }


@pytest.fixture
def ids(seed):
    """Plain integer ids, safe to use after sessions expire their objects."""
    return {name: obj.id for name, obj in seed.items()}


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def services(db, notifier, clock, seed):
    return build_services(db, notifier, clock=clock)


@pytest.fixture
def client(session_factory, notifier, seed):
    from clinic_scheduler.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(ids):
    token = create_access_token(user_id=ids["staff"], clinic_id=ids["clinic"], role=StaffRole.owner)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def other_clinic_headers(ids):
    token = create_access_token(user_id=ids["other_staff"], clinic_id=ids["other_clinic"], role=StaffRole.owner)
    return {"Authorization": f"Bearer {token}"}
