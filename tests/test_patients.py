# tests/test_patients.py
from datetime import date, time

import pytest

from clinic_scheduler import schemas
from clinic_scheduler.errors import ConflictError, NotFoundError


def test_create_patient_normalizes_phone(services, ids):
    patient = services.patients.create_patient(
        ids["clinic"], schemas.PatientCreate(full_name="Huda Nasser", phone=" +1555 123 0003 ")
    )
    assert patient.phone == "+15551230003"
    assert patient.clinic_id == ids["clinic"]


def test_phone_is_unique_per_clinic(services, ids):
    with pytest.raises(ConflictError) as exc:
        services.patients.create_patient(
            ids["clinic"], schemas.PatientCreate(full_name="Copy", phone="+15551230001")
        )
    assert exc.value.code == "PATIENT_EXISTS"

    # The same number may exist in another clinic
    elsewhere = services.patients.create_patient(
        ids["other_clinic"], schemas.PatientCreate(full_name="Sara Elsewhere", phone="+15551230001")
    )
    assert elsewhere.clinic_id == ids["other_clinic"]


def test_update_rejects_taken_phone(services, ids):
    with pytest.raises(ConflictError) as exc:
        services.patients.update_patient(ids["clinic"], ids["patient"], schemas.PatientUpdate(phone="+15551230002"))
    assert exc.value.code == "PHONE_EXISTS"


def test_update_changes_only_given_fields(services, ids):
    updated = services.patients.update_patient(
        ids["clinic"], ids["patient"], schemas.PatientUpdate(notes="Prefers mornings")
    )
    assert updated.notes == "Prefers mornings"
    assert updated.full_name == "Sara Haddad"
    assert updated.phone == "+15551230001"


def test_patient_from_other_clinic_is_not_found(services, ids):
    with pytest.raises(NotFoundError) as exc:
        services.patients.get_patient(ids["clinic"], ids["other_patient"])
    assert exc.value.code == "PATIENT_NOT_FOUND"


def test_search_by_name_or_phone(services, ids):
    assert [p.id for p in services.patients.search_patients(ids["clinic"], "haddad")] == [ids["patient"]]
    assert [p.id for p in services.patients.search_patients(ids["clinic"], "1230002")] == [ids["second_patient"]]
    assert services.patients.search_patients(ids["clinic"], "Not Ours") == []
    assert services.patients.search_patients(ids["clinic"], "   ") == []


def test_list_patients_is_paginated(services, ids):
    page = services.patients.list_patients(ids["clinic"], schemas.PatientFilter(limit=1))
    assert page.pagination.total == 2
    assert page.pagination.total_pages == 2
    assert len(page.data) == 1

    filtered = services.patients.list_patients(ids["clinic"], schemas.PatientFilter(search="rami"))
    assert [p.id for p in filtered.data] == [ids["second_patient"]]


def test_history_lists_appointments_and_packages(services, ids):
    services.booking.create_appointment(ids["clinic"], None, schemas.AppointmentCreate(
        patient_id=ids["patient"], staff_id=ids["staff"], service_id=ids["service"],
        appointment_date=date(2026, 2, 1), start_time=time(9, 0),
    ))
    services.packages.create_package(ids["clinic"], None, schemas.PackageCreate(
        patient_id=ids["patient"], staff_id=ids["staff"], service_id=ids["service"], name="Course",
        start_date=date(2026, 2, 2), start_time=time(9, 0), total_sessions=2, interval_days=7,
    ))

    history = services.patients.get_history(ids["clinic"], ids["patient"])

    assert history.patient.id == ids["patient"]
    assert len(history.appointments) == 3
    assert history.appointments[0].appointment_date == date(2026, 2, 9)
    assert [p.name for p in history.packages] == ["Course"]


def test_get_or_create_by_phone(services, ids):
    known, created = services.patients.get_or_create_by_phone(ids["clinic"], "whatsapp:+15551230001")
    assert (known.id, created) == (ids["patient"], False)

    fresh, created = services.patients.get_or_create_by_phone(ids["clinic"], "whatsapp:+15551230009", "Maya")
    assert created is True
    assert (fresh.phone, fresh.full_name) == ("+15551230009", "Maya")
