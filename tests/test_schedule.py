# tests/test_schedule.py
from datetime import date, time

import pytest

from clinic_scheduler import schemas
from clinic_scheduler.errors import NotFoundError, ValidationFailedError

SUNDAY = date(2026, 2, 1)


def _week(*working_days):
    return [
        schemas.WorkingHoursIn(day_of_week=day, is_working=True, open_time=time(10, 0), close_time=time(14, 0))
        for day in working_days
    ]


def test_replace_working_hours(services, ids):
    rows = services.schedule.set_working_hours(ids["clinic"], ids["staff"], _week(2, 0))

    assert [(r.day_of_week, r.open_time, r.close_time) for r in rows] == [
        (0, time(10, 0), time(14, 0)), (2, time(10, 0), time(14, 0)),
    ]
    assert len(services.schedule.get_working_hours(ids["clinic"], ids["staff"])) == 2

    slots = services.availability.get_availability(ids["clinic"], SUNDAY, ids["staff"], ids["service"])
    assert (slots[0].start, slots[-1].end) == (time(10, 0), time(14, 0))
    assert services.availability.get_availability(ids["clinic"], date(2026, 2, 2), ids["staff"], ids["service"]) == []


def test_duplicate_weekday_is_rejected(services, ids):
    with pytest.raises(ValidationFailedError):
        services.schedule.set_working_hours(ids["clinic"], ids["staff"], _week(1, 1))


def test_working_day_needs_times(services, ids):
    with pytest.raises(ValidationFailedError):
        services.schedule.set_working_hours(
            ids["clinic"], ids["staff"], [schemas.WorkingHoursIn(day_of_week=3, is_working=True)]
        )


def test_working_hours_for_foreign_staff(services, ids):
    with pytest.raises(NotFoundError) as exc:
        services.schedule.get_working_hours(ids["clinic"], ids["other_staff"])
    assert exc.value.code == "STAFF_NOT_FOUND"


def test_block_and_unblock_slot(services, ids):
    blocked = services.schedule.block_slot(ids["clinic"], ids["staff"], schemas.BlockedSlotCreate(
        staff_id=ids["staff"], block_date=SUNDAY, start_time=time(9, 0), end_time=time(12, 0), reason="Training",
    ))

    starts = [s.start for s in services.availability.get_availability(
        ids["clinic"], SUNDAY, ids["staff"], ids["service"]
    )]
    assert starts[0] == time(12, 0)
    assert [b.id for b in services.schedule.list_blocked_slots(ids["clinic"], ids["staff"], SUNDAY)] == [blocked.id]

    services.schedule.unblock_slot(ids["clinic"], blocked.id)
    assert services.schedule.list_blocked_slots(ids["clinic"], ids["staff"], SUNDAY) == []

    with pytest.raises(NotFoundError) as exc:
        services.schedule.unblock_slot(ids["clinic"], blocked.id)
    assert exc.value.code == "BLOCKED_SLOT_NOT_FOUND"


def test_blocked_window_must_be_ordered():
    with pytest.raises(ValueError):
        schemas.BlockedSlotCreate(staff_id=1, block_date=SUNDAY, start_time=time(12, 0), end_time=time(11, 0))


def test_create_service(services, ids):
    created = services.schedule.create_service(
        ids["clinic"], schemas.ServiceCreate(name_ar="مساج", name_en="Massage", duration_minutes=45)
    )
    assert created.id in [s.id for s in services.schedule.list_services(ids["clinic"])]
    assert created.id not in [s.id for s in services.schedule.list_services(ids["other_clinic"])]
