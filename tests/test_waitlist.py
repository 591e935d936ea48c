# tests/test_waitlist.py
from datetime import date, time

import pytest

from clinic_scheduler import schemas
from clinic_scheduler.errors import ConflictError, InvalidStateError, NotFoundError
from clinic_scheduler.models import AppointmentSource, AppointmentStatus, WaitlistStatus
from clinic_scheduler.services.container import build_services

SUNDAY = date(2026, 2, 1)


def _freed(ids, **overrides):
    data = dict(
        staff_id=ids["staff"], service_id=ids["service"], appointment_date=SUNDAY,
        start_time=time(10, 0), end_time=time(10, 30),
    )
    data.update(overrides)
    return schemas.FreedSlot(**data)


def _enqueue(services, ids, patient="patient", **overrides):
    data = dict(patient_id=ids[patient], service_id=ids["service"])
    data.update(overrides)
    return services.waitlist.add_to_waitlist(ids["clinic"], None, schemas.WaitlistCreate(**data))


def _offer(services, ids, **overrides):
    entry = _enqueue(services, ids, **overrides)
    assert services.matcher.find_and_fill_slot(ids["clinic"], _freed(ids)) is True
    return services.waitlist.get_entry(ids["clinic"], entry.id)


def test_higher_priority_wins_over_older_entry(services, ids, clock, notifier):
    older = _enqueue(services, ids, priority=1)
    clock.advance(minutes=5)
    urgent = _enqueue(services, ids, patient="second_patient", priority=5)

    assert services.matcher.find_and_fill_slot(ids["clinic"], _freed(ids)) is True

    assert services.waitlist.get_entry(ids["clinic"], urgent.id).status == WaitlistStatus.offered
    assert services.waitlist.get_entry(ids["clinic"], older.id).status == WaitlistStatus.active
    offer = notifier.sent("waitlist_offer")[0]
    assert offer["waitlist_id"] == urgent.id
    assert offer["phone"] == "+15551230002"


def test_equal_priority_goes_to_oldest(services, ids, clock):
    first = _enqueue(services, ids)
    clock.advance(minutes=1)
    _enqueue(services, ids, patient="second_patient")

    services.matcher.find_and_fill_slot(ids["clinic"], _freed(ids))

    assert services.waitlist.get_entry(ids["clinic"], first.id).status == WaitlistStatus.offered


def test_offer_records_slot_and_deadline(services, ids, clock):
    entry = _offer(services, ids)

    assert entry.offered_date == SUNDAY
    assert (entry.offered_start_time, entry.offered_end_time) == (time(10, 0), time(10, 30))
    assert entry.offered_staff_id == ids["staff"]
    assert entry.offer_message_id == "fake-1"
    assert (entry.offer_expires_at - entry.offered_at).total_seconds() == 600


def test_no_candidate_returns_false(services, ids, notifier):
    _enqueue(services, ids, service_id=ids["long_service"])

    assert services.matcher.find_and_fill_slot(ids["clinic"], _freed(ids)) is False
    assert notifier.sent("waitlist_offer") == []


@pytest.mark.parametrize("preferences", [
    {"preferred_days_of_week": [1, 2]},
    {"preferred_staff_id": "second_staff"},
    {"preferred_date_start": date(2026, 2, 2)},
    {"preferred_date_end": date(2026, 1, 31)},
    {"preferred_time_start": time(10, 15)},
    {"preferred_time_end": time(10, 15)},
])
def test_preferences_exclude_non_matching_slot(services, ids, preferences):
    if preferences.get("preferred_staff_id"):
        preferences = dict(preferences, preferred_staff_id=ids[preferences["preferred_staff_id"]])
    _enqueue(services, ids, **preferences)

    assert services.matcher.find_and_fill_slot(ids["clinic"], _freed(ids)) is False


def test_matching_preferences_are_offered(services, ids):
    entry = _enqueue(
        services, ids,
        preferred_staff_id=ids["staff"], preferred_days_of_week=[0],
        preferred_date_start=SUNDAY, preferred_date_end=SUNDAY,
        preferred_time_start=time(9, 0), preferred_time_end=time(12, 0),
    )

    assert services.matcher.find_and_fill_slot(ids["clinic"], _freed(ids)) is True
    assert services.waitlist.get_entry(ids["clinic"], entry.id).status == WaitlistStatus.offered


def test_other_clinic_entries_are_never_offered(services, ids):
    services.waitlist.add_to_waitlist(ids["other_clinic"], None, schemas.WaitlistCreate(
        patient_id=ids["other_patient"], service_id=ids["other_service"],
    ))

    assert services.matcher.find_and_fill_slot(
        ids["clinic"], _freed(ids, service_id=ids["other_service"])
    ) is False


def test_claimed_entry_cannot_be_offered_again(session_factory, services, ids):
    entry = _enqueue(services, ids)

    rival = session_factory()
    try:
        rival_services = build_services(rival, services.notifier)
        with rival_services.store.transaction():
            assert rival_services.lifecycle.offer(ids["clinic"], entry.id, _freed(ids)) is True
    finally:
        rival.close()

    with services.store.transaction():
        assert services.lifecycle.offer(ids["clinic"], entry.id, _freed(ids)) is False


def test_accept_offer_books_and_fills(services, ids):
    entry = _offer(services, ids)

    appointment = services.waitlist.accept_offer(ids["clinic"], entry.id)

    assert appointment.source == AppointmentSource.waitlist
    assert appointment.status == AppointmentStatus.confirmed
    assert (appointment.appointment_date, appointment.start_time) == (SUNDAY, time(10, 0))
    filled = services.waitlist.get_entry(ids["clinic"], entry.id)
    assert filled.status == WaitlistStatus.filled
    assert filled.filled_appointment_id == appointment.id


def test_accept_requires_open_offer(services, ids):
    entry = _enqueue(services, ids)

    with pytest.raises(NotFoundError) as exc:
        services.waitlist.accept_offer(ids["clinic"], entry.id)
    assert exc.value.code == "WAITLIST_NOT_FOUND"


def test_accepting_twice_is_not_found(services, ids):
    entry = _offer(services, ids)
    services.waitlist.accept_offer(ids["clinic"], entry.id)

    with pytest.raises(NotFoundError):
        services.waitlist.accept_offer(ids["clinic"], entry.id)


def test_lapsed_offer_expires_on_accept(services, ids, clock):
    entry = _offer(services, ids)
    clock.advance(minutes=11)

    with pytest.raises(NotFoundError):
        services.waitlist.accept_offer(ids["clinic"], entry.id)
    assert services.waitlist.get_entry(ids["clinic"], entry.id).status == WaitlistStatus.expired


def test_accept_into_taken_slot_keeps_offer_open(services, ids):
    entry = _offer(services, ids)
    services.booking.create_appointment(ids["clinic"], None, schemas.AppointmentCreate(
        patient_id=ids["second_patient"], staff_id=ids["staff"], service_id=ids["service"],
        appointment_date=SUNDAY, start_time=time(10, 0),
    ))

    with pytest.raises(ConflictError):
        services.waitlist.accept_offer(ids["clinic"], entry.id)
    assert services.waitlist.get_entry(ids["clinic"], entry.id).status == WaitlistStatus.offered


def test_sweep_expires_only_lapsed_offers(services, ids, clock):
    stale = _offer(services, ids)
    clock.advance(minutes=11)
    fresh = _enqueue(services, ids, patient="second_patient")
    services.matcher.find_and_fill_slot(ids["clinic"], _freed(ids, start_time=time(11, 0), end_time=time(11, 30)))

    assert services.waitlist.expire_stale_offers(ids["clinic"]) == 1

    assert services.waitlist.get_entry(ids["clinic"], stale.id).status == WaitlistStatus.expired
    assert services.waitlist.get_entry(ids["clinic"], fresh.id).status == WaitlistStatus.offered


def test_cancel_entry(services, ids):
    entry = _enqueue(services, ids)

    cancelled = services.waitlist.cancel_entry(ids["clinic"], entry.id)

    assert cancelled.status == WaitlistStatus.cancelled
    with pytest.raises(InvalidStateError):
        services.waitlist.cancel_entry(ids["clinic"], entry.id)


def test_add_validates_references(services, ids):
    with pytest.raises(NotFoundError) as exc:
        _enqueue(services, ids, patient="other_patient")
    assert exc.value.code == "PATIENT_NOT_FOUND"

    with pytest.raises(NotFoundError) as exc:
        _enqueue(services, ids, preferred_staff_id=ids["other_staff"])
    assert exc.value.code == "STAFF_NOT_FOUND"


def test_patient_cancellation_offers_freed_slot(services, ids, notifier):
    appointment = services.booking.create_appointment(ids["clinic"], None, schemas.AppointmentCreate(
        patient_id=ids["patient"], staff_id=ids["staff"], service_id=ids["service"],
        appointment_date=SUNDAY, start_time=time(10, 0),
    ))
    waiting = _enqueue(services, ids, patient="second_patient")

    _, offered = services.booking.cancel_appointment(
        ids["clinic"], appointment.id, AppointmentStatus.cancelled_by_patient, check_waitlist=True
    )

    assert offered is True
    entry = services.waitlist.get_entry(ids["clinic"], waiting.id)
    assert entry.status == WaitlistStatus.offered
    assert entry.offered_start_time == time(10, 0)


def test_clinic_cancellation_does_not_consult_waitlist(services, ids):
    appointment = services.booking.create_appointment(ids["clinic"], None, schemas.AppointmentCreate(
        patient_id=ids["patient"], staff_id=ids["staff"], service_id=ids["service"],
        appointment_date=SUNDAY, start_time=time(10, 0),
    ))
    waiting = _enqueue(services, ids, patient="second_patient")

    _, offered = services.booking.cancel_appointment(
        ids["clinic"], appointment.id, AppointmentStatus.cancelled_by_clinic, check_waitlist=True
    )

    assert offered is False
    assert services.waitlist.get_entry(ids["clinic"], waiting.id).status == WaitlistStatus.active


def test_stats_and_listing(services, ids):
    _enqueue(services, ids, priority=1)
    _enqueue(services, ids, patient="second_patient", priority=3)
    services.matcher.find_and_fill_slot(ids["clinic"], _freed(ids))

    stats = services.waitlist.get_stats(ids["clinic"])
    assert (stats.total, stats.active, stats.offered) == (2, 1, 1)

    page = services.waitlist.list_entries(ids["clinic"], schemas.WaitlistFilter())
    assert [e.priority for e in page.data] == [3, 1]
    active = services.waitlist.list_entries(ids["clinic"], schemas.WaitlistFilter(status=WaitlistStatus.active))
    assert active.pagination.total == 1


def test_lapsed_offer_reads_as_expired(services, ids, clock):
    entry = _offer(services, ids)
    clock.advance(minutes=11)

    assert services.waitlist.get_entry(ids["clinic"], entry.id).status == WaitlistStatus.expired


def test_stats_and_listing_expire_lapsed_offers(services, ids, clock):
    _offer(services, ids)
    clock.advance(minutes=30)

    stats = services.waitlist.get_stats(ids["clinic"])
    assert (stats.offered, stats.expired) == (0, 1)
    offered = services.waitlist.list_entries(ids["clinic"], schemas.WaitlistFilter(status=WaitlistStatus.offered))
    assert offered.pagination.total == 0


def test_taken_leader_falls_through_to_next_candidate(session_factory, services, ids, clock, notifier):
    leader = _enqueue(services, ids, priority=5)
    clock.advance(minutes=1)
    runner_up = _enqueue(services, ids, patient="second_patient")
    find_candidates = services.store.find_waitlist_candidates

    def candidates_then_rival_claims_leader(*args, **kwargs):
        candidates = find_candidates(*args, **kwargs)
        rival = session_factory()
        try:
            rival_services = build_services(rival, notifier)
            with rival_services.store.transaction():
                assert rival_services.lifecycle.offer(ids["clinic"], leader.id, _freed(ids)) is True
        finally:
            rival.close()
        return candidates

    services.store.find_waitlist_candidates = candidates_then_rival_claims_leader

    assert services.matcher.find_and_fill_slot(ids["clinic"], _freed(ids)) is True
    assert services.waitlist.get_entry(ids["clinic"], runner_up.id).status == WaitlistStatus.offered
    offers = notifier.sent("waitlist_offer")
    assert [o["waitlist_id"] for o in offers] == [runner_up.id]
    assert offers[0]["phone"] == "+15551230002"


def test_offer_uses_configured_window(db, ids, notifier, clock):
    services = build_services(db, notifier, clock=clock, offer_window_minutes=15)

    entry = _offer(services, ids)

    assert (entry.offer_expires_at - entry.offered_at).total_seconds() == 900
    assert notifier.sent("waitlist_offer")[0]["window_minutes"] == 15
