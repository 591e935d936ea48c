# clinic_scheduler/services/waitlist_service.py
"""
Waitlist: entries, offer lifecycle and freed-slot matching.

Entry states::

    active --> offered --> filled
       |          |------> expired
       |          '------> cancelled
       '--> cancelled

Every transition is a compare-and-swap on the status column, so two
concurrent callers can never both move the same entry.
"""
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from .. import models, schemas
from ..crud import SchedulingStore
from ..errors import InvalidStateError, NotFoundError, ValidationFailedError
from ..models import AppointmentSource, WaitlistStatus, as_utc, utcnow
from .intervals import day_of_week
from .notifier import Notifier, deliver

logger = structlog.get_logger(__name__)

OFFER_WINDOW_MINUTES = 10


class WaitlistLifecycle:
    """Status transitions for waitlist entries. None of these commit."""

    def __init__(self, store: SchedulingStore, clock: Callable[[], datetime] = utcnow,
                 offer_window_minutes: int = OFFER_WINDOW_MINUTES):
        self.store = store
        self.clock = clock
        self.offer_window = timedelta(minutes=offer_window_minutes)

    def offer(self, clinic_id: int, entry_id: int, slot: schemas.FreedSlot) -> bool:
        now = self.clock()
        return self.store.transition_waitlist(
            clinic_id, entry_id, [WaitlistStatus.active], WaitlistStatus.offered,
            offered_at=now,
            offer_expires_at=now + self.offer_window,
            offered_date=slot.appointment_date,
            offered_start_time=slot.start_time,
            offered_end_time=slot.end_time,
            offered_staff_id=slot.staff_id,
            offer_message_id=None,
        )

    def fill(self, clinic_id: int, entry_id: int, appointment_id: int) -> bool:
        return self.store.transition_waitlist(
            clinic_id, entry_id, [WaitlistStatus.offered], WaitlistStatus.filled,
            filled_appointment_id=appointment_id, filled_at=self.clock(),
        )

    def cancel(self, clinic_id: int, entry_id: int) -> bool:
        return self.store.transition_waitlist(
            clinic_id, entry_id, [WaitlistStatus.active, WaitlistStatus.offered], WaitlistStatus.cancelled,
            cancelled_at=self.clock(),
        )

    def expire(self, clinic_id: int, entry_id: int) -> bool:
        return self.store.transition_waitlist(
            clinic_id, entry_id, [WaitlistStatus.offered], WaitlistStatus.expired, expired_at=self.clock(),
        )

    def is_lapsed(self, entry: models.WaitlistEntry) -> bool:
        return (
            entry.status == WaitlistStatus.offered
            and entry.offer_expires_at is not None
            and as_utc(entry.offer_expires_at) <= self.clock()
        )

    def expire_stale_offers(self, clinic_id: Optional[int] = None) -> int:
        """Sweep every lapsed offer to expired and commit."""
        with self.store.transaction():
            expired = self.store.expire_offers(self.clock(), clinic_id)
        if expired:
            logger.info("waitlist_offers_expired", clinic_id=clinic_id, expired=expired)
        return expired


class WaitlistMatcher:
    """Offers a freed slot to the best matching active entry."""

    def __init__(self, store: SchedulingStore, lifecycle: WaitlistLifecycle, notifier: Notifier):
        self.store = store
        self.lifecycle = lifecycle
        self.notifier = notifier

    @staticmethod
    def accepts_weekday(entry: models.WaitlistEntry, slot: schemas.FreedSlot) -> bool:
        days = entry.preferred_days_of_week or []
        return not days or day_of_week(slot.appointment_date) in days

    def find_and_fill_slot(self, clinic_id: int, slot: schemas.FreedSlot) -> bool:
        """Offer ``slot`` to the top ranked candidate. True iff an offer was made.

        Candidates come back most urgent first, then oldest. If another request
        claims the leader first the next candidate is tried.
        """
        candidates = self.store.find_waitlist_candidates(
            clinic_id, slot.service_id, slot.staff_id, slot.appointment_date, slot.start_time, slot.end_time
        )
        chosen = None
        for entry in candidates:
            if not self.accepts_weekday(entry, slot):
                continue
            with self.store.transaction():
                claimed = self.lifecycle.offer(clinic_id, entry.id, slot)
            if claimed:
                chosen = entry
                break
            logger.info("waitlist_candidate_taken", clinic_id=clinic_id, waitlist_id=entry.id)

        if chosen is None:
            logger.info("waitlist_no_match", clinic_id=clinic_id, service_id=slot.service_id,
                        date=str(slot.appointment_date))
            return False

        self.store.refresh(chosen)
        logger.info("waitlist_offer_made", clinic_id=clinic_id, waitlist_id=chosen.id,
                    priority=chosen.priority, date=str(slot.appointment_date))
        result = deliver(
            self.notifier.send_waitlist_offer,
            chosen.patient.phone, chosen.patient.full_name, slot, chosen.id,
            clinic_id=clinic_id, service_name=chosen.service.display_name,
            window_minutes=int(self.lifecycle.offer_window.total_seconds() // 60),
        )
        if result.get("message_id"):
            with self.store.transaction():
                chosen.offer_message_id = result["message_id"]
        return True


class WaitlistService:

    def __init__(self, store: SchedulingStore, lifecycle: WaitlistLifecycle, booking):
        self.store = store
        self.lifecycle = lifecycle
        self.booking = booking

    def _get(self, clinic_id: int, entry_id: int) -> models.WaitlistEntry:
        entry = self.store.get_waitlist_entry(clinic_id, entry_id)
        if not entry:
            raise NotFoundError("Waitlist entry not found", code="WAITLIST_NOT_FOUND")
        return entry

    def add_to_waitlist(self, clinic_id: int, created_by: Optional[int], data: schemas.WaitlistCreate
                        ) -> models.WaitlistEntry:
        if not self.store.get_patient(clinic_id, data.patient_id):
            raise NotFoundError("Patient not found", code="PATIENT_NOT_FOUND")
        if not self.store.get_service(clinic_id, data.service_id):
            raise NotFoundError("Service not found", code="SERVICE_NOT_FOUND")
        if data.preferred_staff_id is not None and not self.store.get_staff(clinic_id, data.preferred_staff_id):
            raise NotFoundError("Staff member not found", code="STAFF_NOT_FOUND")

        entry = models.WaitlistEntry(
            clinic_id=clinic_id,
            status=WaitlistStatus.active,
            created_by=created_by,
            created_at=self.lifecycle.clock(),
            **data.model_dump(),
        )
        with self.store.transaction():
            self.store.add(entry)
        self.store.refresh(entry)
        logger.info("waitlist_entry_added", clinic_id=clinic_id, waitlist_id=entry.id, priority=entry.priority)
        return entry

    def get_entry(self, clinic_id: int, entry_id: int) -> models.WaitlistEntry:
        entry = self._get(clinic_id, entry_id)
        if self.lifecycle.is_lapsed(entry):
            with self.store.transaction():
                self.lifecycle.expire(clinic_id, entry.id)
            self.store.refresh(entry)
        return entry

    def accept_offer(self, clinic_id: int, entry_id: int, created_by: Optional[int] = None,
                     data: Optional[schemas.WaitlistAccept] = None) -> models.Appointment:
        """Turn an open offer into a booking and mark the entry filled.

        An entry that is not currently offered, or whose offer has lapsed,
        is reported as not found.
        """
        data = data or schemas.WaitlistAccept()
        entry = self.store.get_waitlist_entry(clinic_id, entry_id, status=WaitlistStatus.offered)
        if not entry:
            raise NotFoundError("Waitlist entry not found or offer expired", code="WAITLIST_NOT_FOUND")
        if self.lifecycle.is_lapsed(entry):
            with self.store.transaction():
                self.lifecycle.expire(clinic_id, entry.id)
            logger.info("waitlist_offer_lapsed", clinic_id=clinic_id, waitlist_id=entry.id)
            raise NotFoundError("Waitlist entry not found or offer expired", code="WAITLIST_NOT_FOUND")

        on_date = data.appointment_date or entry.offered_date
        start_time = data.start_time or entry.offered_start_time
        staff_id = entry.offered_staff_id or entry.preferred_staff_id
        if on_date is None or start_time is None:
            raise ValidationFailedError("Appointment date and time are required")
        if staff_id is None:
            raise ValidationFailedError("No staff member recorded on the offer")

        def mark_filled(appointment: models.Appointment) -> None:
            if not self.lifecycle.fill(clinic_id, entry.id, appointment.id):
                raise NotFoundError("Waitlist entry not found or offer expired", code="WAITLIST_NOT_FOUND")

        appointment = self.booking.create_appointment(
            clinic_id,
            created_by,
            schemas.AppointmentCreate(
                patient_id=entry.patient_id,
                staff_id=staff_id,
                service_id=entry.service_id,
                appointment_date=on_date,
                start_time=start_time,
                notes=entry.notes,
            ),
            source=AppointmentSource.waitlist,
            after_insert=mark_filled,
        )
        logger.info("waitlist_offer_accepted", clinic_id=clinic_id, waitlist_id=entry_id,
                    appointment_id=appointment.id)
        return appointment

    def cancel_entry(self, clinic_id: int, entry_id: int) -> models.WaitlistEntry:
        entry = self._get(clinic_id, entry_id)
        with self.store.transaction():
            if not self.lifecycle.cancel(clinic_id, entry.id):
                raise InvalidStateError(f"Cannot cancel a waitlist entry that is {entry.status.value}")
        self.store.refresh(entry)
        logger.info("waitlist_entry_cancelled", clinic_id=clinic_id, waitlist_id=entry.id)
        return entry

    def list_entries(self, clinic_id: int, filters: schemas.WaitlistFilter):
        # Lapsed offers are expired on read so listings never show them as open
        self.lifecycle.expire_stale_offers(clinic_id)
        rows, total = self.store.list_waitlist(clinic_id, filters)
        return schemas.page_of(schemas.WaitlistResponse, rows, total, filters)

    def get_stats(self, clinic_id: int) -> schemas.WaitlistStats:
        self.lifecycle.expire_stale_offers(clinic_id)
        counts = self.store.count_by_status(models.WaitlistEntry, clinic_id)
        return schemas.WaitlistStats(
            total=sum(counts.values()),
            **{status.value: counts.get(status.value, 0) for status in WaitlistStatus},
        )

    def expire_stale_offers(self, clinic_id: Optional[int] = None) -> int:
        return self.lifecycle.expire_stale_offers(clinic_id)
