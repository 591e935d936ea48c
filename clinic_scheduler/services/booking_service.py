# clinic_scheduler/services/booking_service.py
from datetime import date, datetime, time
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

import structlog

from .. import models, schemas
from ..crud import SchedulingStore
from ..errors import ConflictError, InvalidStateError, NotFoundError, ValidationFailedError
from ..models import AppointmentSource, AppointmentStatus, utcnow
from .intervals import add_minutes
from .notifier import Notifier, deliver
from .package_service import check_and_complete_package

logger = structlog.get_logger(__name__)

_CANCELLED = frozenset(models.CANCELLED_APPOINTMENT_STATUSES)

# Allowed appointment status changes; terminal states map to nothing
STATUS_TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    AppointmentStatus.pending: frozenset({AppointmentStatus.confirmed}) | _CANCELLED,
    AppointmentStatus.confirmed: frozenset({AppointmentStatus.completed}) | _CANCELLED,
    AppointmentStatus.completed: frozenset(),
    AppointmentStatus.cancelled_by_patient: frozenset(),
    AppointmentStatus.cancelled_by_clinic: frozenset(),
}


class BookingService:
    """Creates and mutates appointments without ever double-booking a staff member."""

    def __init__(self, store: SchedulingStore, notifier: Notifier, matcher=None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.notifier = notifier
        self.matcher = matcher
        self.clock = clock

    # --- building blocks shared with package generation ---

    def resolve_refs(self, clinic_id: int, patient_id: int, staff_id: int, service_id: int
                     ) -> Tuple[models.Patient, models.StaffMember, models.Service]:
        patient = self.store.get_patient(clinic_id, patient_id)
        if not patient:
            raise NotFoundError("Patient not found", code="PATIENT_NOT_FOUND")
        staff = self.store.get_staff(clinic_id, staff_id)
        if not staff:
            raise NotFoundError("Staff member not found", code="STAFF_NOT_FOUND")
        service = self.store.get_service(clinic_id, service_id)
        if not service:
            raise NotFoundError("Service not found", code="SERVICE_NOT_FOUND")
        return patient, staff, service

    @staticmethod
    def end_time_for(start_time: time, service: models.Service) -> time:
        try:
            return add_minutes(start_time, service.duration_minutes)
        except ValueError:
            raise ValidationFailedError(
                f"A {service.duration_minutes} minute appointment starting at {start_time:%H:%M} would cross midnight"
            )

    def assert_slot_free(self, clinic_id: int, staff_id: int, on_date: date, start: time, end: time,
                         exclude_appointment_id: Optional[int] = None) -> None:
        """Must run inside ``store.booking_transaction`` covering (staff_id, on_date)."""
        clash = self.store.find_conflict(clinic_id, staff_id, on_date, start, end, exclude_appointment_id)
        if clash is not None:
            logger.info(
                "slot_conflict",
                clinic_id=clinic_id, staff_id=staff_id, date=str(on_date),
                start=start.isoformat(), end=end.isoformat(), clash=type(clash).__name__,
            )
            raise ConflictError(
                f"Time slot {start:%H:%M}-{end:%H:%M} on {on_date} is not available",
                code="SLOT_UNAVAILABLE",
            )

    # --- operations ---

    def create_appointment(
        self,
        clinic_id: int,
        created_by: Optional[int],
        data: schemas.AppointmentCreate,
        source: AppointmentSource = AppointmentSource.direct,
        after_insert: Optional[Callable[[models.Appointment], None]] = None,
    ) -> models.Appointment:
        """Book a single appointment.

        The conflict check and the insert share one serialised transaction per
        (staff, date). ``after_insert`` runs inside that transaction, so raising
        from it discards the booking.
        """
        patient, staff, service = self.resolve_refs(clinic_id, data.patient_id, data.staff_id, data.service_id)
        end_time = self.end_time_for(data.start_time, service)

        with self.store.booking_transaction(clinic_id, [(staff.id, data.appointment_date)]):
            self.assert_slot_free(clinic_id, staff.id, data.appointment_date, data.start_time, end_time)
            appointment = models.Appointment(
                clinic_id=clinic_id,
                patient_id=patient.id,
                staff_id=staff.id,
                service_id=service.id,
                appointment_date=data.appointment_date,
                start_time=data.start_time,
                end_time=end_time,
                status=AppointmentStatus.confirmed,
                appointment_type=data.appointment_type,
                source=source,
                notes=data.notes,
                patient_notes=data.patient_notes,
                internal_notes=data.internal_notes,
                created_by=created_by,
            )
            self.store.add(appointment)
            self.store.flush()
            if after_insert is not None:
                after_insert(appointment)

        self.store.refresh(appointment)
        logger.info(
            "appointment_created",
            clinic_id=clinic_id, appointment_id=appointment.id, staff_id=staff.id,
            date=str(appointment.appointment_date), source=source.value,
        )
        deliver(self.notifier.send_booking_confirmation, patient.phone, patient.full_name, appointment,
                clinic_id=clinic_id)
        return appointment

    def get_appointment(self, clinic_id: int, appointment_id: int) -> models.Appointment:
        appointment = self.store.get_appointment(clinic_id, appointment_id)
        if not appointment:
            raise NotFoundError("Appointment not found", code="APPOINTMENT_NOT_FOUND")
        return appointment

    def list_appointments(self, clinic_id: int, filters: schemas.AppointmentFilter):
        rows, total = self.store.list_appointments(clinic_id, filters)
        return schemas.page_of(schemas.AppointmentResponse, rows, total, filters)

    def cancel_appointment(self, clinic_id: int, appointment_id: int, reason: AppointmentStatus,
                           check_waitlist: bool = False) -> Tuple[models.Appointment, bool]:
        """Cancel and optionally hand the freed slot to the waitlist.

        Returns the appointment and whether a waitlist offer went out.
        """
        reason = AppointmentStatus(reason)
        if reason not in _CANCELLED:
            raise ValidationFailedError(f"{reason.value} is not a cancellation reason")

        appointment = self.get_appointment(clinic_id, appointment_id)
        if appointment.status in models.TERMINAL_APPOINTMENT_STATUSES:
            raise InvalidStateError(f"Cannot cancel appointment with status {appointment.status.value}")

        with self.store.transaction():
            moved = self.store.transition_appointment(
                clinic_id, appointment.id, models.ACTIVE_APPOINTMENT_STATUSES, reason, cancelled_at=self.clock()
            )
            if not moved:
                raise InvalidStateError("Appointment was already closed")
        self.store.refresh(appointment)
        logger.info("appointment_cancelled", clinic_id=clinic_id, appointment_id=appointment.id, reason=reason.value)

        offered = False
        if check_waitlist and reason == AppointmentStatus.cancelled_by_patient and self.matcher is not None:
            freed = schemas.FreedSlot(
                staff_id=appointment.staff_id,
                service_id=appointment.service_id,
                appointment_date=appointment.appointment_date,
                start_time=appointment.start_time,
                end_time=appointment.end_time,
            )
            offered = self.matcher.find_and_fill_slot(clinic_id, freed)
        return appointment, offered

    def update_appointment_status(self, clinic_id: int, appointment_id: int,
                                  new_status: AppointmentStatus) -> models.Appointment:
        new_status = AppointmentStatus(new_status)
        appointment = self.get_appointment(clinic_id, appointment_id)
        current = appointment.status
        if new_status not in STATUS_TRANSITIONS.get(current, frozenset()):
            raise ValidationFailedError(
                f"Cannot change status from {current.value} to {new_status.value}",
                code="INVALID_STATUS_TRANSITION",
            )

        values = {"cancelled_at": self.clock()} if new_status in _CANCELLED else {}
        with self.store.transaction():
            if not self.store.transition_appointment(clinic_id, appointment.id, [current], new_status, **values):
                raise ValidationFailedError(
                    "Appointment status changed concurrently", code="INVALID_STATUS_TRANSITION"
                )
            if new_status == AppointmentStatus.completed and appointment.package_id:
                check_and_complete_package(self.store, clinic_id, appointment.package_id, self.clock())
        self.store.refresh(appointment)
        logger.info(
            "appointment_status_changed",
            clinic_id=clinic_id, appointment_id=appointment.id, old=current.value, new=new_status.value,
        )
        return appointment

    def send_reminders(self, clinic_id: int, on_date: date, lead_hours: int = 24) -> int:
        """Remind every patient with a confirmed appointment on ``on_date``. Returns how many went out."""
        sent = 0
        appointments: List[models.Appointment] = self.store.list_appointments_on(
            clinic_id, on_date, [AppointmentStatus.confirmed]
        )
        for appointment in appointments:
            result = deliver(self.notifier.send_reminder, appointment.patient.phone, appointment, lead_hours,
                             clinic_id=clinic_id)
            if result.get("success"):
                sent += 1
        logger.info("reminders_sent", clinic_id=clinic_id, date=str(on_date), sent=sent, total=len(appointments))
        return sent
