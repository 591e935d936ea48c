# clinic_scheduler/services/package_service.py
"""
Recurring session packages.

A package books ``total_sessions`` appointments for one patient, service and
staff member, ``interval_days`` apart at the same time of day. Every session
is conflict checked; one clash rejects the whole series.
"""
from datetime import date, datetime, time, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, List, Optional, Tuple

import structlog

from .. import models, schemas
from ..crud import SchedulingStore
from ..errors import InvalidStateError, NotFoundError
from ..models import AppointmentStatus, AppointmentType, PackageStatus, utcnow

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
TERMINAL_PACKAGE_STATUSES = (PackageStatus.completed, PackageStatus.cancelled)


def session_dates(start_date: date, interval_days: int, count: int) -> List[date]:
    return [start_date + timedelta(days=i * interval_days) for i in range(count)]


def expected_end_date(start_date: date, interval_days: int, total_sessions: int) -> date:
    return start_date + timedelta(days=(total_sessions - 1) * interval_days)


def price_per_session(total_price: Optional[Decimal], total_sessions: int) -> Optional[Decimal]:
    if total_price is None:
        return None
    return (Decimal(total_price) / total_sessions).quantize(CENT, rounding=ROUND_HALF_UP)


def check_and_complete_package(store: SchedulingStore, clinic_id: int, package_id: int, now: datetime) -> bool:
    """Mark the package completed once every session is. Does not commit."""
    package = store.get_package(clinic_id, package_id)
    if not package or package.status in TERMINAL_PACKAGE_STATUSES:
        return False
    done = store.count_package_appointments(clinic_id, package_id, AppointmentStatus.completed)
    if done < package.total_sessions:
        return False
    package.status = PackageStatus.completed
    package.completed_at = now
    logger.info("package_completed", clinic_id=clinic_id, package_id=package_id, sessions=done)
    return True


class PackageService:

    def __init__(self, store: SchedulingStore, booking, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.booking = booking
        self.clock = clock

    def _get(self, clinic_id: int, package_id: int) -> models.Package:
        package = self.store.get_package(clinic_id, package_id)
        if not package:
            raise NotFoundError("Package not found", code="PACKAGE_NOT_FOUND")
        return package

    def _book_sessions(self, package: models.Package, service: models.Service, dates: List[date],
                       first_number: int, start_time: time, created_by: Optional[int]) -> List[models.Appointment]:
        """Insert one appointment per date. Caller holds the booking transaction for all dates."""
        end_time = self.booking.end_time_for(start_time, service)
        for on_date in dates:
            self.booking.assert_slot_free(package.clinic_id, package.staff_id, on_date, start_time, end_time)

        sessions = []
        for number, on_date in enumerate(dates, start=first_number):
            appointment = models.Appointment(
                clinic_id=package.clinic_id,
                patient_id=package.patient_id,
                staff_id=package.staff_id,
                service_id=package.service_id,
                appointment_date=on_date,
                start_time=start_time,
                end_time=end_time,
                status=AppointmentStatus.confirmed,
                appointment_type=AppointmentType.package,
                package_id=package.id,
                package_session_number=number,
                created_by=created_by,
            )
            self.store.add(appointment)
            sessions.append(appointment)
        self.store.flush()
        return sessions

    def create_package(self, clinic_id: int, created_by: Optional[int], data: schemas.PackageCreate
                       ) -> Tuple[models.Package, List[models.Appointment]]:
        patient, staff, service = self.booking.resolve_refs(clinic_id, data.patient_id, data.staff_id, data.service_id)
        # Fail fast on a bad time before taking any lock
        self.booking.end_time_for(data.start_time, service)
        dates = session_dates(data.start_date, data.interval_days, data.total_sessions)

        with self.store.booking_transaction(clinic_id, [(staff.id, d) for d in dates]):
            package = models.Package(
                clinic_id=clinic_id,
                patient_id=patient.id,
                service_id=service.id,
                staff_id=staff.id,
                name=data.name,
                total_sessions=data.total_sessions,
                interval_days=data.interval_days,
                total_price=data.total_price,
                price_per_session=price_per_session(data.total_price, data.total_sessions),
                start_date=data.start_date,
                start_time=data.start_time,
                expected_end_date=expected_end_date(data.start_date, data.interval_days, data.total_sessions),
                status=PackageStatus.active,
                notes=data.notes,
                created_by=created_by,
            )
            self.store.add(package)
            self.store.flush()
            sessions = self._book_sessions(package, service, dates, 1, data.start_time, created_by)

        self.store.refresh(package)
        for session in sessions:
            self.store.refresh(session)
        logger.info("package_created", clinic_id=clinic_id, package_id=package.id, sessions=len(sessions))
        return package, sessions

    def get_package(self, clinic_id: int, package_id: int) -> schemas.PackageDetail:
        package = self._get(clinic_id, package_id)
        sessions = self.store.list_package_appointments(clinic_id, package_id)
        completed = sum(1 for s in sessions if s.status == AppointmentStatus.completed)
        detail = schemas.PackageDetail.model_validate(package)
        detail.appointments = [schemas.AppointmentResponse.model_validate(s) for s in sessions]
        detail.completed_sessions = completed
        detail.remaining_sessions = max(package.total_sessions - completed, 0)
        return detail

    def pause_package(self, clinic_id: int, package_id: int) -> models.Package:
        package = self._get(clinic_id, package_id)
        if package.status != PackageStatus.active:
            raise InvalidStateError(f"Cannot pause a package that is {package.status.value}")
        now = self.clock()
        with self.store.transaction():
            cancelled = self.store.transition_package_appointments(
                clinic_id, package.id, models.ACTIVE_APPOINTMENT_STATUSES, AppointmentStatus.cancelled_by_clinic,
                cancelled_at=now,
            )
            package.status = PackageStatus.paused
            package.paused_at = now
        self.store.refresh(package)
        logger.info("package_paused", clinic_id=clinic_id, package_id=package.id, cancelled_sessions=cancelled)
        return package

    def resume_package(self, clinic_id: int, package_id: int, new_start_date: date,
                       created_by: Optional[int] = None) -> Tuple[models.Package, List[models.Appointment]]:
        """Re-book the sessions not yet completed, spaced from ``new_start_date``."""
        package = self._get(clinic_id, package_id)
        if package.status != PackageStatus.paused:
            raise InvalidStateError(f"Cannot resume a package that is {package.status.value}")
        service = self.store.get_service(clinic_id, package.service_id)
        completed = self.store.count_package_appointments(clinic_id, package.id, AppointmentStatus.completed)
        remaining = package.total_sessions - completed
        dates = session_dates(new_start_date, package.interval_days, max(remaining, 0))

        with self.store.booking_transaction(clinic_id, [(package.staff_id, d) for d in dates]):
            sessions = []
            if dates:
                sessions = self._book_sessions(package, service, dates, completed + 1, package.start_time, created_by)
                package.expected_end_date = dates[-1]
                package.status = PackageStatus.active
            else:
                package.status = PackageStatus.completed
                package.completed_at = self.clock()
            package.paused_at = None

        self.store.refresh(package)
        for session in sessions:
            self.store.refresh(session)
        logger.info("package_resumed", clinic_id=clinic_id, package_id=package.id, sessions=len(sessions))
        return package, sessions

    def _close(self, clinic_id: int, package_id: int, status: PackageStatus) -> models.Package:
        package = self._get(clinic_id, package_id)
        if package.status in TERMINAL_PACKAGE_STATUSES:
            raise InvalidStateError(f"Package is already {package.status.value}")
        now = self.clock()
        with self.store.transaction():
            dropped = self.store.transition_package_appointments(
                clinic_id, package.id, models.ACTIVE_APPOINTMENT_STATUSES, AppointmentStatus.cancelled_by_clinic,
                cancelled_at=now,
            )
            package.status = status
            if status == PackageStatus.completed:
                package.completed_at = now
        self.store.refresh(package)
        logger.info("package_closed", clinic_id=clinic_id, package_id=package.id,
                    status=status.value, cancelled_sessions=dropped)
        return package

    def complete_package(self, clinic_id: int, package_id: int) -> models.Package:
        return self._close(clinic_id, package_id, PackageStatus.completed)

    def cancel_package(self, clinic_id: int, package_id: int) -> models.Package:
        return self._close(clinic_id, package_id, PackageStatus.cancelled)

    def reschedule_session(self, clinic_id: int, package_id: int, session_number: int,
                           new_date: date, new_time: time) -> models.Appointment:
        package = self._get(clinic_id, package_id)
        session = self.store.get_package_session(clinic_id, package.id, session_number)
        if not session:
            raise NotFoundError("Session not found", code="SESSION_NOT_FOUND")
        if session.status == AppointmentStatus.completed:
            raise InvalidStateError("Cannot reschedule completed session")
        if session.status in models.CANCELLED_APPOINTMENT_STATUSES:
            raise InvalidStateError("Cannot reschedule cancelled session")

        service = self.store.get_service(clinic_id, session.service_id)
        end_time = self.booking.end_time_for(new_time, service)
        with self.store.booking_transaction(clinic_id, [(session.staff_id, new_date)]):
            self.booking.assert_slot_free(
                clinic_id, session.staff_id, new_date, new_time, end_time, exclude_appointment_id=session.id
            )
            session.appointment_date = new_date
            session.start_time = new_time
            session.end_time = end_time
        self.store.refresh(session)
        logger.info("package_session_rescheduled", clinic_id=clinic_id, package_id=package.id,
                    session=session_number, date=str(new_date))
        return session

    def get_stats(self, clinic_id: int) -> schemas.PackageStats:
        counts = self.store.count_by_status(models.Package, clinic_id)
        return schemas.PackageStats(
            total=sum(counts.values()),
            active=counts.get(PackageStatus.active.value, 0),
            paused=counts.get(PackageStatus.paused.value, 0),
            completed=counts.get(PackageStatus.completed.value, 0),
            cancelled=counts.get(PackageStatus.cancelled.value, 0),
            total_revenue=Decimal(self.store.package_revenue(clinic_id) or 0),
        )
