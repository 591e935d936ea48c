# clinic_scheduler/crud.py - clinic-scoped scheduling store
import hashlib
import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime, time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type

from sqlalchemy import and_, func, or_, select, text, update
from sqlalchemy.orm import Session

from . import models, schemas
from .models import (
    ACTIVE_APPOINTMENT_STATUSES, Appointment, BlockedSlot, Package, Patient, Service, StaffMember,
    WaitlistEntry, WaitlistStatus, WorkingHours,
)

logger = logging.getLogger(__name__)

# (staff_id, appointment_date)
SlotKey = Tuple[int, date]


class KeyedLock:
    """Process-wide mutual exclusion keyed by arbitrary hashable values.

    Entries are reference counted and dropped once nobody holds or waits on
    them, so the registry only grows with concurrent demand.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Any, list] = {}

    @contextmanager
    def hold(self, keys: Iterable[Any]):
        acquired = []
        try:
            for key in keys:
                with self._guard:
                    entry = self._locks.setdefault(key, [threading.Lock(), 0])
                    entry[1] += 1
                entry[0].acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                with self._guard:
                    entry = self._locks[key]
                    entry[0].release()
                    entry[1] -= 1
                    if entry[1] == 0:
                        del self._locks[key]


_booking_locks = KeyedLock()


def advisory_lock_key(clinic_id: int, staff_id: int, on_date: date) -> int:
    """Stable signed 64-bit key for pg_advisory_xact_lock."""
    digest = hashlib.blake2b(f"{clinic_id}:{staff_id}:{on_date.isoformat()}".encode(), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class SchedulingStore:
    """Persistence collaborator for the scheduling core.

    Every query takes the caller's clinic_id and filters on it, so a row owned
    by another clinic is indistinguishable from a missing one.
    """

    def __init__(self, db: Session):
        self.db = db

    # ==================== TRANSACTIONS ====================

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def refresh(self, obj) -> None:
        self.db.refresh(obj)

    def add(self, obj) -> None:
        self.db.add(obj)

    def flush(self) -> None:
        self.db.flush()

    @contextmanager
    def transaction(self):
        try:
            yield self
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    @contextmanager
    def booking_transaction(self, clinic_id: int, slots: Iterable[SlotKey]):
        """Serialise conflict check and insert for the given (staff, date) keys.

        Holds an in-process lock per key. On PostgreSQL it also takes a
        transaction scoped advisory lock per key; on SQLite it opens the
        transaction with BEGIN IMMEDIATE so the write lock is held before the
        conflict check. Concurrent bookings against the same staff calendar
        day, from any thread or process, run one after another. Commits on exit.
        """
        keys = sorted(set(slots))
        with _booking_locks.hold([(clinic_id,) + key for key in keys]):
            try:
                dialect = self.db.get_bind().dialect.name
                if dialect == "postgresql":
                    for staff_id, on_date in keys:
                        self.db.execute(
                            text("SELECT pg_advisory_xact_lock(:key)"),
                            {"key": advisory_lock_key(clinic_id, staff_id, on_date)},
                        )
                elif dialect == "sqlite":
                    self._begin_immediate()
                yield self
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

    def _begin_immediate(self) -> None:
        # pysqlite issues a deferred BEGIN only before DML, so reads taken
        # earlier in this session ran outside any transaction.
        raw = self.db.connection().connection.dbapi_connection
        if not raw.in_transaction:
            self.db.execute(text("BEGIN IMMEDIATE"))

    # ==================== CLINIC / STAFF / SERVICES ====================

    def get_clinic_by_whatsapp_number(self, number: str) -> Optional[models.Clinic]:
        normalized = number.replace("whatsapp:", "")
        return self.db.query(models.Clinic).filter(
            models.Clinic.whatsapp_number.in_([normalized, f"whatsapp:{normalized}"])
        ).first()

    def get_staff(self, clinic_id: int, staff_id: int) -> Optional[StaffMember]:
        return self.db.query(StaffMember).filter(
            StaffMember.id == staff_id, StaffMember.clinic_id == clinic_id
        ).first()

    def list_staff(self, clinic_id: int) -> List[StaffMember]:
        return self.db.query(StaffMember).filter(
            StaffMember.clinic_id == clinic_id, StaffMember.is_active.is_(True)
        ).order_by(StaffMember.full_name).all()

    def get_service(self, clinic_id: int, service_id: int) -> Optional[Service]:
        return self.db.query(Service).filter(
            Service.id == service_id, Service.clinic_id == clinic_id
        ).first()

    def list_services(self, clinic_id: int) -> List[Service]:
        return self.db.query(Service).filter(
            Service.clinic_id == clinic_id, Service.is_active.is_(True)
        ).order_by(Service.id).all()

    def get_working_hours(self, clinic_id: int, staff_id: int, day_of_week: int) -> Optional[WorkingHours]:
        return self.db.query(WorkingHours).filter(
            WorkingHours.clinic_id == clinic_id,
            WorkingHours.staff_id == staff_id,
            WorkingHours.day_of_week == day_of_week,
        ).first()

    def list_working_hours(self, clinic_id: int, staff_id: int) -> List[WorkingHours]:
        return self.db.query(WorkingHours).filter(
            WorkingHours.clinic_id == clinic_id, WorkingHours.staff_id == staff_id
        ).order_by(WorkingHours.day_of_week).all()

    def replace_working_hours(self, clinic_id: int, staff_id: int, rows: Iterable[dict]) -> List[WorkingHours]:
        """Swap the staff member's weekly schedule for ``rows``. Does not commit."""
        for existing in self.db.query(WorkingHours).filter(
            WorkingHours.clinic_id == clinic_id, WorkingHours.staff_id == staff_id
        ):
            self.db.delete(existing)
        self.db.flush()
        created = [WorkingHours(clinic_id=clinic_id, staff_id=staff_id, **row) for row in rows]
        self.db.add_all(created)
        return created

    def list_blocked_slots(self, clinic_id: int, staff_id: int, on_date: date) -> List[BlockedSlot]:
        return self.db.query(BlockedSlot).filter(
            BlockedSlot.clinic_id == clinic_id,
            BlockedSlot.staff_id == staff_id,
            BlockedSlot.block_date == on_date,
        ).order_by(BlockedSlot.start_time).all()

    def get_blocked_slot(self, clinic_id: int, blocked_id: int) -> Optional[BlockedSlot]:
        return self.db.query(BlockedSlot).filter(
            BlockedSlot.id == blocked_id, BlockedSlot.clinic_id == clinic_id
        ).first()

    def delete(self, obj) -> None:
        self.db.delete(obj)

    # ==================== PATIENTS ====================

    def get_patient(self, clinic_id: int, patient_id: int) -> Optional[Patient]:
        return self.db.query(Patient).filter(
            Patient.id == patient_id, Patient.clinic_id == clinic_id
        ).first()

    def get_patient_by_phone(self, clinic_id: int, phone: str, exclude_id: Optional[int] = None) -> Optional[Patient]:
        query = self.db.query(Patient).filter(Patient.clinic_id == clinic_id, Patient.phone == phone)
        if exclude_id is not None:
            query = query.filter(Patient.id != exclude_id)
        return query.first()

    def _patient_search_clause(self, term: str, include_email: bool = True):
        pattern = f"%{term.strip().lower()}%"
        clauses = [func.lower(Patient.full_name).like(pattern), Patient.phone.like(f"%{term.strip()}%")]
        if include_email:
            clauses.append(func.lower(Patient.email).like(pattern))
        return or_(*clauses)

    def search_patients(self, clinic_id: int, term: str, limit: int = 20) -> List[Patient]:
        return self.db.query(Patient).filter(
            Patient.clinic_id == clinic_id, self._patient_search_clause(term)
        ).order_by(Patient.created_at.desc(), Patient.id.desc()).limit(limit).all()

    def list_patients(self, clinic_id: int, filters: schemas.PatientFilter) -> Tuple[List[Patient], int]:
        query = self.db.query(Patient).filter(Patient.clinic_id == clinic_id)
        if filters.search:
            query = query.filter(self._patient_search_clause(filters.search, include_email=False))
        total = query.count()
        rows = query.order_by(Patient.created_at.desc(), Patient.id.desc()).offset(filters.offset).limit(filters.limit).all()
        return rows, total

    def list_patient_appointments(self, clinic_id: int, patient_id: int) -> List[Appointment]:
        return self.db.query(Appointment).filter(
            Appointment.clinic_id == clinic_id, Appointment.patient_id == patient_id
        ).order_by(Appointment.appointment_date.desc(), Appointment.start_time.desc()).all()

    def list_patient_packages(self, clinic_id: int, patient_id: int) -> List[Package]:
        return self.db.query(Package).filter(
            Package.clinic_id == clinic_id, Package.patient_id == patient_id
        ).order_by(Package.created_at.desc(), Package.id.desc()).all()

    # ==================== APPOINTMENTS ====================

    def get_appointment(self, clinic_id: int, appointment_id: int) -> Optional[Appointment]:
        return self.db.query(Appointment).filter(
            Appointment.id == appointment_id, Appointment.clinic_id == clinic_id
        ).first()

    def list_active_appointments(self, clinic_id: int, staff_id: int, on_date: date) -> List[Appointment]:
        return self.db.query(Appointment).filter(
            Appointment.clinic_id == clinic_id,
            Appointment.staff_id == staff_id,
            Appointment.appointment_date == on_date,
            Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
        ).order_by(Appointment.start_time).all()

    def find_conflict(
        self,
        clinic_id: int,
        staff_id: int,
        on_date: date,
        start: time,
        end: time,
        exclude_appointment_id: Optional[int] = None,
    ) -> Optional[object]:
        """First pending/confirmed appointment or blocked slot overlapping [start, end)."""
        query = self.db.query(Appointment).filter(
            Appointment.clinic_id == clinic_id,
            Appointment.staff_id == staff_id,
            Appointment.appointment_date == on_date,
            Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
            Appointment.start_time < end,
            Appointment.end_time > start,
        )
        if exclude_appointment_id is not None:
            query = query.filter(Appointment.id != exclude_appointment_id)
        clash = query.first()
        if clash is not None:
            return clash
        return self.db.query(BlockedSlot).filter(
            BlockedSlot.clinic_id == clinic_id,
            BlockedSlot.staff_id == staff_id,
            BlockedSlot.block_date == on_date,
            BlockedSlot.start_time < end,
            BlockedSlot.end_time > start,
        ).first()

    def transition_appointment(
        self, clinic_id: int, appointment_id: int, from_statuses: Sequence, to_status, **values
    ) -> bool:
        """Conditional status change; False when the row moved on in the meantime. Does not commit."""
        result = self.db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment_id,
                Appointment.clinic_id == clinic_id,
                Appointment.status.in_(from_statuses),
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def list_appointments(self, clinic_id: int, filters: schemas.AppointmentFilter) -> Tuple[List[Appointment], int]:
        query = self.db.query(Appointment).filter(Appointment.clinic_id == clinic_id)
        if filters.date_from:
            query = query.filter(Appointment.appointment_date >= filters.date_from)
        if filters.date_to:
            query = query.filter(Appointment.appointment_date <= filters.date_to)
        if filters.staff_id is not None:
            query = query.filter(Appointment.staff_id == filters.staff_id)
        if filters.patient_id is not None:
            query = query.filter(Appointment.patient_id == filters.patient_id)
        if filters.status is not None:
            query = query.filter(Appointment.status == filters.status)
        total = query.count()
        rows = query.order_by(
            Appointment.appointment_date.desc(), Appointment.start_time.asc(), Appointment.id.asc()
        ).offset(filters.offset).limit(filters.limit).all()
        return rows, total

    def list_appointments_on(self, clinic_id: int, on_date: date, statuses: Sequence) -> List[Appointment]:
        return self.db.query(Appointment).filter(
            Appointment.clinic_id == clinic_id,
            Appointment.appointment_date == on_date,
            Appointment.status.in_(statuses),
        ).order_by(Appointment.start_time, Appointment.id).all()

    def count_appointments_between(self, clinic_id: int, start: date, end: date, statuses: Sequence) -> int:
        return self.db.query(func.count(Appointment.id)).filter(
            Appointment.clinic_id == clinic_id,
            Appointment.appointment_date >= start,
            Appointment.appointment_date <= end,
            Appointment.status.in_(statuses),
        ).scalar() or 0

    # ==================== PACKAGES ====================

    def get_package(self, clinic_id: int, package_id: int) -> Optional[Package]:
        return self.db.query(Package).filter(
            Package.id == package_id, Package.clinic_id == clinic_id
        ).first()

    def list_package_appointments(self, clinic_id: int, package_id: int) -> List[Appointment]:
        return self.db.query(Appointment).filter(
            Appointment.clinic_id == clinic_id, Appointment.package_id == package_id
        ).order_by(Appointment.package_session_number, Appointment.id).all()

    def get_package_session(self, clinic_id: int, package_id: int, session_number: int) -> Optional[Appointment]:
        """Latest appointment carrying the session number (resumes re-issue numbers)."""
        return self.db.query(Appointment).filter(
            Appointment.clinic_id == clinic_id,
            Appointment.package_id == package_id,
            Appointment.package_session_number == session_number,
        ).order_by(Appointment.id.desc()).first()

    def count_package_appointments(self, clinic_id: int, package_id: int, status: models.AppointmentStatus) -> int:
        return self.db.query(func.count(Appointment.id)).filter(
            Appointment.clinic_id == clinic_id,
            Appointment.package_id == package_id,
            Appointment.status == status,
        ).scalar() or 0

    def transition_package_appointments(
        self, clinic_id: int, package_id: int, from_statuses: Sequence, to_status, **values
    ) -> int:
        """Bulk status change for a package's appointments. Does not commit."""
        result = self.db.execute(
            update(Appointment)
            .where(
                Appointment.clinic_id == clinic_id,
                Appointment.package_id == package_id,
                Appointment.status.in_(from_statuses),
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def package_revenue(self, clinic_id: int):
        return self.db.query(func.coalesce(func.sum(Package.total_price), 0)).filter(
            Package.clinic_id == clinic_id
        ).scalar()

    # ==================== WAITLIST ====================

    def get_waitlist_entry(self, clinic_id: int, entry_id: int, status: Optional[WaitlistStatus] = None) -> Optional[WaitlistEntry]:
        query = self.db.query(WaitlistEntry).filter(
            WaitlistEntry.id == entry_id, WaitlistEntry.clinic_id == clinic_id
        )
        if status is not None:
            query = query.filter(WaitlistEntry.status == status)
        return query.first()

    def find_offer_by_message_id(self, clinic_id: int, message_id: str) -> Optional[WaitlistEntry]:
        return self.db.query(WaitlistEntry).filter(
            WaitlistEntry.clinic_id == clinic_id,
            WaitlistEntry.offer_message_id == message_id,
            WaitlistEntry.status == WaitlistStatus.offered,
        ).first()

    def latest_offer_for_patient(self, clinic_id: int, patient_id: int) -> Optional[WaitlistEntry]:
        return self.db.query(WaitlistEntry).filter(
            WaitlistEntry.clinic_id == clinic_id,
            WaitlistEntry.patient_id == patient_id,
            WaitlistEntry.status == WaitlistStatus.offered,
        ).order_by(WaitlistEntry.offered_at.desc(), WaitlistEntry.id.desc()).first()

    def find_waitlist_candidates(
        self,
        clinic_id: int,
        service_id: int,
        staff_id: int,
        on_date: date,
        start: time,
        end: time,
    ) -> List[WaitlistEntry]:
        """Active entries compatible with a freed slot, most urgent then oldest first.

        The weekday preference lives in a JSON column and is checked by the caller.
        """
        return self.db.query(WaitlistEntry).filter(
            WaitlistEntry.clinic_id == clinic_id,
            WaitlistEntry.status == WaitlistStatus.active,
            WaitlistEntry.service_id == service_id,
            or_(WaitlistEntry.preferred_staff_id.is_(None), WaitlistEntry.preferred_staff_id == staff_id),
            or_(WaitlistEntry.preferred_date_start.is_(None), WaitlistEntry.preferred_date_start <= on_date),
            or_(WaitlistEntry.preferred_date_end.is_(None), WaitlistEntry.preferred_date_end >= on_date),
            or_(WaitlistEntry.preferred_time_start.is_(None), WaitlistEntry.preferred_time_start <= start),
            or_(WaitlistEntry.preferred_time_end.is_(None), WaitlistEntry.preferred_time_end >= end),
        ).order_by(
            WaitlistEntry.priority.desc(), WaitlistEntry.created_at.asc(), WaitlistEntry.id.asc()
        ).all()

    def transition_waitlist(
        self,
        clinic_id: int,
        entry_id: int,
        from_statuses: Sequence[WaitlistStatus],
        to_status: WaitlistStatus,
        **values,
    ) -> bool:
        """Compare-and-swap on status. True iff this call performed the transition.

        Does not commit; the caller owns the transaction.
        """
        result = self.db.execute(
            update(WaitlistEntry)
            .where(
                WaitlistEntry.id == entry_id,
                WaitlistEntry.clinic_id == clinic_id,
                WaitlistEntry.status.in_(from_statuses),
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def expire_offers(self, now: datetime, clinic_id: Optional[int] = None) -> int:
        """Flip every lapsed offer to expired. Does not commit."""
        conditions = [
            WaitlistEntry.status == WaitlistStatus.offered,
            WaitlistEntry.offer_expires_at.is_not(None),
            WaitlistEntry.offer_expires_at <= now,
        ]
        if clinic_id is not None:
            conditions.append(WaitlistEntry.clinic_id == clinic_id)
        result = self.db.execute(
            update(WaitlistEntry)
            .where(and_(*conditions))
            .values(status=WaitlistStatus.expired, expired_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def list_waitlist(self, clinic_id: int, filters: schemas.WaitlistFilter) -> Tuple[List[WaitlistEntry], int]:
        query = self.db.query(WaitlistEntry).filter(WaitlistEntry.clinic_id == clinic_id)
        if filters.status is not None:
            query = query.filter(WaitlistEntry.status == filters.status)
        if filters.service_id is not None:
            query = query.filter(WaitlistEntry.service_id == filters.service_id)
        if filters.patient_id is not None:
            query = query.filter(WaitlistEntry.patient_id == filters.patient_id)
        total = query.count()
        rows = query.order_by(
            WaitlistEntry.priority.desc(), WaitlistEntry.created_at.asc(), WaitlistEntry.id.asc()
        ).offset(filters.offset).limit(filters.limit).all()
        return rows, total

    # ==================== AGGREGATES ====================

    def count_by_status(self, model: Type, clinic_id: int) -> Dict[str, int]:
        rows = self.db.execute(
            select(model.status, func.count(model.id))
            .where(model.clinic_id == clinic_id)
            .group_by(model.status)
        ).all()
        return {getattr(status, "value", status): count for status, count in rows}

    def count_patients_since(self, clinic_id: int, since: datetime) -> int:
        return self.db.query(func.count(Patient.id)).filter(
            Patient.clinic_id == clinic_id, Patient.created_at >= since
        ).scalar() or 0

    # ==================== WHATSAPP ====================

    def log_message(self, **fields) -> models.WhatsAppLog:
        entry = models.WhatsAppLog(**fields)
        self.db.add(entry)
        return entry
