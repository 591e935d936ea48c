# clinic_scheduler/services/schedule_service.py
from datetime import date
from typing import List, Optional

import structlog

from .. import models, schemas
from ..crud import SchedulingStore
from ..errors import NotFoundError, ValidationFailedError

logger = structlog.get_logger(__name__)


class ScheduleService:
    """Service catalogue, weekly working hours and blocked windows."""

    def __init__(self, store: SchedulingStore):
        self.store = store

    def _staff(self, clinic_id: int, staff_id: int) -> models.StaffMember:
        staff = self.store.get_staff(clinic_id, staff_id)
        if not staff:
            raise NotFoundError("Staff member not found", code="STAFF_NOT_FOUND")
        return staff

    def list_staff(self, clinic_id: int) -> List[models.StaffMember]:
        return self.store.list_staff(clinic_id)

    def list_services(self, clinic_id: int) -> List[models.Service]:
        return self.store.list_services(clinic_id)

    def create_service(self, clinic_id: int, data: schemas.ServiceCreate) -> models.Service:
        service = models.Service(clinic_id=clinic_id, **data.model_dump())
        with self.store.transaction():
            self.store.add(service)
        self.store.refresh(service)
        logger.info("service_created", clinic_id=clinic_id, service_id=service.id)
        return service

    def get_working_hours(self, clinic_id: int, staff_id: int) -> List[models.WorkingHours]:
        self._staff(clinic_id, staff_id)
        return self.store.list_working_hours(clinic_id, staff_id)

    def set_working_hours(self, clinic_id: int, staff_id: int,
                          days: List[schemas.WorkingHoursIn]) -> List[models.WorkingHours]:
        """Replace the whole weekly schedule. One entry per weekday at most."""
        self._staff(clinic_id, staff_id)
        weekdays = [d.day_of_week for d in days]
        if len(weekdays) != len(set(weekdays)):
            raise ValidationFailedError("Each day of week may appear only once")
        for day in days:
            if day.is_working and (day.open_time is None or day.close_time is None):
                raise ValidationFailedError(f"Working day {day.day_of_week} needs open and close times")

        with self.store.transaction():
            rows = self.store.replace_working_hours(clinic_id, staff_id, [d.model_dump() for d in days])
        for row in rows:
            self.store.refresh(row)
        logger.info("working_hours_replaced", clinic_id=clinic_id, staff_id=staff_id, days=len(rows))
        return sorted(rows, key=lambda r: r.day_of_week)

    def list_blocked_slots(self, clinic_id: int, staff_id: int, on_date: date) -> List[models.BlockedSlot]:
        self._staff(clinic_id, staff_id)
        return self.store.list_blocked_slots(clinic_id, staff_id, on_date)

    def block_slot(self, clinic_id: int, created_by: Optional[int], data: schemas.BlockedSlotCreate
                   ) -> models.BlockedSlot:
        """Block a window. Existing bookings inside it are left alone."""
        self._staff(clinic_id, data.staff_id)
        blocked = models.BlockedSlot(clinic_id=clinic_id, created_by=created_by, **data.model_dump())
        with self.store.booking_transaction(clinic_id, [(data.staff_id, data.block_date)]):
            self.store.add(blocked)
        self.store.refresh(blocked)
        logger.info("slot_blocked", clinic_id=clinic_id, staff_id=data.staff_id, date=str(data.block_date))
        return blocked

    def unblock_slot(self, clinic_id: int, blocked_id: int) -> None:
        blocked = self.store.get_blocked_slot(clinic_id, blocked_id)
        if not blocked:
            raise NotFoundError("Blocked slot not found", code="BLOCKED_SLOT_NOT_FOUND")
        with self.store.transaction():
            self.store.delete(blocked)
        logger.info("slot_unblocked", clinic_id=clinic_id, blocked_id=blocked_id)
