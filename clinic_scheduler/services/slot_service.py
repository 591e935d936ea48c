# clinic_scheduler/services/slot_service.py
from datetime import date
from typing import List

import structlog

from .. import schemas
from ..crud import SchedulingStore
from ..errors import NotFoundError
from .intervals import day_of_week, generate_candidate_slots, intervals_overlap

logger = structlog.get_logger(__name__)


class AvailabilityService:
    """Free booking windows for one staff member on one day."""

    def __init__(self, store: SchedulingStore, step_minutes: int = 30):
        self.store = store
        self.step_minutes = step_minutes

    def get_availability(self, clinic_id: int, on_date: date, staff_id: int, service_id: int) -> List[schemas.Slot]:
        service = self.store.get_service(clinic_id, service_id)
        if not service:
            raise NotFoundError("Service not found", code="SERVICE_NOT_FOUND")

        hours = self.store.get_working_hours(clinic_id, staff_id, day_of_week(on_date))
        if not hours or not hours.is_working or not hours.open_time or not hours.close_time:
            logger.debug("no_working_hours", clinic_id=clinic_id, staff_id=staff_id, date=str(on_date))
            return []

        busy = [(a.start_time, a.end_time) for a in self.store.list_active_appointments(clinic_id, staff_id, on_date)]
        busy += [(b.start_time, b.end_time) for b in self.store.list_blocked_slots(clinic_id, staff_id, on_date)]

        free = [
            schemas.Slot(start=start, end=end)
            for start, end in generate_candidate_slots(
                hours.open_time, hours.close_time, service.duration_minutes, self.step_minutes
            )
            if not any(intervals_overlap(start, end, b_start, b_end) for b_start, b_end in busy)
        ]
        logger.debug(
            "availability_computed",
            clinic_id=clinic_id, staff_id=staff_id, date=str(on_date), free=len(free), busy=len(busy),
        )
        return free
