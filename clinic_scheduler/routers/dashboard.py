# clinic_scheduler/routers/dashboard.py
from datetime import date, datetime, time, timedelta, timezone

from fastapi import APIRouter, Depends

from .. import models, schemas
from ..dependencies import get_services
from ..models import ACTIVE_APPOINTMENT_STATUSES, AppointmentStatus, WaitlistStatus
from ..security import CurrentUser, get_current_user
from ..services.container import Services
from ..services.intervals import day_of_week

router = APIRouter(prefix="/dashboard", tags=["Dashboard"])

_SCHEDULED = ACTIVE_APPOINTMENT_STATUSES + (AppointmentStatus.completed,)


@router.get("/stats", response_model=schemas.DashboardStatsResponse)
def get_dashboard_stats(services: Services = Depends(get_services),
                        current_user: CurrentUser = Depends(get_current_user)):
    store = services.store
    clinic_id = current_user.clinic_id
    today = date.today()
    # Weeks run Sunday to Saturday
    week_start = today - timedelta(days=day_of_week(today))
    month_start = datetime.combine(today.replace(day=1), time.min, tzinfo=timezone.utc)
    services.waitlist.expire_stale_offers(clinic_id)
    waitlist = store.count_by_status(models.WaitlistEntry, clinic_id)

    return schemas.DashboardStatsResponse(
        appointments_today=store.count_appointments_between(clinic_id, today, today, _SCHEDULED),
        appointments_this_week=store.count_appointments_between(
            clinic_id, week_start, week_start + timedelta(days=6), _SCHEDULED
        ),
        appointments_by_status=store.count_by_status(models.Appointment, clinic_id),
        waitlist_active=waitlist.get(WaitlistStatus.active.value, 0),
        waitlist_offered=waitlist.get(WaitlistStatus.offered.value, 0),
        new_patients_this_month=store.count_patients_since(clinic_id, month_start),
    )
