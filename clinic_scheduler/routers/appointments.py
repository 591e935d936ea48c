# clinic_scheduler/routers/appointments.py
from datetime import date
from typing import Annotated, List

from fastapi import APIRouter, Depends, Query, Request, status

from .. import schemas
from ..config import get_settings
from ..dependencies import get_services
from ..limiter import limiter
from ..security import CurrentUser, get_current_user
from ..services.container import Services

router = APIRouter(
    prefix="/appointments",
    tags=["Appointments"],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=schemas.Page[schemas.AppointmentResponse])
def list_appointments(
    filters: Annotated[schemas.AppointmentFilter, Query()],
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.booking.list_appointments(current_user.clinic_id, filters)


@router.get("/availability", response_model=List[schemas.Slot])
def get_availability(
    on_date: date = Query(..., alias="date"),
    staff_id: int = Query(...),
    service_id: int = Query(...),
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Free windows for a staff member and service on one day."""
    return services.availability.get_availability(current_user.clinic_id, on_date, staff_id, service_id)


@router.post("", response_model=schemas.AppointmentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_settings().booking_rate_limit)
def create_appointment(
    request: Request,
    appointment: schemas.AppointmentCreate,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.booking.create_appointment(current_user.clinic_id, current_user.user_id, appointment)


@router.post("/reminders", response_model=schemas.ReminderResult)
def send_reminders(
    payload: schemas.ReminderRequest,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    sent = services.booking.send_reminders(current_user.clinic_id, payload.on_date, payload.lead_hours)
    return schemas.ReminderResult(sent=sent)


@router.get("/{appointment_id}", response_model=schemas.AppointmentResponse)
def get_appointment(
    appointment_id: int,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.booking.get_appointment(current_user.clinic_id, appointment_id)


@router.post("/{appointment_id}/cancel", response_model=schemas.AppointmentCancelled)
def cancel_appointment(
    appointment_id: int,
    payload: schemas.AppointmentCancel,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    appointment, offered = services.booking.cancel_appointment(
        current_user.clinic_id, appointment_id, payload.reason, payload.check_waitlist
    )
    return schemas.AppointmentCancelled(
        appointment=schemas.AppointmentResponse.model_validate(appointment),
        waitlist_offered=offered,
    )


@router.patch("/{appointment_id}/status", response_model=schemas.AppointmentResponse)
def update_appointment_status(
    appointment_id: int,
    payload: schemas.AppointmentStatusUpdate,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.booking.update_appointment_status(current_user.clinic_id, appointment_id, payload.status)
