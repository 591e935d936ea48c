# clinic_scheduler/routers/schedule.py
from datetime import date
from typing import List

from fastapi import APIRouter, Depends, Query, status

from .. import schemas
from ..dependencies import get_services
from ..models import StaffRole
from ..security import CurrentUser, get_current_user, require_role
from ..services.container import Services

router = APIRouter(
    tags=["Schedule"],
    dependencies=[Depends(get_current_user)],
    responses={404: {"description": "Not found"}},
)

manage_schedule = require_role(StaffRole.owner, StaffRole.admin)


@router.get("/services", response_model=List[schemas.ServiceResponse])
def list_services(services: Services = Depends(get_services),
                  current_user: CurrentUser = Depends(get_current_user)):
    return services.schedule.list_services(current_user.clinic_id)


@router.post("/services", response_model=schemas.ServiceResponse, status_code=status.HTTP_201_CREATED)
def create_service(payload: schemas.ServiceCreate, services: Services = Depends(get_services),
                   current_user: CurrentUser = Depends(manage_schedule)):
    return services.schedule.create_service(current_user.clinic_id, payload)


@router.get("/staff", response_model=List[schemas.StaffResponse])
def list_staff(services: Services = Depends(get_services),
               current_user: CurrentUser = Depends(get_current_user)):
    return services.schedule.list_staff(current_user.clinic_id)


@router.get("/staff/{staff_id}/working-hours", response_model=List[schemas.WorkingHoursResponse])
def read_working_hours(staff_id: int, services: Services = Depends(get_services),
                       current_user: CurrentUser = Depends(get_current_user)):
    return services.schedule.get_working_hours(current_user.clinic_id, staff_id)


@router.put("/staff/{staff_id}/working-hours", response_model=List[schemas.WorkingHoursResponse])
def replace_working_hours(staff_id: int, days: List[schemas.WorkingHoursIn],
                          services: Services = Depends(get_services),
                          current_user: CurrentUser = Depends(manage_schedule)):
    """Replace the entire weekly schedule for a staff member."""
    return services.schedule.set_working_hours(current_user.clinic_id, staff_id, days)


@router.get("/blocked-slots", response_model=List[schemas.BlockedSlotResponse])
def list_blocked_slots(staff_id: int = Query(...), on_date: date = Query(..., alias="date"),
                       services: Services = Depends(get_services),
                       current_user: CurrentUser = Depends(get_current_user)):
    return services.schedule.list_blocked_slots(current_user.clinic_id, staff_id, on_date)


@router.post("/blocked-slots", response_model=schemas.BlockedSlotResponse, status_code=status.HTTP_201_CREATED)
def create_blocked_slot(payload: schemas.BlockedSlotCreate, services: Services = Depends(get_services),
                        current_user: CurrentUser = Depends(get_current_user)):
    return services.schedule.block_slot(current_user.clinic_id, current_user.user_id, payload)


@router.delete("/blocked-slots/{blocked_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_blocked_slot(blocked_id: int, services: Services = Depends(get_services),
                        current_user: CurrentUser = Depends(get_current_user)):
    services.schedule.unblock_slot(current_user.clinic_id, blocked_id)
