# clinic_scheduler/routers/waitlist.py
from typing import Annotated, Optional

from fastapi import APIRouter, Body, Depends, Query, status

from .. import schemas
from ..dependencies import get_services
from ..models import StaffRole
from ..security import CurrentUser, get_current_user, require_role
from ..services.container import Services

router = APIRouter(
    prefix="/waitlist",
    tags=["Waitlist"],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=schemas.Page[schemas.WaitlistResponse])
def list_waitlist(
    filters: Annotated[schemas.WaitlistFilter, Query()],
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.waitlist.list_entries(current_user.clinic_id, filters)


@router.get("/stats", response_model=schemas.WaitlistStats)
def get_waitlist_stats(
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.waitlist.get_stats(current_user.clinic_id)


@router.post("", response_model=schemas.WaitlistResponse, status_code=status.HTTP_201_CREATED)
def add_to_waitlist(
    payload: schemas.WaitlistCreate,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.waitlist.add_to_waitlist(current_user.clinic_id, current_user.user_id, payload)


@router.post("/expire-offers", response_model=schemas.ExpireResult,
             dependencies=[Depends(require_role(StaffRole.owner, StaffRole.admin))])
def expire_stale_offers(
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Sweep offers whose acceptance window has passed."""
    return schemas.ExpireResult(expired=services.waitlist.expire_stale_offers(current_user.clinic_id))


@router.get("/{waitlist_id}", response_model=schemas.WaitlistResponse)
def get_waitlist_entry(
    waitlist_id: int,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.waitlist.get_entry(current_user.clinic_id, waitlist_id)


@router.post("/{waitlist_id}/accept", response_model=schemas.AppointmentResponse,
             status_code=status.HTTP_201_CREATED)
def accept_offer(
    waitlist_id: int,
    payload: Optional[schemas.WaitlistAccept] = Body(None),
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.waitlist.accept_offer(current_user.clinic_id, waitlist_id, current_user.user_id, payload)


@router.post("/{waitlist_id}/cancel", response_model=schemas.WaitlistResponse)
def cancel_waitlist_entry(
    waitlist_id: int,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.waitlist.cancel_entry(current_user.clinic_id, waitlist_id)
