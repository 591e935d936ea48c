# clinic_scheduler/routers/packages.py
from fastapi import APIRouter, Depends, Request, status

from .. import schemas
from ..config import get_settings
from ..dependencies import get_services
from ..limiter import limiter
from ..models import StaffRole
from ..security import CurrentUser, get_current_user, require_role
from ..services.container import Services

router = APIRouter(
    prefix="/packages",
    tags=["Packages"],
    responses={404: {"description": "Not found"}},
)

manage_packages = require_role(StaffRole.owner, StaffRole.admin, StaffRole.receptionist)


def _created(package, sessions) -> schemas.PackageCreated:
    return schemas.PackageCreated(
        package=schemas.PackageResponse.model_validate(package),
        appointments=[schemas.AppointmentResponse.model_validate(s) for s in sessions],
    )


@router.post("", response_model=schemas.PackageCreated, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_settings().booking_rate_limit)
def create_package(
    request: Request,
    payload: schemas.PackageCreate,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(manage_packages),
):
    package, sessions = services.packages.create_package(current_user.clinic_id, current_user.user_id, payload)
    return _created(package, sessions)


@router.get("/stats", response_model=schemas.PackageStats)
def get_package_stats(
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.packages.get_stats(current_user.clinic_id)


@router.get("/{package_id}", response_model=schemas.PackageDetail)
def get_package(
    package_id: int,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.packages.get_package(current_user.clinic_id, package_id)


@router.post("/{package_id}/pause", response_model=schemas.PackageResponse)
def pause_package(
    package_id: int,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(manage_packages),
):
    return services.packages.pause_package(current_user.clinic_id, package_id)


@router.post("/{package_id}/resume", response_model=schemas.PackageCreated)
def resume_package(
    package_id: int,
    payload: schemas.PackageResume,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(manage_packages),
):
    package, sessions = services.packages.resume_package(
        current_user.clinic_id, package_id, payload.new_start_date, current_user.user_id
    )
    return _created(package, sessions)


@router.post("/{package_id}/complete", response_model=schemas.PackageResponse)
def complete_package(
    package_id: int,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(manage_packages),
):
    return services.packages.complete_package(current_user.clinic_id, package_id)


@router.post("/{package_id}/cancel", response_model=schemas.PackageResponse)
def cancel_package(
    package_id: int,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(manage_packages),
):
    return services.packages.cancel_package(current_user.clinic_id, package_id)


@router.put("/{package_id}/sessions/{session_number}", response_model=schemas.AppointmentResponse)
def reschedule_session(
    package_id: int,
    session_number: int,
    payload: schemas.SessionReschedule,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(manage_packages),
):
    return services.packages.reschedule_session(
        current_user.clinic_id, package_id, session_number, payload.new_date, payload.new_time
    )
