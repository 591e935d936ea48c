# clinic_scheduler/routers/patients.py
from typing import Annotated, List

from fastapi import APIRouter, Depends, Query, status

from .. import schemas
from ..dependencies import get_services
from ..security import CurrentUser, get_current_user
from ..services.container import Services

router = APIRouter(
    prefix="/patients",
    tags=["Patients"],
    responses={404: {"description": "Not found"}},
)


@router.get("/search", response_model=List[schemas.PatientResponse])
def search_patients(
    q: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=100),
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.patients.search_patients(current_user.clinic_id, q, limit)


@router.get("", response_model=schemas.Page[schemas.PatientResponse])
def list_patients(
    filters: Annotated[schemas.PatientFilter, Query()],
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.patients.list_patients(current_user.clinic_id, filters)


@router.post("", response_model=schemas.PatientResponse, status_code=status.HTTP_201_CREATED)
def create_patient(
    payload: schemas.PatientCreate,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.patients.create_patient(current_user.clinic_id, payload)


@router.get("/{patient_id}", response_model=schemas.PatientResponse)
def get_patient(
    patient_id: int,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.patients.get_patient(current_user.clinic_id, patient_id)


@router.get("/{patient_id}/history", response_model=schemas.PatientHistory)
def get_patient_history(
    patient_id: int,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.patients.get_history(current_user.clinic_id, patient_id)


@router.put("/{patient_id}", response_model=schemas.PatientResponse)
def update_patient(
    patient_id: int,
    payload: schemas.PatientUpdate,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    return services.patients.update_patient(current_user.clinic_id, patient_id, payload)
