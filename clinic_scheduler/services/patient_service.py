# clinic_scheduler/services/patient_service.py
from typing import List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError

from .. import models, schemas
from ..crud import SchedulingStore
from ..errors import ConflictError, NotFoundError

logger = structlog.get_logger(__name__)


class PatientService:
    """Patient registry, unique by phone within a clinic."""

    def __init__(self, store: SchedulingStore):
        self.store = store

    def get_patient(self, clinic_id: int, patient_id: int) -> models.Patient:
        patient = self.store.get_patient(clinic_id, patient_id)
        if not patient:
            raise NotFoundError("Patient not found", code="PATIENT_NOT_FOUND")
        return patient

    def create_patient(self, clinic_id: int, data: schemas.PatientCreate) -> models.Patient:
        if self.store.get_patient_by_phone(clinic_id, data.phone):
            raise ConflictError("Patient with this phone already exists", code="PATIENT_EXISTS")
        patient = models.Patient(clinic_id=clinic_id, **data.model_dump())
        try:
            with self.store.transaction():
                self.store.add(patient)
        except IntegrityError:
            # Lost a race with a concurrent registration of the same phone
            raise ConflictError("Patient with this phone already exists", code="PATIENT_EXISTS")
        self.store.refresh(patient)
        logger.info("patient_created", clinic_id=clinic_id, patient_id=patient.id)
        return patient

    def update_patient(self, clinic_id: int, patient_id: int, data: schemas.PatientUpdate) -> models.Patient:
        patient = self.get_patient(clinic_id, patient_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("phone") and changes["phone"] != patient.phone:
            if self.store.get_patient_by_phone(clinic_id, changes["phone"], exclude_id=patient.id):
                raise ConflictError("Phone number already in use", code="PHONE_EXISTS")
        try:
            with self.store.transaction():
                for field, value in changes.items():
                    setattr(patient, field, value)
        except IntegrityError:
            raise ConflictError("Phone number already in use", code="PHONE_EXISTS")
        self.store.refresh(patient)
        logger.info("patient_updated", clinic_id=clinic_id, patient_id=patient.id, fields=sorted(changes))
        return patient

    def search_patients(self, clinic_id: int, query: str, limit: int = 20) -> List[models.Patient]:
        if not query or not query.strip():
            return []
        return self.store.search_patients(clinic_id, query, limit)

    def list_patients(self, clinic_id: int, filters: schemas.PatientFilter):
        rows, total = self.store.list_patients(clinic_id, filters)
        return schemas.page_of(schemas.PatientResponse, rows, total, filters)

    def get_history(self, clinic_id: int, patient_id: int) -> schemas.PatientHistory:
        patient = self.get_patient(clinic_id, patient_id)
        return schemas.PatientHistory(
            patient=schemas.PatientResponse.model_validate(patient),
            appointments=[schemas.AppointmentResponse.model_validate(a)
                          for a in self.store.list_patient_appointments(clinic_id, patient.id)],
            packages=[schemas.PackageResponse.model_validate(p)
                      for p in self.store.list_patient_packages(clinic_id, patient.id)],
        )

    def get_or_create_by_phone(self, clinic_id: int, phone: str, full_name: Optional[str] = None
                               ) -> Tuple[models.Patient, bool]:
        """Patient for an inbound contact; the bool is True when just registered."""
        phone = phone.replace("whatsapp:", "").strip()
        patient = self.store.get_patient_by_phone(clinic_id, phone)
        if patient:
            return patient, False
        patient = models.Patient(clinic_id=clinic_id, phone=phone, full_name=full_name or phone)
        try:
            with self.store.transaction():
                self.store.add(patient)
        except IntegrityError:
            return self.store.get_patient_by_phone(clinic_id, phone), False
        self.store.refresh(patient)
        logger.info("patient_registered_from_message", clinic_id=clinic_id, patient_id=patient.id)
        return patient, True
