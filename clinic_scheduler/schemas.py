# clinic_scheduler/schemas.py
from datetime import datetime, date, time
from decimal import Decimal
from math import ceil
from typing import Generic, List, Optional, Dict, Literal, TypeVar
from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator, model_validator

from .config import get_settings
from .models import (
    AppointmentStatus, AppointmentType, AppointmentSource, PackageStatus, WaitlistStatus, StaffRole
)

T = TypeVar("T")

CancellationReason = Literal["cancelled_by_patient", "cancelled_by_clinic"]


# --- Base Schemas ---
class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --- Pagination & query filters ---
class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int = Field(serialization_alias="totalPages")

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, total_pages=ceil(total / limit) if limit else 0)


class Page(BaseModel, Generic[T]):
    data: List[T]
    pagination: Pagination


class PageQuery(BaseModel):
    page: int = Field(1, ge=1)
    limit: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def apply_page_size(self):
        settings = get_settings()
        if self.limit is None:
            self.limit = settings.default_page_size
        elif self.limit > settings.max_page_size:
            raise ValueError(f"limit must not exceed {settings.max_page_size}")
        return self

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def page_of(schema, rows, total: int, query: PageQuery) -> Page:
    return Page[schema](
        data=[schema.model_validate(row) for row in rows],
        pagination=Pagination.build(query.page, query.limit, total),
    )


class AppointmentFilter(PageQuery):
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    staff_id: Optional[int] = None
    patient_id: Optional[int] = None
    status: Optional[AppointmentStatus] = None

    @model_validator(mode="after")
    def check_range(self):
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self


class WaitlistFilter(PageQuery):
    status: Optional[WaitlistStatus] = None
    service_id: Optional[int] = None
    patient_id: Optional[int] = None


class PatientFilter(PageQuery):
    search: Optional[str] = None


# --- Availability ---
class Slot(BaseModel):
    start: time
    end: time


class FreedSlot(BaseModel):
    """A window released by a cancellation, offered to the waitlist."""
    staff_id: int
    service_id: int
    appointment_date: date
    start_time: time
    end_time: time


# --- Patient Schemas ---
class PatientBase(BaseSchema):
    full_name: str = Field(..., min_length=1, max_length=255)
    phone: str = Field(..., min_length=5, max_length=32)
    email: Optional[EmailStr] = None
    date_of_birth: Optional[date] = None
    gender: Optional[Literal["male", "female"]] = None
    address: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def normalize_phone(cls, v: str) -> str:
        return v.strip().replace(" ", "")


class PatientCreate(PatientBase):
    pass


class PatientUpdate(BaseSchema):
    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    phone: Optional[str] = Field(None, min_length=5, max_length=32)
    email: Optional[EmailStr] = None
    date_of_birth: Optional[date] = None
    gender: Optional[Literal["male", "female"]] = None
    address: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def normalize_phone(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().replace(" ", "") if v else v


class PatientResponse(PatientBase):
    id: int
    clinic_id: int
    email: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# --- Service catalogue & schedule ---
class ServiceCreate(BaseSchema):
    name_ar: str = Field(..., min_length=1, max_length=255)
    name_en: Optional[str] = Field(None, max_length=255)
    duration_minutes: int = Field(..., gt=0, le=24 * 60)
    price: Optional[Decimal] = Field(None, ge=0)


class ServiceResponse(ServiceCreate):
    id: int
    clinic_id: int
    is_active: bool = True


class WorkingHoursIn(BaseSchema):
    day_of_week: int = Field(..., ge=0, le=6, description="0=Sunday ... 6=Saturday")
    is_working: bool = True
    open_time: Optional[time] = None
    close_time: Optional[time] = None

    @model_validator(mode="after")
    def check_bounds(self):
        if self.is_working and self.open_time and self.close_time and self.open_time >= self.close_time:
            raise ValueError("open_time must be before close_time")
        return self


class WorkingHoursResponse(WorkingHoursIn):
    id: int
    staff_id: int


class BlockedSlotCreate(BaseSchema):
    staff_id: int
    block_date: date
    start_time: time
    end_time: time
    reason: Optional[str] = Field(None, max_length=255)

    @model_validator(mode="after")
    def check_window(self):
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self


class BlockedSlotResponse(BlockedSlotCreate):
    id: int
    clinic_id: int


# --- Appointment Schemas ---
class AppointmentCreate(BaseSchema):
    patient_id: int
    staff_id: int
    service_id: int
    appointment_date: date
    start_time: time
    appointment_type: AppointmentType = AppointmentType.single
    notes: Optional[str] = None
    patient_notes: Optional[str] = None
    internal_notes: Optional[str] = None


class AppointmentCancel(BaseSchema):
    reason: CancellationReason
    check_waitlist: bool = False


class AppointmentStatusUpdate(BaseSchema):
    status: AppointmentStatus


class AppointmentResponse(BaseSchema):
    id: int
    clinic_id: int
    patient_id: int
    staff_id: int
    service_id: int
    appointment_date: date
    start_time: time
    end_time: time
    status: AppointmentStatus
    appointment_type: AppointmentType
    source: AppointmentSource
    package_id: Optional[int] = None
    package_session_number: Optional[int] = None
    notes: Optional[str] = None
    patient_notes: Optional[str] = None
    internal_notes: Optional[str] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class AppointmentCancelled(BaseModel):
    appointment: AppointmentResponse
    waitlist_offered: bool = False


class ReminderRequest(BaseSchema):
    on_date: date
    lead_hours: int = Field(24, gt=0, le=72)


class ReminderResult(BaseModel):
    sent: int


# --- Package Schemas ---
class PackageCreate(BaseSchema):
    patient_id: int
    staff_id: int
    service_id: int
    name: str = Field(..., min_length=1, max_length=255)
    start_date: date
    start_time: time
    total_sessions: int = Field(..., ge=1, le=100)
    interval_days: int = Field(..., ge=1, le=365)
    total_price: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None


class PackageResponse(BaseSchema):
    id: int
    clinic_id: int
    patient_id: int
    service_id: int
    staff_id: int
    name: str
    total_sessions: int
    interval_days: int
    total_price: Optional[Decimal] = None
    price_per_session: Optional[Decimal] = None
    start_date: date
    start_time: time
    expected_end_date: date
    status: PackageStatus
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PackageCreated(BaseModel):
    package: PackageResponse
    appointments: List[AppointmentResponse]


class PackageDetail(PackageResponse):
    appointments: List[AppointmentResponse] = []
    completed_sessions: int = 0
    remaining_sessions: int = 0


class PackageResume(BaseSchema):
    new_start_date: date


class SessionReschedule(BaseSchema):
    new_date: date
    new_time: time


class PackageStats(BaseModel):
    total: int
    active: int
    paused: int
    completed: int
    cancelled: int
    total_revenue: Decimal


# --- Waitlist Schemas ---
class WaitlistCreate(BaseSchema):
    patient_id: int
    service_id: int
    preferred_staff_id: Optional[int] = None
    preferred_date_start: Optional[date] = None
    preferred_date_end: Optional[date] = None
    preferred_time_start: Optional[time] = None
    preferred_time_end: Optional[time] = None
    preferred_days_of_week: List[int] = Field(default_factory=list)
    priority: int = 0
    notes: Optional[str] = None

    @field_validator("preferred_days_of_week")
    @classmethod
    def check_days(cls, v: List[int]) -> List[int]:
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("days of week must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(v))

    @model_validator(mode="after")
    def check_ranges(self):
        if self.preferred_date_start and self.preferred_date_end and self.preferred_date_start > self.preferred_date_end:
            raise ValueError("preferred_date_start must not be after preferred_date_end")
        if self.preferred_time_start and self.preferred_time_end and self.preferred_time_start >= self.preferred_time_end:
            raise ValueError("preferred_time_start must be before preferred_time_end")
        return self


class WaitlistAccept(BaseSchema):
    # Defaults to the slot recorded on the offer
    appointment_date: Optional[date] = None
    start_time: Optional[time] = None


class WaitlistResponse(BaseSchema):
    id: int
    clinic_id: int
    patient_id: int
    service_id: int
    preferred_staff_id: Optional[int] = None
    preferred_date_start: Optional[date] = None
    preferred_date_end: Optional[date] = None
    preferred_time_start: Optional[time] = None
    preferred_time_end: Optional[time] = None
    preferred_days_of_week: Optional[List[int]] = None
    priority: int
    status: WaitlistStatus
    notes: Optional[str] = None
    created_at: datetime
    offered_at: Optional[datetime] = None
    offer_expires_at: Optional[datetime] = None
    offered_date: Optional[date] = None
    offered_start_time: Optional[time] = None
    offered_staff_id: Optional[int] = None
    filled_appointment_id: Optional[int] = None
    filled_at: Optional[datetime] = None


class WaitlistStats(BaseModel):
    total: int
    active: int
    offered: int
    filled: int
    expired: int
    cancelled: int


class ExpireResult(BaseModel):
    expired: int


# --- Patient history ---
class PatientHistory(BaseModel):
    patient: PatientResponse
    appointments: List[AppointmentResponse]
    packages: List[PackageResponse]


# --- Dashboard ---
class DashboardStatsResponse(BaseModel):
    appointments_today: int
    appointments_this_week: int
    appointments_by_status: Dict[str, int]
    waitlist_active: int
    waitlist_offered: int
    new_patients_this_month: int


# --- WhatsApp ---
class WhatsAppSendRequest(BaseModel):
    phone: str = Field(..., min_length=5, max_length=32)
    message: str = Field(..., min_length=1, max_length=4096)


class WhatsAppSendResponse(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class StaffResponse(BaseSchema):
    id: int
    clinic_id: int
    full_name: str
    role: StaffRole
    is_active: bool = True
