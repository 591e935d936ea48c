# clinic_scheduler/models.py
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, DateTime, Time, ForeignKey, Text, Date,
    Enum as SQLAlchemyEnum, Boolean, JSON, Numeric, Index,
    UniqueConstraint
)
from sqlalchemy.orm import relationship
from .database import Base
import enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back naive; they were written as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StaffRole(str, enum.Enum):
    owner = "owner"
    admin = "admin"
    receptionist = "receptionist"
    specialist = "specialist"


class AppointmentStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    completed = "completed"
    cancelled_by_patient = "cancelled_by_patient"
    cancelled_by_clinic = "cancelled_by_clinic"


# Statuses that occupy a slot on the staff member's calendar
ACTIVE_APPOINTMENT_STATUSES = (AppointmentStatus.pending, AppointmentStatus.confirmed)
CANCELLED_APPOINTMENT_STATUSES = (AppointmentStatus.cancelled_by_patient, AppointmentStatus.cancelled_by_clinic)
TERMINAL_APPOINTMENT_STATUSES = (AppointmentStatus.completed,) + CANCELLED_APPOINTMENT_STATUSES


class AppointmentType(str, enum.Enum):
    single = "single"
    package = "package"


class AppointmentSource(str, enum.Enum):
    direct = "direct"
    waitlist = "waitlist"


class PackageStatus(str, enum.Enum):
    active = "active"
    paused = "paused"
    completed = "completed"
    cancelled = "cancelled"


class WaitlistStatus(str, enum.Enum):
    active = "active"
    offered = "offered"
    filled = "filled"
    cancelled = "cancelled"
    expired = "expired"


TERMINAL_WAITLIST_STATUSES = (WaitlistStatus.filled, WaitlistStatus.cancelled, WaitlistStatus.expired)


class MessageDirection(str, enum.Enum):
    outbound = "outbound"
    inbound = "inbound"


class Clinic(Base):
    """Tenant boundary. Every other row carries a clinic_id."""
    __tablename__ = "clinics"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    # Receiving WhatsApp number, used to route inbound messages to the tenant
    whatsapp_number = Column(String(32), unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    staff = relationship("StaffMember", back_populates="clinic")


class StaffMember(Base):
    __tablename__ = "staff_members"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    phone = Column(String(32), nullable=True)
    role = Column(SQLAlchemyEnum(StaffRole, name='staff_role'), default=StaffRole.specialist, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    clinic = relationship("Clinic", back_populates="staff")
    working_hours = relationship("WorkingHours", back_populates="staff", cascade="all, delete-orphan")


class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = (
        UniqueConstraint('clinic_id', 'phone', name='uq_patients_clinic_phone'),
        Index('idx_patients_clinic_name', 'clinic_id', 'full_name'),
    )

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    phone = Column(String(32), nullable=False)
    email = Column(String(255), nullable=True)
    date_of_birth = Column(Date, nullable=True)
    gender = Column(String(10), nullable=True)
    address = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    appointments = relationship("Appointment", back_populates="patient")
    packages = relationship("Package", back_populates="patient")


class Service(Base):
    __tablename__ = "services"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    name_ar = Column(String(255), nullable=False)
    name_en = Column(String(255), nullable=True)
    duration_minutes = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    @property
    def display_name(self) -> str:
        return self.name_en or self.name_ar


class WorkingHours(Base):
    __tablename__ = "working_hours"
    __table_args__ = (
        UniqueConstraint('staff_id', 'day_of_week', name='uq_working_hours_staff_day'),
    )

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    staff_id = Column(Integer, ForeignKey("staff_members.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 0=Sunday ... 6=Saturday
    is_working = Column(Boolean, default=True, nullable=False)
    open_time = Column(Time, nullable=True)
    close_time = Column(Time, nullable=True)

    staff = relationship("StaffMember", back_populates="working_hours")


class BlockedSlot(Base):
    __tablename__ = "blocked_slots"
    __table_args__ = (
        Index('idx_blocked_slots_staff_date', 'clinic_id', 'staff_id', 'block_date'),
    )

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    staff_id = Column(Integer, ForeignKey("staff_members.id"), nullable=False)
    block_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    reason = Column(String(255), nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appointments_staff_date_status', 'clinic_id', 'staff_id', 'appointment_date', 'status'),
        Index('idx_appointments_patient', 'clinic_id', 'patient_id'),
        Index('idx_appointments_package', 'package_id', 'package_session_number'),
    )

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    staff_id = Column(Integer, ForeignKey("staff_members.id"), nullable=False)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)
    appointment_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    status = Column(SQLAlchemyEnum(AppointmentStatus, name='appointment_status'), default=AppointmentStatus.confirmed, nullable=False)
    appointment_type = Column(SQLAlchemyEnum(AppointmentType, name='appointment_type'), default=AppointmentType.single, nullable=False)
    source = Column(SQLAlchemyEnum(AppointmentSource, name='appointment_source'), default=AppointmentSource.direct, nullable=False)
    package_id = Column(Integer, ForeignKey("packages.id"), nullable=True)
    package_session_number = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    patient_notes = Column(Text, nullable=True)
    internal_notes = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    patient = relationship("Patient", back_populates="appointments")
    staff = relationship("StaffMember")
    service = relationship("Service")
    package = relationship("Package", back_populates="appointments")


class Package(Base):
    __tablename__ = "packages"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)
    staff_id = Column(Integer, ForeignKey("staff_members.id"), nullable=False)
    name = Column(String(255), nullable=False)
    total_sessions = Column(Integer, nullable=False)
    interval_days = Column(Integer, nullable=False)
    total_price = Column(Numeric(10, 2), nullable=True)
    price_per_session = Column(Numeric(10, 2), nullable=True)
    start_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    expected_end_date = Column(Date, nullable=False)
    status = Column(SQLAlchemyEnum(PackageStatus, name='package_status'), default=PackageStatus.active, nullable=False)
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    patient = relationship("Patient", back_populates="packages")
    service = relationship("Service")
    appointments = relationship(
        "Appointment",
        back_populates="package",
        order_by="Appointment.package_session_number",
    )


class WaitlistEntry(Base):
    __tablename__ = "waitlist"
    __table_args__ = (
        Index('idx_waitlist_match', 'clinic_id', 'status', 'service_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)
    preferred_staff_id = Column(Integer, ForeignKey("staff_members.id"), nullable=True)
    preferred_date_start = Column(Date, nullable=True)
    preferred_date_end = Column(Date, nullable=True)
    preferred_time_start = Column(Time, nullable=True)
    preferred_time_end = Column(Time, nullable=True)
    preferred_days_of_week = Column(JSON, nullable=True)  # list of 0=Sunday ... 6=Saturday
    priority = Column(Integer, default=0, nullable=False)
    status = Column(SQLAlchemyEnum(WaitlistStatus, name='waitlist_status'), default=WaitlistStatus.active, nullable=False)
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    # Offer bookkeeping (set on active -> offered)
    offered_at = Column(DateTime(timezone=True), nullable=True)
    offer_expires_at = Column(DateTime(timezone=True), nullable=True)
    offered_date = Column(Date, nullable=True)
    offered_start_time = Column(Time, nullable=True)
    offered_end_time = Column(Time, nullable=True)
    offered_staff_id = Column(Integer, ForeignKey("staff_members.id"), nullable=True)
    offer_message_id = Column(String(64), nullable=True, index=True)

    filled_appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    filled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)

    patient = relationship("Patient")
    service = relationship("Service")
    filled_appointment = relationship("Appointment", foreign_keys=[filled_appointment_id])


class WhatsAppLog(Base):
    """Every message sent or received over WhatsApp."""
    __tablename__ = "whatsapp_logs"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=True, index=True)
    phone = Column(String(32), nullable=False)
    message_type = Column(String(50), nullable=False)
    direction = Column(SQLAlchemyEnum(MessageDirection, name='message_direction'), nullable=False)
    content = Column(Text, nullable=True)
    status = Column(String(20), nullable=False)
    external_message_id = Column(String(64), nullable=True, index=True)
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
