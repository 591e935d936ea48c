import os
from datetime import time

from sqlalchemy.orm import Session

from clinic_scheduler import models
from clinic_scheduler.database import SessionLocal, create_tables
from clinic_scheduler.models import StaffRole
from clinic_scheduler.security import create_access_token


def get_env(name: str, default: str | None = None, required: bool = False) -> str:
    val = os.getenv(name, default)
    if required and not val:
        raise RuntimeError(f"Missing required env var: {name}")
    return val or ""


def upsert_clinic(db: Session) -> models.Clinic:
    name = get_env("CLINIC_NAME", "Demo Clinic")
    whatsapp_number = get_env("CLINIC_WHATSAPP_NUMBER", required=True)

    clinic = db.query(models.Clinic).filter(models.Clinic.whatsapp_number == whatsapp_number).first()
    if clinic:
        clinic.name = name
        action = "updated"
    else:
        clinic = models.Clinic(name=name, whatsapp_number=whatsapp_number)
        db.add(clinic)
        action = "created"
    db.flush()
    print(f"Clinic {action}: id={clinic.id}, name='{name}', whatsapp='{whatsapp_number}'")
    return clinic


def upsert_owner(db: Session, clinic: models.Clinic) -> models.StaffMember:
    full_name = get_env("CLINIC_OWNER_NAME", "Clinic Owner")
    owner = db.query(models.StaffMember).filter(
        models.StaffMember.clinic_id == clinic.id,
        models.StaffMember.role == StaffRole.owner,
    ).first()
    if owner:
        owner.full_name = full_name
        owner.is_active = True
    else:
        owner = models.StaffMember(clinic_id=clinic.id, full_name=full_name, role=StaffRole.owner)
        db.add(owner)
    db.flush()

    # Sunday to Thursday, 09:00-17:00
    if not owner.working_hours:
        for day in range(7):
            working = day <= 4
            db.add(models.WorkingHours(
                clinic_id=clinic.id,
                staff_id=owner.id,
                day_of_week=day,
                is_working=working,
                open_time=time(9, 0) if working else None,
                close_time=time(17, 0) if working else None,
            ))
    return owner


def main():
    _ = get_env("CLINIC_WHATSAPP_NUMBER", required=True)

    create_tables()
    db = SessionLocal()
    try:
        clinic = upsert_clinic(db)
        owner = upsert_owner(db, clinic)
        db.commit()
        token = create_access_token(owner.id, clinic.id, StaffRole.owner)
        print(f"Owner staff id={owner.id}. Bearer token for local use:\n{token}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
