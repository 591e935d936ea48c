# clinic_scheduler/services/container.py
"""Builds the service graph for one database session."""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..config import get_settings
from ..crud import SchedulingStore
from ..models import utcnow
from .booking_service import BookingService
from .notifier import Notifier
from .package_service import PackageService
from .patient_service import PatientService
from .schedule_service import ScheduleService
from .slot_service import AvailabilityService
from .waitlist_service import WaitlistLifecycle, WaitlistMatcher, WaitlistService
from .whatsapp_service import InboundMessageHandler


@dataclass
class Services:
    store: SchedulingStore
    notifier: Notifier
    availability: AvailabilityService
    booking: BookingService
    packages: PackageService
    lifecycle: WaitlistLifecycle
    matcher: WaitlistMatcher
    waitlist: WaitlistService
    patients: PatientService
    schedule: ScheduleService
    inbound: InboundMessageHandler


def build_services(db: Session, notifier: Notifier, clock: Callable[[], datetime] = utcnow,
                   step_minutes: Optional[int] = None, offer_window_minutes: Optional[int] = None) -> Services:
    settings = get_settings()
    store = SchedulingStore(db)
    lifecycle = WaitlistLifecycle(
        store, clock, offer_window_minutes or settings.waitlist_offer_window_minutes
    )
    matcher = WaitlistMatcher(store, lifecycle, notifier)
    booking = BookingService(store, notifier, matcher, clock)
    waitlist = WaitlistService(store, lifecycle, booking)
    patients = PatientService(store)
    return Services(
        store=store,
        notifier=notifier,
        availability=AvailabilityService(store, step_minutes or settings.slot_step_minutes),
        booking=booking,
        packages=PackageService(store, booking, clock),
        lifecycle=lifecycle,
        matcher=matcher,
        waitlist=waitlist,
        patients=patients,
        schedule=ScheduleService(store),
        inbound=InboundMessageHandler(store, patients, waitlist, notifier),
    )
