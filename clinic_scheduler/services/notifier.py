# clinic_scheduler/services/notifier.py
"""
Messaging collaborator used by the scheduling core.

Implementations deliver patient-facing messages over some transport and
report the outcome as a dict: ``{"success": bool, "message_id": str | None,
"error": str | None}``. They log delivery failures themselves and are not
expected to raise; the core still guards every call so a misbehaving
transport cannot unwind a booking, cancellation or offer.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import structlog

from .. import models, schemas

logger = structlog.get_logger(__name__)

NotifyResult = Dict[str, Any]


class Notifier(ABC):

    @abstractmethod
    def send_booking_confirmation(self, phone: str, patient_name: str, appointment: models.Appointment,
                                  clinic_id: Optional[int] = None) -> NotifyResult:
        pass

    @abstractmethod
    def send_waitlist_offer(self, phone: str, patient_name: str, slot: schemas.FreedSlot, waitlist_id: int,
                            clinic_id: Optional[int] = None, service_name: Optional[str] = None,
                            window_minutes: Optional[int] = None) -> NotifyResult:
        pass

    @abstractmethod
    def send_reminder(self, phone: str, appointment: models.Appointment, lead_hours: int,
                      clinic_id: Optional[int] = None) -> NotifyResult:
        pass

    @abstractmethod
    def send_message(self, phone: str, text: str, message_type: str = "text",
                     clinic_id: Optional[int] = None) -> NotifyResult:
        """Free-form text, used for conversational replies."""
        pass


def deliver(send, *args, **kwargs) -> NotifyResult:
    """Call a notifier method without letting transport trouble escape."""
    try:
        result = send(*args, **kwargs) or {}
    except Exception as exc:
        logger.warning("notification_failed", method=getattr(send, "__name__", str(send)), error=str(exc))
        return {"success": False, "message_id": None, "error": str(exc)}
    if not result.get("success", False):
        logger.warning("notification_not_delivered", method=getattr(send, "__name__", str(send)), error=result.get("error"))
    return result
