# clinic_scheduler/services/whatsapp_service.py - Twilio WhatsApp notifier and inbound message handling

import enum
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from .. import models, schemas
from ..config import Settings, get_settings
from ..crud import SchedulingStore
from ..errors import ConflictError, NotFoundError
from ..models import MessageDirection, utcnow
from .notifier import Notifier, NotifyResult, deliver

logger = logging.getLogger(__name__)


def _as_whatsapp(number: str) -> str:
    return number if number.startswith("whatsapp:") else f"whatsapp:{number}"


def _bare(number: str) -> str:
    return number.replace("whatsapp:", "").strip()


class WhatsAppNotifier(Notifier):
    """Twilio-based WhatsApp delivery. Runs simulated when Twilio is not configured."""

    def __init__(self, store: Optional[SchedulingStore] = None, settings: Optional[Settings] = None,
                 client: Optional[Client] = None):
        settings = settings or get_settings()
        self.store = store
        self.from_number = settings.twilio_whatsapp_from
        self.offer_window_minutes = settings.waitlist_offer_window_minutes
        self.enabled = client is not None or settings.whatsapp_enabled

        if client is not None:
            self.client = client
        elif self.enabled:
            self.client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
        else:
            self.client = None

    # --- message bodies ---

    @staticmethod
    def booking_confirmation_text(patient_name: str, appointment: models.Appointment) -> str:
        service = appointment.service.name_ar if appointment.service else ""
        staff = appointment.staff.full_name if appointment.staff else ""
        return (
            f"أهلاً {patient_name}! 👋\n\n"
            f"تم تأكيد حجزك:\n"
            f"📅 التاريخ: {appointment.appointment_date:%Y-%m-%d}\n"
            f"⏰ الوقت: {appointment.start_time:%H:%M}\n"
            f"💆 الخدمة: {service}\n"
            f"👨‍⚕️ المختص: {staff}\n\n"
            f"للإلغاء، رد بـ \"إلغاء\""
        )

    @staticmethod
    def waitlist_offer_text(patient_name: str, slot: schemas.FreedSlot, waitlist_id: int,
                            service_name: Optional[str] = None, window_minutes: int = 10) -> str:
        return (
            f"أهلاً {patient_name}! 👋\n\n"
            f"موعد متاح أسرع:\n"
            f"📅 {slot.appointment_date:%Y-%m-%d}\n"
            f"⏰ {slot.start_time:%H:%M}\n"
            f"💆 {service_name or ''}\n\n"
            f"تبيه؟ رد بـ \"نعم\" خلال {window_minutes} دقائق\n"
            f"رقم الطلب: {waitlist_id}"
        )

    @staticmethod
    def reminder_text(appointment: models.Appointment, lead_hours: int) -> str:
        service = appointment.service.name_ar if appointment.service else ""
        if lead_hours <= 1:
            return (
                f"⏰⏰ موعدك بعد ساعة!\n\n"
                f"💆 {service}\n"
                f"⏰ {appointment.start_time:%H:%M}\n\n"
                f"نراكم قريباً! 🌟"
            )
        return (
            f"⏰ تذكير: موعدك قريب!\n\n"
            f"📅 {appointment.appointment_date:%Y-%m-%d}\n"
            f"⏰ {appointment.start_time:%H:%M}\n"
            f"💆 {service}\n\n"
            f"للإلغاء، رد بـ \"إلغاء\""
        )

    # --- Notifier contract ---

    def send_booking_confirmation(self, phone, patient_name, appointment, clinic_id=None) -> NotifyResult:
        return self.send_message(phone, self.booking_confirmation_text(patient_name, appointment),
                                 "booking_confirmation", clinic_id=clinic_id)

    def send_waitlist_offer(self, phone, patient_name, slot, waitlist_id, clinic_id=None,
                            service_name=None, window_minutes=None) -> NotifyResult:
        window_minutes = window_minutes or self.offer_window_minutes
        text = self.waitlist_offer_text(patient_name, slot, waitlist_id, service_name, window_minutes)
        return self.send_message(phone, text, "waitlist_offer", clinic_id=clinic_id)

    def send_reminder(self, phone, appointment, lead_hours, clinic_id=None) -> NotifyResult:
        message_type = "reminder_1h" if lead_hours <= 1 else f"reminder_{lead_hours}h"
        return self.send_message(phone, self.reminder_text(appointment, lead_hours), message_type,
                                 clinic_id=clinic_id)

    def send_message(self, phone: str, text: str, message_type: str = "text",
                     clinic_id: Optional[int] = None) -> NotifyResult:
        """Send a plain text WhatsApp message. Never raises."""
        if not self.enabled:
            message_id = f"sim_{datetime.now().timestamp()}"
            logger.info(f"[SIMULATED] Would send {message_type} to {phone}: {text}")
            self._log(clinic_id, phone, message_type, text, "simulated", message_id)
            return {"success": True, "message_id": message_id, "error": None}

        try:
            sent = self.client.messages.create(from_=_as_whatsapp(self.from_number), to=_as_whatsapp(phone), body=text)
        except TwilioRestException as e:
            logger.error(f"Twilio API Error sending {message_type} to {phone}: {e}")
            error = f"Twilio Error: {e.status} - {e.msg}"
            self._log(clinic_id, phone, message_type, text, "failed", None, error)
            return {"success": False, "message_id": None, "error": error}
        except Exception as e:
            logger.error(f"General Error sending WhatsApp message to {phone}: {e}", exc_info=True)
            self._log(clinic_id, phone, message_type, text, "failed", None, str(e))
            return {"success": False, "message_id": None, "error": str(e)}

        self._log(clinic_id, phone, message_type, text, "sent", sent.sid)
        return {"success": True, "message_id": sent.sid, "error": None}

    def _log(self, clinic_id, phone, message_type, text, status, message_id=None, error=None):
        if self.store is None:
            return
        try:
            with self.store.transaction():
                self.store.log_message(
                    clinic_id=clinic_id,
                    phone=_bare(phone),
                    message_type=message_type,
                    direction=MessageDirection.outbound,
                    content=text,
                    status=status,
                    external_message_id=message_id,
                    error_message=error,
                    sent_at=utcnow() if status in ("sent", "simulated") else None,
                )
        except Exception as e:
            logger.error(f"Failed to record WhatsApp log for {phone}: {e}")


class MessageIntent(str, enum.Enum):
    booking = "booking_intent"
    confirmation = "confirmation"
    cancellation = "cancellation"
    unknown = "unknown"


BOOKING_KEYWORDS = ("حجز", "موعد", "بدي", "book", "appointment")
CONFIRM_WORDS = ("نعم", "أكيد", "اكيد", "yes", "confirm", "ok")
CANCEL_WORDS = ("إلغاء", "الغاء", "cancel")


def classify_intent(text: str) -> MessageIntent:
    normalized = (text or "").strip().lower()
    if normalized in CONFIRM_WORDS:
        return MessageIntent.confirmation
    if normalized in CANCEL_WORDS:
        return MessageIntent.cancellation
    if any(keyword in normalized for keyword in BOOKING_KEYWORDS):
        return MessageIntent.booking
    return MessageIntent.unknown


REPLIES = {
    "offer_accepted": "تم تأكيد الحجز من قائمة الانتظار! ✅\n\n📅 {date}\n⏰ {time}",
    "offer_gone": "عذراً، انتهت صلاحية العرض أو تم حجز الموعد. سنبقيك على قائمة الانتظار إن أمكن.",
    "confirmed": "تم تأكيد موعدك! 🎉\n\nنشوفك بالموعد.",
    "cancellation": "تم استلام طلب الإلغاء. سنتواصل معك لتأكيد الإلغاء.",
    "unknown": "أهلاً! 👋\n\nكيف أقدر أساعدك؟\n- للحجز: أرسل \"حجز\"\n- للاستفسار: اتصل على العيادة\n\nشكراً لتواصلك معنا! 🌟",
}


class InboundMessageHandler:
    """Routes an inbound WhatsApp message to its clinic and acts on the sender's intent."""

    def __init__(self, store: SchedulingStore, patients, waitlist, notifier: Notifier):
        self.store = store
        self.patients = patients
        self.waitlist = waitlist
        self.notifier = notifier

    def _booking_menu(self, clinic_id: int) -> str:
        services = self.store.list_services(clinic_id)
        lines = [f"{i}. {service.name_ar}" for i, service in enumerate(services, start=1)]
        return "أهلاً! 👋\n\nللحجز، اختار الخدمة:\n" + "\n".join(lines) + "\n\nأرسل رقم الخدمة"

    def _accept_offer(self, clinic_id: int, patient: models.Patient, replied_to: Optional[str]) -> Dict[str, Any]:
        entry = None
        if replied_to:
            entry = self.store.find_offer_by_message_id(clinic_id, replied_to)
        if entry is None:
            entry = self.store.latest_offer_for_patient(clinic_id, patient.id)
        if entry is None or entry.patient_id != patient.id:
            return {"reply": REPLIES["confirmed"], "waitlist_id": None, "appointment_id": None}

        waitlist_id = entry.id
        try:
            appointment = self.waitlist.accept_offer(clinic_id, waitlist_id)
        except (NotFoundError, ConflictError) as e:
            logger.info(f"Waitlist offer {waitlist_id} could not be accepted: {e.code}")
            return {"reply": REPLIES["offer_gone"], "waitlist_id": waitlist_id, "appointment_id": None}
        reply = REPLIES["offer_accepted"].format(
            date=f"{appointment.appointment_date:%Y-%m-%d}", time=f"{appointment.start_time:%H:%M}"
        )
        return {"reply": reply, "waitlist_id": waitlist_id, "appointment_id": appointment.id}

    def handle(self, from_number: str, to_number: str, body: str, message_sid: Optional[str] = None,
               replied_to_sid: Optional[str] = None, profile_name: Optional[str] = None) -> Dict[str, Any]:
        """Process one inbound message and send the reply. Returns what was done."""
        phone = _bare(from_number)
        clinic = self.store.get_clinic_by_whatsapp_number(_bare(to_number))
        if clinic is None:
            logger.warning(f"Inbound WhatsApp message to unknown number {to_number}")
            return {"intent": MessageIntent.unknown.value, "clinic_id": None, "reply": None}

        with self.store.transaction():
            self.store.log_message(
                clinic_id=clinic.id,
                phone=phone,
                message_type="incoming",
                direction=MessageDirection.inbound,
                content=body,
                status="received",
                external_message_id=message_sid,
            )

        patient, created = self.patients.get_or_create_by_phone(clinic.id, phone, profile_name)
        intent = classify_intent(body)
        result: Dict[str, Any] = {
            "intent": intent.value,
            "clinic_id": clinic.id,
            "patient_id": patient.id,
            "patient_created": created,
            "waitlist_id": None,
            "appointment_id": None,
        }

        if intent == MessageIntent.confirmation:
            result.update(self._accept_offer(clinic.id, patient, replied_to_sid))
        elif intent == MessageIntent.booking:
            result["reply"] = self._booking_menu(clinic.id)
        elif intent == MessageIntent.cancellation:
            result["reply"] = REPLIES["cancellation"]
        else:
            result["reply"] = REPLIES["unknown"]

        logger.info(f"Inbound WhatsApp from {phone} for clinic {clinic.id}: {intent.value}")
        deliver(self.notifier.send_message, phone, result["reply"], "reply", clinic_id=clinic.id)
        return result
