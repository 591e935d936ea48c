# tests/test_whatsapp.py
from datetime import date, time
from unittest.mock import MagicMock

import pytest
from twilio.base.exceptions import TwilioRestException

from clinic_scheduler import models, schemas
from clinic_scheduler.config import get_settings
from clinic_scheduler.crud import SchedulingStore
from clinic_scheduler.models import AppointmentSource, MessageDirection, WaitlistStatus
from clinic_scheduler.services.whatsapp_service import MessageIntent, WhatsAppNotifier, classify_intent

CLINIC_NUMBER = "whatsapp:+15550001111"
PATIENT_NUMBER = "whatsapp:+15551230001"


@pytest.mark.parametrize("text, intent", [
    ("نعم", MessageIntent.confirmation),
    ("  Yes ", MessageIntent.confirmation),
    ("OK", MessageIntent.confirmation),
    ("إلغاء", MessageIntent.cancellation),
    ("cancel", MessageIntent.cancellation),
    ("بدي احجز موعد", MessageIntent.booking),
    ("I want to book", MessageIntent.booking),
    ("yes please", MessageIntent.unknown),
    ("مرحبا", MessageIntent.unknown),
    ("", MessageIntent.unknown),
])
def test_classify_intent(text, intent):
    assert classify_intent(text) == intent


def _offer_to_patient(services, ids):
    entry = services.waitlist.add_to_waitlist(ids["clinic"], None, schemas.WaitlistCreate(
        patient_id=ids["patient"], service_id=ids["service"],
    ))
    services.matcher.find_and_fill_slot(ids["clinic"], schemas.FreedSlot(
        staff_id=ids["staff"], service_id=ids["service"], appointment_date=date(2026, 2, 1),
        start_time=time(10, 0), end_time=time(10, 30),
    ))
    return entry.id


def test_confirmation_reply_accepts_offer(services, ids, notifier):
    entry_id = _offer_to_patient(services, ids)
    offer_sid = services.waitlist.get_entry(ids["clinic"], entry_id).offer_message_id

    result = services.inbound.handle(PATIENT_NUMBER, CLINIC_NUMBER, "نعم", "SM-in-1", replied_to_sid=offer_sid)

    assert result["intent"] == "confirmation"
    assert result["waitlist_id"] == entry_id
    appointment = services.store.get_appointment(ids["clinic"], result["appointment_id"])
    assert appointment.source == AppointmentSource.waitlist
    assert services.waitlist.get_entry(ids["clinic"], entry_id).status == WaitlistStatus.filled
    assert notifier.sent("message")[-1]["phone"] == "+15551230001"
    assert "10:00" in notifier.sent("message")[-1]["text"]


def test_confirmation_without_reply_context_uses_latest_offer(services, ids):
    entry_id = _offer_to_patient(services, ids)

    result = services.inbound.handle(PATIENT_NUMBER, CLINIC_NUMBER, "yes")

    assert result["waitlist_id"] == entry_id
    assert result["appointment_id"] is not None


def test_confirmation_after_offer_lapsed(services, ids, clock):
    entry_id = _offer_to_patient(services, ids)
    clock.advance(minutes=30)

    result = services.inbound.handle(PATIENT_NUMBER, CLINIC_NUMBER, "نعم")

    assert result["appointment_id"] is None
    assert services.waitlist.get_entry(ids["clinic"], entry_id).status == WaitlistStatus.expired


def test_confirmation_with_nothing_offered(services, ids):
    result = services.inbound.handle(PATIENT_NUMBER, CLINIC_NUMBER, "نعم")
    assert result["intent"] == "confirmation"
    assert result["appointment_id"] is None
    assert result["reply"]


def test_booking_intent_lists_services(services, ids):
    result = services.inbound.handle(PATIENT_NUMBER, CLINIC_NUMBER, "بدي حجز")
    assert result["intent"] == "booking_intent"
    assert "تنظيف بشرة" in result["reply"]
    assert "استشارة" not in result["reply"]


def test_unknown_sender_is_registered(services, ids, db):
    result = services.inbound.handle("whatsapp:+15557770000", CLINIC_NUMBER, "hello", profile_name="Nour")

    assert result["patient_created"] is True
    patient = services.store.get_patient(ids["clinic"], result["patient_id"])
    assert (patient.phone, patient.full_name) == ("+15557770000", "Nour")

    inbound = db.query(models.WhatsAppLog).filter(models.WhatsAppLog.direction == MessageDirection.inbound).one()
    assert inbound.clinic_id == ids["clinic"]
    assert inbound.content == "hello"


def test_message_to_unknown_clinic_number(services, notifier):
    result = services.inbound.handle(PATIENT_NUMBER, "whatsapp:+19999999999", "نعم")
    assert result["clinic_id"] is None
    assert notifier.calls == []


def test_simulated_notifier_logs_message(db, ids):
    notifier = WhatsAppNotifier(store=SchedulingStore(db))
    assert notifier.enabled is False

    result = notifier.send_message("+15551230001", "hello", clinic_id=ids["clinic"])

    assert result["success"] is True
    assert result["message_id"].startswith("sim_")
    log = db.query(models.WhatsAppLog).one()
    assert (log.status, log.direction, log.external_message_id) == (
        "simulated", MessageDirection.outbound, result["message_id"]
    )


def _twilio_notifier(db, client):
    settings = get_settings().model_copy(update={"twilio_whatsapp_from": "+15550001111"})
    return WhatsAppNotifier(store=SchedulingStore(db), settings=settings, client=client)


def test_twilio_notifier_sends_through_client(db, ids):
    client = MagicMock()
    client.messages.create.return_value = MagicMock(sid="SM123")

    result = _twilio_notifier(db, client).send_message("+15551230001", "hello", clinic_id=ids["clinic"])

    assert result == {"success": True, "message_id": "SM123", "error": None}
    client.messages.create.assert_called_once_with(
        from_="whatsapp:+15550001111", to="whatsapp:+15551230001", body="hello"
    )
    assert db.query(models.WhatsAppLog).one().status == "sent"


def test_twilio_error_is_reported_not_raised(db, ids):
    client = MagicMock()
    client.messages.create.side_effect = TwilioRestException(400, "/Messages", msg="bad number")

    result = _twilio_notifier(db, client).send_message("+15551230001", "hello", clinic_id=ids["clinic"])

    assert result["success"] is False
    assert "bad number" in result["error"]
    log = db.query(models.WhatsAppLog).one()
    assert log.status == "failed"
    assert log.sent_at is None


def test_booking_confirmation_text_mentions_slot(services, ids):
    appointment = services.booking.create_appointment(ids["clinic"], None, schemas.AppointmentCreate(
        patient_id=ids["patient"], staff_id=ids["staff"], service_id=ids["service"],
        appointment_date=date(2026, 2, 1), start_time=time(9, 30),
    ))

    text = WhatsAppNotifier.booking_confirmation_text("Sara", appointment)

    assert "2026-02-01" in text
    assert "09:30" in text
    assert "Dr. Lina" in text


def test_offer_text_states_offer_window(db, ids):
    slot = schemas.FreedSlot(
        staff_id=ids["staff"], service_id=ids["service"], appointment_date=date(2026, 2, 1),
        start_time=time(10, 0), end_time=time(10, 30),
    )
    settings = get_settings().model_copy(update={"waitlist_offer_window_minutes": 20})
    notifier = WhatsAppNotifier(store=SchedulingStore(db), settings=settings)

    assert "خلال 15 دقائق" in WhatsAppNotifier.waitlist_offer_text("Sara", slot, 7, window_minutes=15)

    notifier.send_waitlist_offer("+15551230001", "Sara", slot, 7, clinic_id=ids["clinic"])
    assert "خلال 20 دقائق" in db.query(models.WhatsAppLog).one().content
