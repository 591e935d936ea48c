# clinic_scheduler/dependencies.py - FastAPI wiring for the service graph
import logging
from functools import lru_cache
from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session
from twilio.rest import Client

from .config import get_settings
from .crud import SchedulingStore
from .database import get_db
from .services.container import Services, build_services
from .services.notifier import Notifier
from .services.whatsapp_service import WhatsAppNotifier

logger = logging.getLogger(__name__)


@lru_cache()
def twilio_client() -> Optional[Client]:
    settings = get_settings()
    if not settings.whatsapp_enabled:
        logger.warning("Twilio WhatsApp not configured - messages will be simulated")
        return None
    logger.info("Twilio WhatsApp client enabled")
    return Client(settings.twilio_account_sid, settings.twilio_auth_token)


def get_notifier(db: Session = Depends(get_db)) -> Notifier:
    return WhatsAppNotifier(store=SchedulingStore(db), client=twilio_client())


def get_services(db: Session = Depends(get_db), notifier: Notifier = Depends(get_notifier)) -> Services:
    return build_services(db, notifier)
