# clinic_scheduler/routers/whatsapp.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from twilio.request_validator import RequestValidator

from .. import schemas
from ..config import get_settings
from ..dependencies import get_services
from ..errors import UpstreamError
from ..security import CurrentUser, get_current_user
from ..services.container import Services
from ..services.notifier import deliver

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/whatsapp",
    tags=["WhatsApp"],
)

# Mounted at the application root, Twilio posts here
webhook_router = APIRouter(tags=["WhatsApp"])

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def _signature_ok(request: Request, params: dict) -> bool:
    settings = get_settings()
    if not settings.whatsapp_validate_signature:
        return True
    if not settings.twilio_auth_token:
        logger.error("WHATSAPP_VALIDATE_SIGNATURE is on but TWILIO_AUTH_TOKEN is not set")
        return False
    validator = RequestValidator(settings.twilio_auth_token)
    return validator.validate(str(request.url), params, request.headers.get("X-Twilio-Signature", ""))


@webhook_router.post("/webhooks/whatsapp")
async def handle_twilio_webhook(request: Request, services: Services = Depends(get_services)):
    """Receive an inbound WhatsApp message from Twilio (form encoded)."""
    form = await request.form()
    params = {key: value for key, value in form.items()}

    if not _signature_ok(request, params):
        logger.warning("Rejected WhatsApp webhook with an invalid Twilio signature")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    sender = params.get("From")
    if not sender or params.get("Body") is None:
        logger.info("Ignoring WhatsApp webhook without sender or body (likely a status callback)")
        return Response(content=EMPTY_TWIML, media_type="application/xml")

    logger.info(f"Processing WhatsApp message {params.get('MessageSid')} from {sender}")
    try:
        await run_in_threadpool(
            services.inbound.handle,
            sender,
            params.get("To", ""),
            params.get("Body", ""),
            params.get("MessageSid"),
            params.get("OriginalRepliedMessageSid"),
            params.get("ProfileName"),
        )
    except Exception as e:
        # Twilio retries on non-2xx; the failure is ours to investigate, not theirs to resend
        logger.error(f"Error processing WhatsApp webhook: {e}", exc_info=True)
    return Response(content=EMPTY_TWIML, media_type="application/xml")


@router.post("/send", response_model=schemas.WhatsAppSendResponse)
def send_whatsapp_message(
    payload: schemas.WhatsAppSendRequest,
    services: Services = Depends(get_services),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Send a free-form message from the clinic to a phone number."""
    result = deliver(services.notifier.send_message, payload.phone, payload.message, "manual",
                     clinic_id=current_user.clinic_id)
    if not result.get("success"):
        raise UpstreamError(f"WhatsApp delivery failed: {result.get('error')}", code="WHATSAPP_SEND_FAILED")
    return schemas.WhatsAppSendResponse(success=True, message_id=result.get("message_id"))
