import logging
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import Response

from engagement.core.security import verify_provider_signature
from engagement.services.container import get_services
from engagement.services.inbound import InboundMessage

router = APIRouter()
logger = logging.getLogger(__name__)

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def twiml(message: str | None = None) -> Response:
    if message is None:
        return Response(content=EMPTY_TWIML, media_type="application/xml")
    body = f'<?xml version="1.0" encoding="UTF-8"?><Response><Message>{escape(message)}</Message></Response>'
    return Response(content=body, media_type="application/xml")


def _signed_url(request: Request, public_base_url: str | None) -> str:
    if public_base_url:
        return public_base_url.rstrip("/") + request.url.path
    return str(request.url)


@router.post("/sms")
async def receive_sms(
    request: Request,
    services=Depends(get_services),
    signature: str | None = Header(default=None, alias="X-Twilio-Signature"),
) -> Response:
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    settings = services.settings
    if settings.twilio_validate_signatures:
        if not settings.twilio_auth_token:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="provider signature verification is not configured",
            )
        valid = verify_provider_signature(
            url=_signed_url(request, settings.public_base_url),
            params=params,
            signature=signature,
            auth_token=settings.twilio_auth_token,
        )
        if not valid:
            logger.warning("inbound webhook signature rejected path=%s", request.url.path)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid provider signature")

    from_address = params.get("From")
    text = params.get("Body")
    if not from_address or text is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="From and Body are required")

    message = InboundMessage(from_address=from_address, text=text, provider_message_id=params.get("MessageSid"))
    try:
        result = await services.inbound.handle(message)
    except Exception:
        # provider retries would replay the same failure
        logger.exception("inbound handling failed provider_message_id=%s", message.provider_message_id)
        return twiml()

    return twiml(result.direct_reply)
