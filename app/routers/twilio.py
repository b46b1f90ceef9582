from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.schemas.webhook import InboundAck, WebhookAck
from app.services.inbound_service import WebhookError, process_twilio_inbound, process_twilio_status
from app.services.signature_service import SignatureError, build_public_url, verify_twilio_request

logger = get_logger("twilio_webhook")

router = APIRouter(prefix="/webhooks/twilio", tags=["twilio"])


async def _verified_params(request: Request) -> dict[str, str]:
    form = await request.form()
    pairs = [(key, str(value)) for key, value in form.multi_items()]
    url = build_public_url(
        scheme=request.url.scheme,
        host=request.url.netloc,
        path=request.url.path,
        query=request.url.query,
        headers=request.headers,
    )
    try:
        verify_twilio_request(
            enabled=settings.twilio_validate_signature,
            auth_token=settings.twilio_auth_token,
            provided_signature=request.headers.get("X-Twilio-Signature"),
            url=url,
            params=pairs,
        )
    except SignatureError as exc:
        logger.warning("Twilio webhook rejected", extra={"context": {"reason": exc.message, "url": url}})
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    # Handlers read single-valued fields; a repeated key keeps its last value.
    return dict(pairs)


@router.post("/inbound", response_model=InboundAck)
async def twilio_inbound(request: Request, db: Session = Depends(get_db)):
    params = await _verified_params(request)
    try:
        result = process_twilio_inbound(db, params)
    except WebhookError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    db.commit()
    return result


@router.post("/status", response_model=WebhookAck)
async def twilio_status(request: Request, db: Session = Depends(get_db)):
    """Delivery status callback for an outbound SMS."""
    params = await _verified_params(request)
    try:
        result = process_twilio_status(db, params)
    except WebhookError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    db.commit()
    return result
