from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.datastructures import UploadFile

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.schemas.webhook import InboundAck, MailgunEventWebhook, WebhookAck
from app.services.inbound_service import MAILGUN, InboundFile, WebhookError, process_mailgun_event, process_mailgun_inbound
from app.services.signature_service import SignatureError, verify_mailgun_request
from app.services.tenant_service import resolve_tenant_by_route_secret

logger = get_logger("mailgun_webhook")

router = APIRouter(prefix="/webhooks/mailgun", tags=["mailgun"])


def _verify(source: dict, *, from_form: bool) -> None:
    try:
        verify_mailgun_request(
            source,
            enabled=settings.mailgun_verify_webhook_signature,
            signing_key=settings.mailgun_webhook_signing_key,
            max_skew_seconds=settings.mailgun_max_timestamp_skew_seconds,
            from_form=from_form,
        )
    except SignatureError as exc:
        logger.warning("Mailgun webhook rejected", extra={"context": {"reason": exc.message}})
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


@router.post("/events", response_model=WebhookAck)
async def mailgun_events(request: Request, db: Session = Depends(get_db)):
    """Delivery events for messages we sent, correlated by ``user-variables.nc_message_id``."""
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")

    _verify(body, from_form=False)

    try:
        webhook = MailgunEventWebhook.model_validate(body)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        result = process_mailgun_event(db, webhook)
    except WebhookError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    db.commit()
    return result


@router.post("/inbound/{secret}", response_model=InboundAck)
async def mailgun_inbound(secret: str, request: Request, db: Session = Depends(get_db)):
    """Routed inbound email (multipart); ``secret`` selects the tenant."""
    tenant_id = resolve_tenant_by_route_secret(db, MAILGUN, secret)
    if tenant_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid route secret")

    form = await request.form()
    fields: dict[str, str] = {}
    files: list[InboundFile] = []
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            if key.startswith("attachment-"):
                files.append(
                    InboundFile(
                        field_name=key,
                        filename=value.filename or key,
                        content_type=value.content_type or "application/octet-stream",
                        data=await value.read(),
                    )
                )
            continue
        fields[key] = value

    _verify(fields, from_form=True)

    try:
        result = process_mailgun_inbound(db, tenant_id, fields, files)
    except WebhookError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    db.commit()
    return result
