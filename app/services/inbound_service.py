"""Provider webhook processing once the request has been authenticated."""

from dataclasses import dataclass
from typing import Mapping, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.schemas.webhook import InboundAck, MailgunEventWebhook, WebhookAck
from app.services.attachment_storage import LocalAttachmentStore, store_attachment
from app.services.conversation_service import find_contact, resolve_thread
from app.services.identity import extract_email_address, normalize_e164
from app.services.message_service import (
    apply_provider_status,
    create_inbound_message,
    find_message,
    find_message_by_provider_id,
    record_attachment,
    record_message_event,
)
from app.services.preference_service import is_sms_opt_out, opt_out
from app.services.state_machine import MessageStatus
from app.services.tenant_service import resolve_phone_number

logger = get_logger("inbound_service")

MAILGUN = "mailgun"
TWILIO = "twilio"

MAILGUN_EVENT_STATUS = {
    "accepted": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "failed": MessageStatus.FAILED,
    "rejected": MessageStatus.FAILED,
    "bounced": MessageStatus.FAILED,
    "complained": MessageStatus.FAILED,
}
EMAIL_OPT_OUT_EVENTS = frozenset({"unsubscribed", "complained"})

TWILIO_STATUS_MAP = {
    "accepted": MessageStatus.QUEUED,
    "queued": MessageStatus.QUEUED,
    "sending": MessageStatus.QUEUED,
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "undelivered": MessageStatus.FAILED,
    "failed": MessageStatus.FAILED,
}


class WebhookError(Exception):
    """Request is authentic but cannot be accepted; carries the HTTP status to return."""

    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(detail)


@dataclass
class InboundFile:
    field_name: str
    filename: str
    content_type: str
    data: bytes


def map_mailgun_event(event: Optional[str]) -> Optional[MessageStatus]:
    return MAILGUN_EVENT_STATUS.get((event or "").strip().lower())


def map_twilio_status(status: Optional[str]) -> MessageStatus:
    return TWILIO_STATUS_MAP.get((status or "").strip().lower(), MessageStatus.SENT)


def _parse_uuid(value) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


def process_mailgun_event(db: Session, webhook: MailgunEventWebhook) -> WebhookAck:
    event_data = webhook.event_data
    if event_data is None:
        return WebhookAck(processed=0)

    event = (event_data.event or "").strip().lower()
    user_variables = event_data.user_variables or {}
    message_id = _parse_uuid(user_variables.get("nc_message_id"))
    if message_id is None:
        logger.info("Mailgun event without correlation id", extra={"context": {"event": event}})
        return WebhookAck(processed=0)

    message = find_message(db, message_id)
    if message is None:
        logger.info(
            "Mailgun event for unknown message",
            extra={"context": {"event": event, "message_id": str(message_id)}},
        )
        return WebhookAck(processed=0)

    expected_token = (message.message_metadata or {}).get("nc_token")
    received_token = user_variables.get("nc_token")
    if expected_token and received_token and str(expected_token) != str(received_token):
        raise WebhookError(403, "Invalid nc_token")

    record_message_event(
        db,
        message,
        provider=MAILGUN,
        event_type=event or "unknown",
        payload=event_data.model_dump(mode="json", by_alias=True),
    )

    mapped = map_mailgun_event(event)
    if mapped is not None:
        apply_provider_status(
            db,
            message,
            mapped,
            provider_status=event,
            provider_message_id=event_data.provider_message_id(),
        )

    if event in EMAIL_OPT_OUT_EVENTS:
        recipient = extract_email_address(event_data.recipient)
        contact = find_contact(db, message.tenant_id, "email", recipient) if recipient else None
        if contact is not None:
            opt_out(db, tenant_id=message.tenant_id, contact_id=contact.id, channel="email", source="mailgun_webhook")

    return WebhookAck(processed=1, message_id=message.id)


def _first(fields: Mapping[str, str], *names: str) -> str:
    for name in names:
        value = fields.get(name)
        if value:
            return value
    return ""


def process_mailgun_inbound(
    db: Session,
    tenant_id: UUID,
    fields: Mapping[str, str],
    files: list[InboundFile],
    *,
    store: Optional[LocalAttachmentStore] = None,
) -> InboundAck:
    """Record a routed inbound email with its attachments."""
    from_field = _first(fields, "from", "sender")
    sender = _first(fields, "sender") or from_field
    recipient = _first(fields, "recipient", "To")
    subject = _first(fields, "subject")
    body_text = _first(fields, "body-plain", "stripped-text", "body")
    body_html = _first(fields, "body-html", "stripped-html")
    message_id_header = _first(fields, "Message-Id", "message-id")

    from_email = extract_email_address(sender)
    if not from_email:
        raise WebhookError(400, "Missing sender email")

    thread = resolve_thread(
        db,
        tenant_id,
        "email",
        from_email,
        subject=subject or None,
        conversation_metadata={"to": recipient, "from": from_email, "provider": MAILGUN},
    )
    message = create_inbound_message(
        db,
        tenant_id=tenant_id,
        conversation=thread.conversation,
        contact_id=thread.contact.id,
        channel="email",
        provider=MAILGUN,
        provider_message_id=message_id_header,
        from_address=from_email,
        to_address=recipient or None,
        subject=subject,
        body_text=body_text,
        body_html=body_html,
        metadata={
            "from": from_field,
            "sender": sender,
            "recipient": recipient,
            "message_id": message_id_header or None,
        },
    )
    record_message_event(
        db,
        message,
        provider=MAILGUN,
        event_type="inbound",
        payload={
            "subject": subject,
            "from": from_field,
            "recipient": recipient,
            "has_html": bool(body_html),
            "message_id": message_id_header or None,
        },
    )

    store = store or LocalAttachmentStore()
    saved = 0
    for upload in files:
        filename = upload.filename or upload.field_name
        storage_key, upload_error = store_attachment(
            store,
            tenant_id=tenant_id,
            message_id=message.id,
            filename=filename,
            data=upload.data,
        )
        record_attachment(
            db,
            message,
            filename=filename,
            content_type=upload.content_type or "application/octet-stream",
            byte_size=len(upload.data),
            storage_key=storage_key,
            metadata={"upload_error": upload_error, "source": MAILGUN},
        )
        saved += 1

    logger.info(
        "Inbound email recorded",
        extra={
            "context": {
                "tenant_id": str(tenant_id),
                "message_id": str(message.id),
                "conversation_id": str(thread.conversation.id),
                "attachment_count": fields.get("attachment-count"),
                "attachments_saved": saved,
            }
        },
    )
    return InboundAck(
        tenant_id=tenant_id,
        contact_id=thread.contact.id,
        conversation_id=thread.conversation.id,
        message_id=message.id,
        attachments=saved,
    )


def process_twilio_inbound(db: Session, params: Mapping[str, str]) -> InboundAck:
    to_number = normalize_e164(params.get("To"))
    from_number = normalize_e164(params.get("From"))
    body = params.get("Body") or ""
    message_sid = _first(params, "MessageSid", "SmsSid")

    if not to_number or not from_number:
        raise WebhookError(400, "Missing To/From")

    phone = resolve_phone_number(db, to_number)
    if phone is None:
        raise WebhookError(404, "Unmapped To number (no tenant)")
    tenant_id = phone.tenant_id

    is_opt_out = is_sms_opt_out(body)
    thread = resolve_thread(
        db,
        tenant_id,
        "sms",
        from_number,
        contact_metadata={"source": "twilio_inbound"},
        conversation_metadata={"to": to_number, "from": from_number, "provider": TWILIO},
    )
    message = create_inbound_message(
        db,
        tenant_id=tenant_id,
        conversation=thread.conversation,
        contact_id=thread.contact.id,
        channel="sms",
        provider=TWILIO,
        provider_message_id=message_sid,
        from_address=from_number,
        to_address=to_number,
        body_text=body,
        metadata={"phone_number_id": str(phone.id), "raw": dict(params), "opt_out": is_opt_out},
    )
    record_message_event(
        db,
        message,
        provider=TWILIO,
        event_type="inbound_received",
        payload={"to": to_number, "from": from_number, "messageSid": message_sid or None, "raw": dict(params)},
    )
    if is_opt_out:
        opt_out(
            db,
            tenant_id=tenant_id,
            contact_id=thread.contact.id,
            channel="sms",
            source="twilio_inbound_keyword",
        )

    return InboundAck(
        tenant_id=tenant_id,
        contact_id=thread.contact.id,
        conversation_id=thread.conversation.id,
        message_id=message.id,
        opted_out=is_opt_out,
    )


def process_twilio_status(db: Session, params: Mapping[str, str]) -> WebhookAck:
    """Apply a delivery status callback to the outbound message it refers to."""
    message_sid = _first(params, "MessageSid", "SmsSid")
    message_status = _first(params, "MessageStatus", "SmsStatus")
    to_number = normalize_e164(params.get("To"))
    from_number = normalize_e164(params.get("From"))

    if not message_sid:
        raise WebhookError(400, "Missing MessageSid")
    if not to_number and not from_number:
        raise WebhookError(400, "Missing To")

    # Outbound callbacks carry the tenant's number in From; To is the recipient.
    phone = None
    for candidate in (from_number, to_number):
        if candidate:
            phone = resolve_phone_number(db, candidate)
        if phone is not None:
            break
    if phone is None:
        raise WebhookError(404, "Unmapped number (no tenant)")

    message = find_message_by_provider_id(db, phone.tenant_id, TWILIO, message_sid)
    if message is None:
        return WebhookAck(processed=0, note="Message not found; ignored")

    mapped = map_twilio_status(message_status)
    apply_provider_status(db, message, mapped, provider_status=message_status or None)
    record_message_event(
        db,
        message,
        provider=TWILIO,
        event_type="status_callback",
        payload={
            "messageSid": message_sid,
            "messageStatus": message_status,
            "mappedStatus": mapped.value,
            "to": to_number,
            "from": from_number,
            "errorCode": params.get("ErrorCode") or None,
            "errorMessage": params.get("ErrorMessage") or None,
        },
    )
    return WebhookAck(processed=1, message_id=message.id)
