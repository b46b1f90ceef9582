"""Policy-gated outbound sends for conversational messages."""

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.config import settings as app_settings
from app.logging_config import get_logger
from app.models import Contact, Message, OutboxNotification
from app.schemas.internal import SendMessageRequest
from app.services.conversation_service import default_subject, get_or_create_conversation
from app.services.message_service import (
    create_outbound_message,
    find_outbound_by_idempotency_key,
    merge_message_metadata,
    record_message_event,
)
from app.services.outbox_service import enqueue_notification
from app.services.policy_service import Allowed, Denied, PolicyDecision, evaluate_comms_policy
from app.services.providers import PROVIDER_BY_CHANNEL
from app.services.state_machine import MessageStatus
from app.services.template_service import render_template
from app.services.tenant_service import load_comms_settings, resolve_email_sender

logger = get_logger("send_service")


class SendError(Exception):
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


@dataclass
class SendOutcome:
    decision: PolicyDecision
    message: Optional[Message] = None
    outbox: Optional[OutboxNotification] = None
    idempotent: bool = False

    @property
    def ok(self) -> bool:
        return not isinstance(self.decision, Denied)


def load_contact(db: Session, tenant_id: UUID, contact_id: UUID) -> Optional[Contact]:
    return db.query(Contact).filter(Contact.id == contact_id, Contact.tenant_id == tenant_id).first()


def contact_address(contact: Contact, channel: str) -> Optional[str]:
    value = contact.email if channel == "email" else contact.phone_e164
    return (value or "").strip() or None


def build_dedupe_key(request: SendMessageRequest) -> Optional[str]:
    if request.dedupe_key:
        return request.dedupe_key
    if request.template_key:
        return f"{request.channel}:{request.template_key}:{request.contact_id}"
    return None


def queue_outbound_message(db: Session, request: SendMessageRequest, *, now: Optional[datetime] = None) -> SendOutcome:
    """Evaluate policy, record the outbound message and enqueue it for dispatch.

    Denied sends are still recorded, as ``failed`` messages carrying the
    policy block, so operators can see what was suppressed. They do not carry
    a dedupe key and therefore never extend the dedupe window.
    """
    contact = load_contact(db, request.tenant_id, request.contact_id)
    if contact is None:
        raise SendError(404, "Contact not found")
    to_address = contact_address(contact, request.channel)
    if not to_address:
        raise SendError(400, f"Contact has no {request.channel} address")

    body_text = render_template(request.body_text, request.variables)
    body_html = render_template(request.body_html, request.variables) if request.body_html else None
    subject = render_template(request.subject, request.variables) if request.subject else None
    if not body_text and not body_html:
        raise SendError(400, "Message body is empty")

    if request.idempotency_key:
        existing = find_outbound_by_idempotency_key(db, request.tenant_id, contact.id, request.idempotency_key)
        if existing is not None:
            return SendOutcome(decision=Allowed(), message=existing, idempotent=True)

    tenant_settings = load_comms_settings(db, request.tenant_id)
    dedupe_key = build_dedupe_key(request)
    decision = evaluate_comms_policy(
        db,
        tenant_id=request.tenant_id,
        contact_id=contact.id,
        channel=request.channel,
        settings=tenant_settings,
        dedupe_key=dedupe_key,
        now=now,
    )

    conversation, _ = get_or_create_conversation(
        db,
        request.tenant_id,
        contact.id,
        request.channel,
        subject=default_subject(request.channel, to_address, subject),
    )
    provider = PROVIDER_BY_CHANNEL[request.channel]
    from_address = resolve_email_sender(tenant_settings)[1] if request.channel == "email" else None

    if isinstance(decision, Denied):
        message = create_outbound_message(
            db,
            tenant_id=request.tenant_id,
            conversation=conversation,
            contact_id=contact.id,
            channel=request.channel,
            provider=provider,
            to_address=to_address,
            from_address=from_address,
            subject=subject,
            body_text=body_text,
            body_html=body_html,
            status=MessageStatus.FAILED,
            metadata={
                "policy_block": decision.to_dict(),
                "template_key": request.template_key,
            },
        )
        record_message_event(
            db,
            message,
            provider=provider,
            event_type="policy_blocked",
            payload=decision.to_dict(),
        )
        return SendOutcome(decision=decision, message=message)

    message = create_outbound_message(
        db,
        tenant_id=request.tenant_id,
        conversation=conversation,
        contact_id=contact.id,
        channel=request.channel,
        provider=provider,
        to_address=to_address,
        from_address=from_address,
        subject=subject,
        body_text=body_text,
        body_html=body_html,
        metadata={
            "dedupe_key": dedupe_key,
            "template_key": request.template_key,
            "variables": request.variables,
            "idempotency_key": request.idempotency_key,
        },
    )
    if request.channel == "email" and app_settings.mailgun_include_nc_token:
        merge_message_metadata(message, {"nc_token": secrets.token_urlsafe(24)})
    record_message_event(
        db,
        message,
        provider=provider,
        event_type="queued",
        payload={"dedupe_key": dedupe_key, "template_key": request.template_key},
    )
    outbox = enqueue_notification(
        db,
        tenant_id=request.tenant_id,
        channel=request.channel,
        event_key=request.template_key or "message.outbound",
        to_address=to_address,
        subject=subject,
        body_text=body_text,
        body_html=body_html,
        template_key=request.template_key,
        payload={"message_id": str(message.id), "contact_id": str(contact.id)},
    )
    logger.info(
        "Outbound message queued",
        extra={
            "context": {
                "tenant_id": str(request.tenant_id),
                "message_id": str(message.id),
                "outbox_id": str(outbox.id),
                "channel": request.channel,
            }
        },
    )
    return SendOutcome(decision=decision, message=message, outbox=outbox)
