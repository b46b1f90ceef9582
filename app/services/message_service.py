import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Conversation, Message, MessageAttachment, MessageEvent
from app.services.state_machine import (
    TERMINAL_MESSAGE_STATUSES,
    MessageStatus,
    can_transition,
    coerce_message_status,
)

logger = get_logger("message_service")

COUNTED_OUTBOUND_STATUSES = (
    MessageStatus.QUEUED.value,
    MessageStatus.SENT.value,
    MessageStatus.DELIVERED.value,
)

_STATUS_TIMESTAMP_FIELDS = {
    MessageStatus.SENT: "sent_at",
    MessageStatus.DELIVERED: "delivered_at",
    MessageStatus.FAILED: "failed_at",
}


def _touch_conversation(conversation: Optional[Conversation], now: datetime) -> None:
    if conversation is not None:
        conversation.updated_at = now


def create_inbound_message(
    db: Session,
    *,
    tenant_id: UUID,
    conversation: Conversation,
    contact_id: UUID,
    channel: str,
    provider: str,
    provider_message_id: Optional[str],
    from_address: Optional[str],
    to_address: Optional[str],
    body_text: Optional[str],
    body_html: Optional[str] = None,
    subject: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> Message:
    """Inbound messages are born terminal in status ``received``."""
    now = datetime.now(timezone.utc)
    message = Message(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        conversation_id=conversation.id,
        contact_id=contact_id,
        direction="inbound",
        channel=channel,
        provider=provider,
        provider_message_id=provider_message_id or None,
        status=MessageStatus.RECEIVED.value,
        subject=subject or None,
        body_text=body_text,
        body_html=body_html or None,
        from_address=from_address,
        to_address=to_address,
        message_metadata=metadata or {},
        created_at=now,
        received_at=now,
    )
    db.add(message)
    _touch_conversation(conversation, now)
    db.flush()
    return message


def create_outbound_message(
    db: Session,
    *,
    tenant_id: UUID,
    conversation: Conversation,
    contact_id: UUID,
    channel: str,
    provider: str,
    to_address: Optional[str],
    body_text: Optional[str],
    body_html: Optional[str] = None,
    subject: Optional[str] = None,
    from_address: Optional[str] = None,
    status: MessageStatus = MessageStatus.QUEUED,
    metadata: Optional[dict] = None,
) -> Message:
    now = datetime.now(timezone.utc)
    message = Message(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        conversation_id=conversation.id,
        contact_id=contact_id,
        direction="outbound",
        channel=channel,
        provider=provider,
        status=status.value,
        subject=subject,
        body_text=body_text,
        body_html=body_html,
        from_address=from_address,
        to_address=to_address,
        message_metadata=metadata or {},
        created_at=now,
        failed_at=now if status == MessageStatus.FAILED else None,
    )
    db.add(message)
    _touch_conversation(conversation, now)
    db.flush()
    return message


def record_message_event(
    db: Session,
    message: Message,
    *,
    provider: str,
    event_type: str,
    payload: Optional[dict] = None,
) -> MessageEvent:
    event = MessageEvent(
        id=uuid.uuid4(),
        tenant_id=message.tenant_id,
        message_id=message.id,
        provider=provider,
        event_type=event_type or "unknown",
        payload=payload or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(event)
    db.flush()
    return event


def record_attachment(
    db: Session,
    message: Message,
    *,
    filename: str,
    content_type: str,
    byte_size: Optional[int],
    storage_key: Optional[str],
    metadata: Optional[dict] = None,
) -> MessageAttachment:
    attachment = MessageAttachment(
        id=uuid.uuid4(),
        tenant_id=message.tenant_id,
        message_id=message.id,
        filename=filename,
        content_type=content_type,
        byte_size=byte_size,
        storage_key=storage_key,
        attachment_metadata=metadata or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(attachment)
    db.flush()
    return attachment


def apply_provider_status(
    db: Session,
    message: Message,
    new_status: MessageStatus,
    *,
    provider_status: Optional[str] = None,
    provider_message_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Patch a message from a provider report. Returns True if the status changed.

    Status only moves forward. Terminal or out-of-order reports still refresh
    the provider enrichment fields.
    """
    now = now or datetime.now(timezone.utc)
    current = coerce_message_status(message.status)

    if provider_status:
        message.provider_status = provider_status
    if provider_message_id and not message.provider_message_id:
        message.provider_message_id = provider_message_id

    changed = False
    if current is None or can_transition(current, new_status):
        message.status = new_status.value
        field = _STATUS_TIMESTAMP_FIELDS.get(new_status)
        if field:
            setattr(message, field, now)
        changed = True
    elif current != new_status:
        logger.info(
            "Ignored non-monotonic status update",
            extra={
                "context": {
                    "message_id": str(message.id),
                    "current_status": current.value,
                    "reported_status": new_status.value,
                    "terminal": current in TERMINAL_MESSAGE_STATUSES,
                }
            },
        )

    db.flush()
    return changed


def merge_message_metadata(message: Message, updates: dict) -> None:
    metadata = dict(message.message_metadata or {})
    metadata.update(updates)
    message.message_metadata = metadata


def find_message(db: Session, message_id: UUID) -> Optional[Message]:
    return db.query(Message).filter(Message.id == message_id).first()


def find_message_by_provider_id(
    db: Session, tenant_id: UUID, provider: str, provider_message_id: str
) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(
            Message.tenant_id == tenant_id,
            Message.provider == provider,
            Message.provider_message_id == provider_message_id,
        )
        .first()
    )


def find_outbound_by_idempotency_key(
    db: Session, tenant_id: UUID, contact_id: UUID, idempotency_key: str
) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(
            Message.tenant_id == tenant_id,
            Message.contact_id == contact_id,
            Message.direction == "outbound",
            Message.message_metadata.contains({"idempotency_key": idempotency_key}),
        )
        .order_by(Message.created_at.desc())
        .first()
    )


def count_outbound_messages(
    db: Session,
    *,
    tenant_id: UUID,
    contact_id: UUID,
    channel: str,
    since: datetime,
    statuses: Optional[Iterable[str]] = None,
    dedupe_key: Optional[str] = None,
) -> int:
    """Count outbound messages for one (tenant, contact, channel) created at or after ``since``."""
    query = db.query(func.count(Message.id)).filter(
        Message.tenant_id == tenant_id,
        Message.contact_id == contact_id,
        Message.channel == channel,
        Message.direction == "outbound",
        Message.created_at >= since,
    )
    if statuses is not None:
        query = query.filter(Message.status.in_(list(statuses)))
    if dedupe_key is not None:
        query = query.filter(Message.message_metadata.contains({"dedupe_key": dedupe_key}))
    return int(query.scalar() or 0)


def list_conversation_messages(db: Session, conversation_id: UUID, *, limit: int = 200) -> list[Message]:
    """Display order: creation time ascending; same-instant arrivals have no fixed order."""
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc())
        .limit(limit)
        .all()
    )
