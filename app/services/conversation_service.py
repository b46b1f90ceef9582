import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Contact, Conversation
from app.services.identity import normalize_identity

logger = get_logger("conversation_service")

T = TypeVar("T")


@dataclass
class ResolvedThread:
    contact: Contact
    conversation: Conversation
    contact_created: bool = False
    conversation_created: bool = False


def find_contact(db: Session, tenant_id: UUID, channel: str, identity: str) -> Optional[Contact]:
    column = Contact.email if channel == "email" else Contact.phone_e164
    return db.query(Contact).filter(Contact.tenant_id == tenant_id, column == identity).first()


def find_latest_conversation(db: Session, tenant_id: UUID, contact_id: UUID, channel: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(
            Conversation.tenant_id == tenant_id,
            Conversation.contact_id == contact_id,
            Conversation.channel == channel,
        )
        .order_by(Conversation.updated_at.desc())
        .first()
    )


def _insert_or_refetch(db: Session, instance: T, refetch: Callable[[], Optional[T]]) -> tuple[T, bool]:
    """Insert inside a savepoint; if a concurrent writer won the unique index, return its row."""
    try:
        with db.begin_nested():
            db.add(instance)
            db.flush()
    except IntegrityError:
        existing = refetch()
        if existing is None:
            raise
        logger.info(
            "Concurrent insert resolved to existing row",
            extra={"context": {"table": getattr(instance, "__tablename__", None), "id": str(existing.id)}},
        )
        return existing, False
    return instance, True


def get_or_create_contact(
    db: Session,
    tenant_id: UUID,
    channel: str,
    raw_identity: str,
    *,
    display_name: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> tuple[Contact, bool]:
    """Find contact by normalized email/phone or create a new one."""
    identity = normalize_identity(channel, raw_identity)
    if not identity:
        raise ValueError(f"Missing sender identity for channel {channel}")

    contact = find_contact(db, tenant_id, channel, identity)
    if contact:
        return contact, False

    now = datetime.now(timezone.utc)
    contact = Contact(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        email=identity if channel == "email" else None,
        phone_e164=identity if channel == "sms" else None,
        display_name=display_name or (raw_identity or "").strip() or identity,
        status="active",
        contact_metadata=metadata or {},
        created_at=now,
        updated_at=now,
    )
    return _insert_or_refetch(db, contact, lambda: find_contact(db, tenant_id, channel, identity))


def default_subject(channel: str, address: str, subject: Optional[str] = None) -> str:
    if channel == "email":
        return subject or f"Email with {address}"
    return f"SMS with {address}"


def get_or_create_conversation(
    db: Session,
    tenant_id: UUID,
    contact_id: UUID,
    channel: str,
    *,
    subject: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> tuple[Conversation, bool]:
    """Reuse the most recently updated thread for (tenant, contact, channel) or open a new one."""
    conversation = find_latest_conversation(db, tenant_id, contact_id, channel)
    if conversation:
        return conversation, False

    now = datetime.now(timezone.utc)
    conversation = Conversation(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        contact_id=contact_id,
        channel=channel,
        subject=subject,
        status="open",
        conversation_metadata=metadata or {},
        created_at=now,
        updated_at=now,
    )
    return _insert_or_refetch(
        db, conversation, lambda: find_latest_conversation(db, tenant_id, contact_id, channel)
    )


def resolve_thread(
    db: Session,
    tenant_id: UUID,
    channel: str,
    sender: str,
    *,
    subject: Optional[str] = None,
    display_name: Optional[str] = None,
    contact_metadata: Optional[dict] = None,
    conversation_metadata: Optional[dict] = None,
) -> ResolvedThread:
    """Map an inbound sender to exactly one contact and one conversation.

    Not a single transaction: a failure after the contact insert leaves a
    contact that the provider's retry will reuse.
    """
    contact, contact_created = get_or_create_contact(
        db,
        tenant_id,
        channel,
        sender,
        display_name=display_name,
        metadata=contact_metadata,
    )
    address = contact.email if channel == "email" else contact.phone_e164
    conversation, conversation_created = get_or_create_conversation(
        db,
        tenant_id,
        contact.id,
        channel,
        subject=default_subject(channel, address or sender, subject),
        metadata=conversation_metadata,
    )
    if contact_created or conversation_created:
        logger.info(
            "Thread resolved",
            extra={
                "context": {
                    "tenant_id": str(tenant_id),
                    "channel": channel,
                    "contact_id": str(contact.id),
                    "conversation_id": str(conversation.id),
                    "contact_created": contact_created,
                    "conversation_created": conversation_created,
                }
            },
        )
    return ResolvedThread(
        contact=contact,
        conversation=conversation,
        contact_created=contact_created,
        conversation_created=conversation_created,
    )
