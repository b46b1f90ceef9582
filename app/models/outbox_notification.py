import uuid

from sqlalchemy import Column, Index, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class OutboxNotification(Base):
    __tablename__ = "notification_outbox"
    __table_args__ = (Index("ix_notification_outbox_due", "status", "next_attempt_at"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    channel = Column(Text, nullable=False)  # email, sms, in_app
    event_key = Column(Text, nullable=False)
    to_address = Column(Text)
    subject = Column(Text)
    body_text = Column(Text)
    body_html = Column(Text)
    template_key = Column(Text)
    payload = Column(JSONB, nullable=False, default=dict)
    status = Column(Text, nullable=False, default="pending")  # pending, sending, sent, failed, dead
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    next_attempt_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    locked_at = Column(TIMESTAMP(timezone=True))
    last_error = Column(Text)
    provider_message_id = Column(Text)
    sent_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
