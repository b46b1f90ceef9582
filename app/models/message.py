import uuid

from sqlalchemy import Column, ForeignKey, Index, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class Message(Base):
    __tablename__ = "comms_messages"
    __table_args__ = (
        Index("ix_comms_messages_outbound_window", "tenant_id", "contact_id", "channel", "direction", "created_at"),
        Index("ix_comms_messages_provider_id", "tenant_id", "provider", "provider_message_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("comms_conversations.id"), nullable=False)
    contact_id = Column(UUID(as_uuid=True), ForeignKey("comms_contacts.id"), nullable=False)
    direction = Column(Text, nullable=False)  # inbound, outbound
    channel = Column(Text, nullable=False)  # email, sms
    provider = Column(Text, nullable=False)  # mailgun, twilio
    provider_message_id = Column(Text)
    provider_status = Column(Text)
    status = Column(Text, nullable=False)  # queued, sent, delivered, failed, received
    subject = Column(Text)
    body_text = Column(Text)
    body_html = Column(Text)
    from_address = Column(Text)
    to_address = Column(Text)
    message_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    sent_at = Column(TIMESTAMP(timezone=True))
    delivered_at = Column(TIMESTAMP(timezone=True))
    failed_at = Column(TIMESTAMP(timezone=True))
    received_at = Column(TIMESTAMP(timezone=True))

    conversation = relationship("Conversation", back_populates="messages")
    events = relationship("MessageEvent", back_populates="message")
    attachments = relationship("MessageAttachment", back_populates="message")
