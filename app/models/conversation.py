import uuid

from sqlalchemy import Column, ForeignKey, Index, Text, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class Conversation(Base):
    __tablename__ = "comms_conversations"
    __table_args__ = (
        Index(
            "uq_comms_conversations_open_thread",
            "tenant_id",
            "contact_id",
            "channel",
            unique=True,
            postgresql_where=text("status = 'open'"),
        ),
        Index("ix_comms_conversations_lookup", "tenant_id", "contact_id", "channel", "updated_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    contact_id = Column(UUID(as_uuid=True), ForeignKey("comms_contacts.id"), nullable=False)
    channel = Column(Text, nullable=False)  # email, sms; immutable once created
    subject = Column(Text)
    status = Column(Text, nullable=False, default="open")  # open, closed
    conversation_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    contact = relationship("Contact", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation")
