import uuid

from sqlalchemy import Column, ForeignKey, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class ChannelPreference(Base):
    __tablename__ = "comms_channel_preferences"
    __table_args__ = (UniqueConstraint("tenant_id", "contact_id", "channel", name="uq_comms_channel_preferences"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    contact_id = Column(UUID(as_uuid=True), ForeignKey("comms_contacts.id"), nullable=False)
    channel = Column(Text, nullable=False)
    consent_status = Column(Text, nullable=False)  # opted_in, opted_out
    consent_source = Column(Text)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
