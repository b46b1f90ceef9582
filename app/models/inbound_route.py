import uuid

from sqlalchemy import Column, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class InboundRoute(Base):
    __tablename__ = "comms_inbound_routes"
    __table_args__ = (UniqueConstraint("provider", "route_secret", name="uq_comms_inbound_routes_secret"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    provider = Column(Text, nullable=False)
    channel = Column(Text, nullable=False, default="email")
    route_secret = Column(Text, nullable=False)
    route_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
