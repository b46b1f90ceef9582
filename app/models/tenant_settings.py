from sqlalchemy import Column
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class TenantCommsSettings(Base):
    __tablename__ = "comms_tenant_settings"

    tenant_id = Column(UUID(as_uuid=True), primary_key=True)
    settings_json = Column(JSONB, nullable=False, default=dict)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
