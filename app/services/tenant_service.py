from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.config import settings as app_settings
from app.models import InboundRoute, PhoneNumber, TenantCommsSettings
from app.services.policy_service import CommsSettings


def resolve_tenant_by_route_secret(db: Session, provider: str, secret: str) -> Optional[UUID]:
    """Map a per-tenant inbound URL secret to its tenant."""
    if not secret or not secret.strip():
        return None
    route = (
        db.query(InboundRoute)
        .filter(InboundRoute.provider == provider, InboundRoute.route_secret == secret.strip())
        .first()
    )
    return route.tenant_id if route else None


def resolve_phone_number(db: Session, phone_e164: str) -> Optional[PhoneNumber]:
    return (
        db.query(PhoneNumber)
        .filter(PhoneNumber.phone_e164 == phone_e164, PhoneNumber.status == "active")
        .first()
    )


def resolve_sms_sender(db: Session, tenant_id: UUID) -> Optional[str]:
    """Default outbound number for a tenant, falling back to any active number."""
    numbers = (
        db.query(PhoneNumber)
        .filter(PhoneNumber.tenant_id == tenant_id, PhoneNumber.status == "active")
        .order_by(PhoneNumber.is_default_sender.desc(), PhoneNumber.created_at.asc())
        .all()
    )
    return numbers[0].phone_e164 if numbers else None


def load_comms_settings(db: Session, tenant_id: UUID) -> CommsSettings:
    row = db.query(TenantCommsSettings).filter(TenantCommsSettings.tenant_id == tenant_id).first()
    return CommsSettings.from_json(row.settings_json if row else None)


def resolve_email_sender(tenant_settings: CommsSettings) -> tuple[Optional[str], Optional[str]]:
    """Return (from header, reply-to address) for a tenant."""
    from_email = tenant_settings.email.from_email or app_settings.mailgun_from_email
    from_name = tenant_settings.email.from_name or app_settings.mailgun_from_name
    if not from_email:
        return None, None
    from_header = f"{from_name} <{from_email}>" if from_name else from_email
    return from_header, from_email
