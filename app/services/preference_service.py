import uuid
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import ChannelPreference

logger = get_logger("preference_service")

OPTED_IN = "opted_in"
OPTED_OUT = "opted_out"

SMS_OPT_OUT_KEYWORDS = frozenset({"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"})


def is_sms_opt_out(body: Optional[str]) -> bool:
    """Whole-message, case-insensitive match against carrier opt-out keywords."""
    return (body or "").strip().upper() in SMS_OPT_OUT_KEYWORDS


def get_consent_status(db: Session, tenant_id: UUID, contact_id: UUID, channel: str) -> Optional[str]:
    pref = (
        db.query(ChannelPreference)
        .filter(
            ChannelPreference.tenant_id == tenant_id,
            ChannelPreference.contact_id == contact_id,
            ChannelPreference.channel == channel,
        )
        .first()
    )
    return pref.consent_status if pref else None


def upsert_channel_preference(
    db: Session,
    *,
    tenant_id: UUID,
    contact_id: UUID,
    channel: str,
    consent_status: str,
    consent_source: str,
) -> None:
    now = datetime.now(timezone.utc)
    stmt = insert(ChannelPreference).values(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        contact_id=contact_id,
        channel=channel,
        consent_status=consent_status,
        consent_source=consent_source,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["tenant_id", "contact_id", "channel"],
        set_={
            "consent_status": stmt.excluded.consent_status,
            "consent_source": stmt.excluded.consent_source,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    db.execute(stmt)
    logger.info(
        "Channel preference updated",
        extra={
            "context": {
                "tenant_id": str(tenant_id),
                "contact_id": str(contact_id),
                "channel": channel,
                "consent_status": consent_status,
                "consent_source": consent_source,
            }
        },
    )


def opt_out(db: Session, *, tenant_id: UUID, contact_id: UUID, channel: str, source: str) -> None:
    upsert_channel_preference(
        db,
        tenant_id=tenant_id,
        contact_id=contact_id,
        channel=channel,
        consent_status=OPTED_OUT,
        consent_source=source,
    )
