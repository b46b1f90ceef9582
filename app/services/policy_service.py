"""Outbound send policy: consent, quiet hours, hourly/daily caps, dedupe.

Checks run in a fixed order and the first failure decides the reported code.
Tenant settings are passed in explicitly; nothing here caches configuration.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional, Union
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.config import settings as app_settings
from app.logging_config import get_logger
from app.services.message_service import COUNTED_OUTBOUND_STATUSES, count_outbound_messages
from app.services.preference_service import OPTED_OUT, get_consent_status

logger = get_logger("policy_service")

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class PolicyCode(str, Enum):
    OPTED_OUT = "OPTED_OUT"
    QUIET_HOURS = "QUIET_HOURS"
    CAP_EXCEEDED = "CAP_EXCEEDED"
    DEDUPED = "DEDUPED"


@dataclass(frozen=True)
class Allowed:
    allowed: bool = True

    def to_dict(self) -> dict:
        return {"allowed": True}


@dataclass(frozen=True)
class Denied:
    code: PolicyCode
    reason: str
    allowed: bool = False

    def to_dict(self) -> dict:
        return {"allowed": False, "code": self.code.value, "reason": self.reason}


PolicyDecision = Union[Allowed, Denied]


class QuietHours(BaseModel):
    enabled: bool = False
    start: Optional[str] = None
    end: Optional[str] = None


class Caps(BaseModel):
    per_contact_per_hour: int = Field(default_factory=lambda: app_settings.default_cap_per_hour)
    per_contact_per_day: int = Field(default_factory=lambda: app_settings.default_cap_per_day)
    dedupe_minutes: int = Field(default_factory=lambda: app_settings.default_dedupe_minutes)


class EmailSender(BaseModel):
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    message_stream: Optional[str] = None
    api_key: Optional[str] = None


class CommsSettings(BaseModel):
    """Tenant comms settings with fallbacks for every field."""

    timezone: str = Field(default_factory=lambda: app_settings.default_timezone)
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    caps: Caps = Field(default_factory=Caps)
    email: EmailSender = Field(default_factory=EmailSender)

    model_config = {"extra": "ignore"}

    @classmethod
    def from_json(cls, data: Optional[dict]) -> "CommsSettings":
        data = dict(data or {})
        # Explicit nulls in stored JSON mean "use the default".
        cleaned = {key: value for key, value in data.items() if value is not None}
        if isinstance(cleaned.get("caps"), dict):
            cleaned["caps"] = {k: v for k, v in cleaned["caps"].items() if v is not None}
        return cls.model_validate(cleaned)


def parse_hhmm(value: Optional[str]) -> Optional[int]:
    """``"HH:MM"`` (24h) to minutes since midnight, or None if malformed."""
    if not value:
        return None
    match = _HHMM.match(value.strip())
    if not match:
        return None
    return int(match.group(1)) * 60 + int(match.group(2))


def is_within_quiet_hours(now_min: int, start_min: int, end_min: int) -> bool:
    if start_min == end_min:
        return False
    if start_min < end_min:
        return start_min <= now_min < end_min
    return now_min >= start_min or now_min < end_min


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    for candidate in (name, app_settings.default_timezone, "UTC"):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone", extra={"context": {"timezone": candidate}})
    return ZoneInfo("UTC")


def minutes_since_midnight(now: datetime, tz_name: Optional[str]) -> int:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(resolve_timezone(tz_name))
    return local.hour * 60 + local.minute


def quiet_hours_active(settings: CommsSettings, now: datetime) -> bool:
    quiet = settings.quiet_hours
    if not quiet.enabled:
        return False
    start_min = parse_hhmm(quiet.start)
    end_min = parse_hhmm(quiet.end)
    if start_min is None or end_min is None:
        return False
    return is_within_quiet_hours(minutes_since_midnight(now, settings.timezone), start_min, end_min)


CountOutbound = Callable[[datetime, Optional[str]], int]


def evaluate_policy(
    *,
    consent_status: Optional[str],
    settings: CommsSettings,
    count_outbound: CountOutbound,
    dedupe_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PolicyDecision:
    """Evaluate the checks in order: consent, quiet hours, hourly cap, daily cap, dedupe.

    ``count_outbound(since, dedupe_key)`` counts outbound messages for the
    same tenant, contact and channel. With ``dedupe_key=None`` it counts
    queued/sent/delivered rows; with a key it counts rows carrying that key.
    """
    now = now or datetime.now(timezone.utc)

    if (consent_status or "").strip().lower() == OPTED_OUT:
        return Denied(PolicyCode.OPTED_OUT, "Contact opted out for this channel.")

    if quiet_hours_active(settings, now):
        quiet = settings.quiet_hours
        return Denied(
            PolicyCode.QUIET_HOURS,
            f"Quiet hours active ({quiet.start}-{quiet.end} {settings.timezone}).",
        )

    caps = settings.caps
    if count_outbound(now - timedelta(hours=1), None) >= caps.per_contact_per_hour:
        return Denied(PolicyCode.CAP_EXCEEDED, "Hourly cap exceeded.")

    if count_outbound(now - timedelta(hours=24), None) >= caps.per_contact_per_day:
        return Denied(PolicyCode.CAP_EXCEEDED, "Daily cap exceeded.")

    if dedupe_key:
        since = now - timedelta(minutes=caps.dedupe_minutes)
        if count_outbound(since, dedupe_key) > 0:
            return Denied(PolicyCode.DEDUPED, "Duplicate send suppressed.")

    return Allowed()


def evaluate_comms_policy(
    db: Session,
    *,
    tenant_id: UUID,
    contact_id: UUID,
    channel: str,
    settings: CommsSettings,
    dedupe_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PolicyDecision:
    """Database-backed policy evaluation, scoped to (tenant, contact, channel, outbound)."""

    def _count(since: datetime, key: Optional[str]) -> int:
        if key is None:
            return count_outbound_messages(
                db,
                tenant_id=tenant_id,
                contact_id=contact_id,
                channel=channel,
                since=since,
                statuses=COUNTED_OUTBOUND_STATUSES,
            )
        return count_outbound_messages(
            db,
            tenant_id=tenant_id,
            contact_id=contact_id,
            channel=channel,
            since=since,
            dedupe_key=key,
        )

    decision = evaluate_policy(
        consent_status=get_consent_status(db, tenant_id, contact_id, channel),
        settings=settings,
        count_outbound=_count,
        dedupe_key=dedupe_key,
        now=now,
    )
    if isinstance(decision, Denied):
        logger.info(
            "Outbound send denied by policy",
            extra={
                "context": {
                    "tenant_id": str(tenant_id),
                    "contact_id": str(contact_id),
                    "channel": channel,
                    "code": decision.code.value,
                }
            },
        )
    return decision
