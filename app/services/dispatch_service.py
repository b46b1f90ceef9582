"""Drain the notification outbox through the provider adapters.

Delivery is at-least-once: a crash after the provider accepted a message but
before the row is marked ``sent`` leaves the row ``sending``; once its lease
expires it is claimed again and the provider is called a second time.
"""

import random
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import bind_logger, get_logger
from app.models import Message
from app.services.message_service import apply_provider_status, find_message, merge_message_metadata, record_message_event
from app.services.outbox_service import (
    claim_pending_notifications,
    mark_notification_failed,
    mark_notification_sent,
    render_notification,
)
from app.services.providers import (
    PROVIDER_BY_CHANNEL,
    OutboundEnvelope,
    ProviderError,
    SenderRegistry,
    SendReceipt,
    default_registry,
)
from app.services.result import ResultError
from app.services.state_machine import MessageStatus, OutboxStatus
from app.services.tenant_service import load_comms_settings, resolve_email_sender, resolve_sms_sender

logger = get_logger("dispatch_service")


@dataclass
class DispatchSummary:
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    retry_scheduled: int = 0
    dead: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class DispatchError(Exception):
    """A row could not be handed to a provider (routing or configuration)."""


def _correlated_message(db: Session, row: dict[str, Any]) -> Optional[Message]:
    message_id = (row.get("payload") or {}).get("message_id")
    if not message_id:
        return None
    try:
        message_uuid = UUID(str(message_id))
    except ValueError:
        return None
    message = find_message(db, message_uuid)
    if message is None or message.tenant_id != row.get("tenant_id"):
        return None
    return message


def build_envelope(db: Session, row: dict[str, Any], message: Optional[Message] = None) -> OutboundEnvelope:
    """Render the row and resolve the tenant's sender identity for its channel."""
    channel = row.get("channel")
    tenant_id = row.get("tenant_id")
    payload = row.get("payload") or {}
    rendered = render_notification(row)
    envelope = OutboundEnvelope(
        tenant_id=tenant_id,
        channel=channel,
        to_address=(row.get("to_address") or "").strip(),
        subject=rendered.subject,
        body_text=rendered.body_text,
        body_html=rendered.body_html,
    )
    if not envelope.to_address and channel != "in_app":
        raise DispatchError("Outbox row has no to_address")

    if channel == "email":
        tenant_settings = load_comms_settings(db, tenant_id)
        envelope.from_address, envelope.reply_to = resolve_email_sender(tenant_settings)
        envelope.message_stream = tenant_settings.email.message_stream or settings.mailgun_message_stream
        envelope.api_key = tenant_settings.email.api_key
        tags = payload.get("tags")
        if isinstance(tags, list):
            envelope.tags = [str(tag) for tag in tags]
        if message is not None:
            envelope.variables["nc_message_id"] = str(message.id)
            nc_token = (message.message_metadata or {}).get("nc_token")
            if nc_token:
                envelope.variables["nc_token"] = str(nc_token)
    elif channel == "sms":
        envelope.from_address = resolve_sms_sender(db, tenant_id)
    return envelope


def _send_row(db: Session, registry: SenderRegistry, row: dict[str, Any], message: Optional[Message]) -> SendReceipt:
    sender = registry.get(row.get("channel")).unwrap()
    return sender.send(build_envelope(db, row, message))


def _mark_message_sent(db: Session, message: Message, receipt: SendReceipt) -> None:
    apply_provider_status(
        db,
        message,
        MessageStatus.SENT,
        provider_message_id=receipt.provider_message_id,
    )
    record_message_event(
        db,
        message,
        provider=receipt.provider,
        event_type="sent",
        payload={"provider_message_id": receipt.provider_message_id},
    )


def _mark_message_failed(db: Session, message: Message, error: str) -> None:
    apply_provider_status(db, message, MessageStatus.FAILED)
    merge_message_metadata(message, {"error": error})
    record_message_event(
        db,
        message,
        provider=message.provider or PROVIDER_BY_CHANNEL.get(message.channel, "unknown"),
        event_type="failed",
        payload={"message": error},
    )


def _record_failure(
    db: Session,
    row: dict[str, Any],
    message: Optional[Message],
    summary: DispatchSummary,
    error: str,
) -> OutboxStatus:
    attempt_count = int(row.get("attempt_count") or 0)
    max_attempts = int(row.get("max_attempts") or settings.outbox_max_attempts)
    summary.failed += 1
    if message is not None and attempt_count >= max_attempts:
        _mark_message_failed(db, message, error)
    status = mark_notification_failed(
        db,
        outbox_id=row["id"],
        attempt_count=attempt_count,
        max_attempts=max_attempts,
        error=error,
    )
    if status == OutboxStatus.DEAD:
        summary.dead += 1
    else:
        summary.retry_scheduled += 1
    return status


def process_notification(
    db: Session,
    row: dict[str, Any],
    summary: DispatchSummary,
    *,
    registry: SenderRegistry,
) -> None:
    """Send one claimed row. Send failures of any kind are recorded on the row, never raised.

    Errors from the bookkeeping writes themselves propagate.
    """
    log = bind_logger(
        "dispatch_service",
        outbox_id=row.get("id"),
        tenant_id=row.get("tenant_id"),
        channel=row.get("channel"),
        event_key=row.get("event_key"),
    )
    message = _correlated_message(db, row)
    attempt_count = int(row.get("attempt_count") or 0)

    try:
        receipt = _send_row(db, registry, row, message)
    except (ProviderError, DispatchError, ResultError) as exc:
        error = str(exc)
        status = _record_failure(db, row, message, summary, error)
        log.warning(
            "Outbox send failed",
            context={"attempt_count": attempt_count, "next_status": status.value, "error": error},
        )
        return
    except Exception as exc:
        error = f"{type(exc).__name__}: {exc}"
        status = _record_failure(db, row, message, summary, error)
        log.error(
            "Outbox sender raised",
            exc_info=exc,
            context={"attempt_count": attempt_count, "next_status": status.value, "error": error},
        )
        return

    if message is not None:
        _mark_message_sent(db, message, receipt)
    mark_notification_sent(db, outbox_id=row["id"], provider_message_id=receipt.provider_message_id)
    summary.sent += 1
    log.info(
        "Outbox sent",
        context={"attempt_count": attempt_count, "provider_message_id": receipt.provider_message_id},
    )


def _jitter_seconds() -> float:
    low = max(settings.outbox_jitter_min_ms, 0)
    high = max(settings.outbox_jitter_max_ms, low)
    return random.randint(low, high) / 1000.0


def dispatch_pending_notifications(
    db: Session,
    *,
    limit: Optional[int] = None,
    registry: Optional[SenderRegistry] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> DispatchSummary:
    limit = limit or settings.outbox_batch_limit
    registry = registry or default_registry()
    rows = claim_pending_notifications(db, limit=limit)
    summary = DispatchSummary(claimed=len(rows))

    for index, row in enumerate(rows):
        if index:
            sleep(_jitter_seconds())
        process_notification(db, row, summary, registry=registry)

    logger.info("Outbox dispatch finished", extra={"context": summary.to_dict()})
    return summary
