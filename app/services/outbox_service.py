from __future__ import annotations

import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config import settings
from app.models import OutboxNotification
from app.services.state_machine import OutboxStatus, retry_or_dead
from app.services.template_service import DEFAULT_BODY_TEMPLATE, DEFAULT_SUBJECT_TEMPLATE, render_template

MAX_ERROR_LENGTH = 2000


@dataclass
class RenderedNotification:
    subject: str
    body_text: str
    body_html: str | None = None


def enqueue_notification(
    db: Session,
    *,
    tenant_id,
    channel: str,
    event_key: str,
    to_address: str | None,
    subject: str | None = None,
    body_text: str | None = None,
    body_html: str | None = None,
    template_key: str | None = None,
    payload: dict[str, Any] | None = None,
    max_attempts: int | None = None,
    next_attempt_at: datetime | None = None,
) -> OutboxNotification:
    now = datetime.now(timezone.utc)
    row = OutboxNotification(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        channel=channel,
        event_key=event_key,
        to_address=to_address,
        subject=subject,
        body_text=body_text,
        body_html=body_html,
        template_key=template_key,
        payload=payload or {},
        status=OutboxStatus.PENDING.value,
        attempt_count=0,
        max_attempts=max_attempts or settings.outbox_max_attempts,
        next_attempt_at=next_attempt_at or now,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.flush()
    return row


def claim_pending_notifications(
    db: Session,
    *,
    limit: int = 25,
    lease_seconds: int | None = None,
) -> list[dict[str, Any]]:
    """Lock and mark a batch as ``sending``; concurrent callers never receive the same row.

    Due ``pending`` rows are claimed, as are ``sending`` rows whose lease has
    expired (a dispatcher died mid-send), which makes delivery at-least-once.
    """
    if lease_seconds is None:
        lease_seconds = settings.outbox_sending_lease_seconds
    rows = (
        db.execute(
            text(
                """
                WITH cte AS (
                    SELECT id
                    FROM notification_outbox
                    WHERE (status = 'pending' AND next_attempt_at <= NOW())
                       OR (status = 'sending'
                           AND locked_at < NOW() - (:lease_seconds * INTERVAL '1 second'))
                    ORDER BY next_attempt_at, created_at
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE notification_outbox
                SET status = 'sending',
                    attempt_count = attempt_count + 1,
                    locked_at = NOW(),
                    updated_at = NOW()
                FROM cte
                WHERE notification_outbox.id = cte.id
                RETURNING notification_outbox.id,
                          notification_outbox.tenant_id,
                          notification_outbox.channel,
                          notification_outbox.event_key,
                          notification_outbox.to_address,
                          notification_outbox.subject,
                          notification_outbox.body_text,
                          notification_outbox.body_html,
                          notification_outbox.template_key,
                          notification_outbox.payload,
                          notification_outbox.attempt_count,
                          notification_outbox.max_attempts,
                          notification_outbox.created_at
                """
            ),
            {"limit": limit, "lease_seconds": lease_seconds},
        )
        .mappings()
        .all()
    )
    db.commit()
    return [dict(row) for row in rows]


def compute_backoff_seconds(
    attempt_count: int,
    *,
    base_seconds: float | None = None,
    max_seconds: float | None = None,
    jitter_ratio: float = 0.1,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff ``base * 2^(attempt-1)``, capped, plus up to 10% jitter."""
    base = settings.outbox_retry_backoff_seconds if base_seconds is None else base_seconds
    cap = settings.outbox_max_backoff_seconds if max_seconds is None else max_seconds
    backoff = min(base * (2 ** max(attempt_count - 1, 0)), cap)
    if jitter_ratio > 0:
        backoff += (rng or random).uniform(0, backoff * jitter_ratio)
    return backoff


def mark_notification_sent(db: Session, *, outbox_id, provider_message_id: str | None = None) -> None:
    db.execute(
        text(
            """
            UPDATE notification_outbox
            SET status = 'sent',
                provider_message_id = :provider_message_id,
                last_error = NULL,
                locked_at = NULL,
                sent_at = NOW(),
                updated_at = NOW()
            WHERE id = :id
            """
        ),
        {"id": outbox_id, "provider_message_id": provider_message_id},
    )
    db.commit()


def mark_notification_failed(
    db: Session,
    *,
    outbox_id,
    attempt_count: int,
    max_attempts: int,
    error: str,
    now: datetime | None = None,
    backoff_seconds: float | None = None,
) -> OutboxStatus:
    """Record a failed attempt; returns PENDING (retry scheduled) or DEAD."""
    now = now or datetime.now(timezone.utc)
    status = retry_or_dead(attempt_count, max_attempts)
    next_attempt_at = None
    if status == OutboxStatus.PENDING:
        if backoff_seconds is None:
            backoff_seconds = compute_backoff_seconds(attempt_count)
        next_attempt_at = now + timedelta(seconds=backoff_seconds)
    db.execute(
        text(
            """
            UPDATE notification_outbox
            SET status = :status,
                last_error = :last_error,
                next_attempt_at = COALESCE(:next_attempt_at, next_attempt_at),
                locked_at = NULL,
                updated_at = NOW()
            WHERE id = :id
            """
        ),
        {
            "id": outbox_id,
            "status": status.value,
            "last_error": (error or "unknown error")[:MAX_ERROR_LENGTH],
            "next_attempt_at": next_attempt_at,
        },
    )
    db.commit()
    return status


def render_notification(row: Mapping[str, Any]) -> RenderedNotification:
    """Render stored subject/body against the payload, or fall back to the default event text."""
    variables = dict(row.get("payload") or {})
    variables.setdefault("event_key", row.get("event_key"))

    subject = render_template(row.get("subject") or DEFAULT_SUBJECT_TEMPLATE, variables)
    body_text = row.get("body_text")
    body_html = row.get("body_html")
    if not body_text and not body_html:
        return RenderedNotification(subject=subject, body_text=render_template(DEFAULT_BODY_TEMPLATE, variables))
    return RenderedNotification(
        subject=subject,
        body_text=render_template(body_text, variables),
        body_html=render_template(body_html, variables) if body_html else None,
    )
