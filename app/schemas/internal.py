from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

OutboundChannel = Literal["email", "sms"]


class DispatchResponse(BaseModel):
    ok: bool = True
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    retry_scheduled: int = 0
    dead: int = 0


class SendMessageRequest(BaseModel):
    tenant_id: UUID
    contact_id: UUID
    channel: OutboundChannel
    subject: Optional[str] = None
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    template_key: Optional[str] = None
    variables: dict[str, Any] = Field(default_factory=dict)
    dedupe_key: Optional[str] = None
    idempotency_key: Optional[str] = None


class SendMessageResponse(BaseModel):
    ok: bool
    message_id: Optional[UUID] = None
    outbox_id: Optional[UUID] = None
    idempotent: bool = False
    code: Optional[str] = None
    reason: Optional[str] = None


class PolicyEvaluateRequest(BaseModel):
    tenant_id: UUID
    contact_id: UUID
    channel: OutboundChannel
    dedupe_key: Optional[str] = None
    at: Optional[datetime] = None


class PolicyEvaluateResponse(BaseModel):
    allowed: bool
    code: Optional[str] = None
    reason: Optional[str] = None
