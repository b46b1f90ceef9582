from typing import Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field


class MailgunSignaturePayload(BaseModel):
    timestamp: Optional[str] = None
    token: Optional[str] = None
    signature: Optional[str] = None


class MailgunEventData(BaseModel):
    event: Optional[str] = None
    id: Optional[str] = None
    recipient: Optional[str] = None
    user_variables: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("user-variables", "user_variables", "userVariables"),
    )
    message: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    def provider_message_id(self) -> Optional[str]:
        headers = self.message.get("headers") or {}
        for key in ("message-id", "Message-Id", "message_id"):
            if headers.get(key):
                return str(headers[key])
        return self.id or None


class MailgunEventWebhook(BaseModel):
    signature: Optional[MailgunSignaturePayload] = None
    event_data: Optional[MailgunEventData] = Field(
        default=None,
        validation_alias=AliasChoices("event-data", "event_data", "eventData"),
    )

    model_config = {"extra": "allow"}


class WebhookAck(BaseModel):
    ok: bool = True
    processed: int = 0
    message_id: Optional[UUID] = None
    note: Optional[str] = None


class InboundAck(BaseModel):
    ok: bool = True
    tenant_id: UUID
    contact_id: UUID
    conversation_id: UUID
    message_id: UUID
    attachments: int = 0
    opted_out: bool = False
