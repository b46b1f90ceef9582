from app.schemas.internal import DispatchResponse, SendMessageRequest, SendMessageResponse
from app.schemas.webhook import InboundAck, MailgunEventWebhook, WebhookAck

__all__ = [
    "DispatchResponse",
    "SendMessageRequest",
    "SendMessageResponse",
    "InboundAck",
    "MailgunEventWebhook",
    "WebhookAck",
]
