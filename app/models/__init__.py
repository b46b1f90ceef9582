from app.models.channel_preference import ChannelPreference
from app.models.contact import Contact
from app.models.conversation import Conversation
from app.models.inbound_route import InboundRoute
from app.models.message import Message
from app.models.message_attachment import MessageAttachment
from app.models.message_event import MessageEvent
from app.models.outbox_notification import OutboxNotification
from app.models.phone_number import PhoneNumber
from app.models.tenant_settings import TenantCommsSettings

__all__ = [
    "TenantCommsSettings",
    "InboundRoute",
    "PhoneNumber",
    "Contact",
    "Conversation",
    "Message",
    "MessageEvent",
    "MessageAttachment",
    "ChannelPreference",
    "OutboxNotification",
]
