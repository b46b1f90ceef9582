from app.services.conversation_service import (
    get_or_create_contact,
    get_or_create_conversation,
    resolve_thread,
)
from app.services.message_service import (
    apply_provider_status,
    create_inbound_message,
    create_outbound_message,
)
from app.services.policy_service import (
    Allowed,
    Denied,
    PolicyCode,
    evaluate_comms_policy,
    evaluate_policy,
)
from app.services.state_machine import (
    InvalidTransitionError,
    MessageStatus,
    OutboxStatus,
    can_transition,
    transition,
)
