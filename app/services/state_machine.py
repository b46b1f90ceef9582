from enum import Enum
from typing import Optional


class MessageStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    RECEIVED = "received"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    DEAD = "dead"


# sent -> failed covers bounces reported after the provider accepted the message.
MESSAGE_TRANSITIONS = {
    MessageStatus.QUEUED: [MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.FAILED],
    MessageStatus.SENT: [MessageStatus.DELIVERED, MessageStatus.FAILED],
    MessageStatus.DELIVERED: [],
    MessageStatus.FAILED: [],
    MessageStatus.RECEIVED: [],
}

OUTBOX_TRANSITIONS = {
    OutboxStatus.PENDING: [OutboxStatus.SENDING],
    OutboxStatus.SENDING: [OutboxStatus.SENT, OutboxStatus.FAILED, OutboxStatus.DEAD],
    OutboxStatus.FAILED: [OutboxStatus.PENDING, OutboxStatus.DEAD],
    OutboxStatus.SENT: [],
    OutboxStatus.DEAD: [],
}

TERMINAL_MESSAGE_STATUSES = frozenset(
    {MessageStatus.DELIVERED, MessageStatus.FAILED, MessageStatus.RECEIVED}
)
TERMINAL_OUTBOX_STATUSES = frozenset({OutboxStatus.SENT, OutboxStatus.DEAD})


class InvalidTransitionError(Exception):
    def __init__(self, from_state: Enum, to_state: Enum):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def coerce_message_status(value: Optional[str]) -> Optional[MessageStatus]:
    if not value:
        return None
    try:
        return MessageStatus(value.strip().lower())
    except ValueError:
        return None


def can_transition(from_state: MessageStatus, to_state: MessageStatus) -> bool:
    """Check if a message status change keeps the status monotonic."""
    return to_state in MESSAGE_TRANSITIONS.get(from_state, [])


def transition(from_state: MessageStatus, to_state: MessageStatus) -> MessageStatus:
    """Perform a message status transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def can_transition_outbox(from_state: OutboxStatus, to_state: OutboxStatus) -> bool:
    return to_state in OUTBOX_TRANSITIONS.get(from_state, [])


def transition_outbox(from_state: OutboxStatus, to_state: OutboxStatus) -> OutboxStatus:
    if not can_transition_outbox(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def retry_or_dead(attempt_count: int, max_attempts: int) -> OutboxStatus:
    """Resolve a failed outbox attempt to its next state."""
    failed = transition_outbox(OutboxStatus.SENDING, OutboxStatus.FAILED)
    if attempt_count >= max_attempts:
        return transition_outbox(failed, OutboxStatus.DEAD)
    return transition_outbox(failed, OutboxStatus.PENDING)
