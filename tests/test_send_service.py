import uuid
from unittest.mock import patch

import pytest

from app.models import Message, MessageEvent, OutboxNotification
from app.schemas.internal import SendMessageRequest
from app.services import send_service
from app.services.policy_service import Allowed, CommsSettings, Denied, PolicyCode
from app.services.send_service import SendError, build_dedupe_key, queue_outbound_message
from tests.factories import added_objects, make_contact, make_conversation, make_message


@pytest.fixture
def contact(tenant_id):
    return make_contact(tenant_id, email="jane@example.com", phone_e164="+15551234567")


@pytest.fixture
def patched(contact):
    conversation = make_conversation(contact.tenant_id, contact.id)
    tenant_settings = CommsSettings.from_json({"email": {"from_email": "support@acme.test"}})
    with patch.object(send_service, "load_contact", return_value=contact), patch.object(
        send_service, "load_comms_settings", return_value=tenant_settings
    ), patch.object(send_service, "evaluate_comms_policy", return_value=Allowed()) as policy, patch.object(
        send_service, "get_or_create_conversation", return_value=(conversation, False)
    ), patch.object(
        send_service, "find_outbound_by_idempotency_key", return_value=None
    ) as idempotency:
        yield {"policy": policy, "idempotency": idempotency, "conversation": conversation}


def _request(contact, **overrides):
    values = dict(
        tenant_id=contact.tenant_id,
        contact_id=contact.id,
        channel="email",
        subject="Booking {{booking.id}}",
        body_text="Hi {{name}}, see you soon",
        template_key="booking.reminder",
        variables={"name": "Jane", "booking": {"id": 42}},
    )
    values.update(overrides)
    return SendMessageRequest(**values)


class TestQueueOutbound:
    def test_allowed_send_queues_message_and_outbox(self, db_session, contact, patched):
        outcome = queue_outbound_message(db_session, _request(contact))

        assert outcome.ok is True
        message = outcome.message
        assert message.status == "queued"
        assert message.direction == "outbound"
        assert message.provider == "mailgun"
        assert message.subject == "Booking 42"
        assert message.body_text == "Hi Jane, see you soon"
        assert message.to_address == "jane@example.com"
        assert message.from_address == "support@acme.test"
        assert message.conversation_id == patched["conversation"].id
        assert message.message_metadata["dedupe_key"] == f"email:booking.reminder:{contact.id}"

        outbox = added_objects(db_session, OutboxNotification)
        assert len(outbox) == 1
        assert outbox[0].payload == {"message_id": str(message.id), "contact_id": str(contact.id)}
        assert outbox[0].event_key == "booking.reminder"
        assert outbox[0].status == "pending"

        events = added_objects(db_session, MessageEvent)
        assert [event.event_type for event in events] == ["queued"]

    def test_denied_send_is_recorded_without_outbox(self, db_session, contact, patched):
        patched["policy"].return_value = Denied(PolicyCode.QUIET_HOURS, "Quiet hours are active for this tenant.")

        outcome = queue_outbound_message(db_session, _request(contact, idempotency_key="req-1"))

        assert outcome.ok is False
        assert outcome.outbox is None
        message = outcome.message
        assert message.status == "failed"
        assert message.failed_at is not None
        assert message.message_metadata["policy_block"]["code"] == "QUIET_HOURS"
        assert "dedupe_key" not in message.message_metadata
        assert "idempotency_key" not in message.message_metadata
        assert added_objects(db_session, OutboxNotification) == []
        events = added_objects(db_session, MessageEvent)
        assert [event.event_type for event in events] == ["policy_blocked"]

    def test_idempotent_retry_returns_existing(self, db_session, contact, patched):
        existing = make_message(contact.tenant_id, metadata={"idempotency_key": "req-1"})
        patched["idempotency"].return_value = existing

        outcome = queue_outbound_message(db_session, _request(contact, idempotency_key="req-1"))

        assert outcome.idempotent is True
        assert outcome.message is existing
        patched["policy"].assert_not_called()
        assert added_objects(db_session, Message) == []

    def test_sms_uses_phone(self, db_session, contact, patched):
        outcome = queue_outbound_message(db_session, _request(contact, channel="sms", subject=None))
        assert outcome.message.to_address == "+15551234567"
        assert outcome.message.provider == "twilio"
        assert outcome.message.from_address is None

    def test_unknown_contact(self, db_session, contact, patched):
        with patch.object(send_service, "load_contact", return_value=None):
            with pytest.raises(SendError) as exc:
                queue_outbound_message(db_session, _request(contact))
        assert exc.value.status_code == 404

    def test_contact_without_address(self, db_session, tenant_id, patched):
        contact = make_contact(tenant_id, email="jane@example.com")
        with patch.object(send_service, "load_contact", return_value=contact):
            with pytest.raises(SendError) as exc:
                queue_outbound_message(db_session, _request(contact, channel="sms"))
        assert exc.value.status_code == 400

    def test_empty_body(self, db_session, contact, patched):
        with pytest.raises(SendError) as exc:
            queue_outbound_message(db_session, _request(contact, body_text="{{missing}}"))
        assert exc.value.status_code == 400


class TestDedupeKey:
    def test_explicit_key_wins(self, contact):
        assert build_dedupe_key(_request(contact, dedupe_key="custom")) == "custom"

    def test_no_template_no_key(self, contact):
        assert build_dedupe_key(_request(contact, template_key=None)) is None
