import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.database import get_db
from app.main import app
from app.services.dispatch_service import DispatchSummary
from app.services.policy_service import Allowed, CommsSettings, Denied, PolicyCode
from app.services.send_service import SendError, SendOutcome
from tests.factories import make_contact, make_message

AUTH = {"X-Internal-Secret": "dispatch-secret"}


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def api(client, db_session, mock_env):
    app.dependency_overrides[get_db] = lambda: db_session
    try:
        yield client
    finally:
        app.dependency_overrides.clear()


class TestInternalAuth:
    def test_missing_secret(self, api):
        response = api.post("/internal/notifications/dispatch")
        assert response.status_code == 403

    def test_wrong_secret(self, api):
        response = api.post("/internal/notifications/dispatch", headers={"X-Internal-Secret": "nope"})
        assert response.status_code == 403

    def test_unconfigured_secret(self, api, monkeypatch):
        monkeypatch.setattr("app.config.settings.internal_dispatch_secret", None)
        response = api.post("/internal/notifications/dispatch", headers=AUTH)
        assert response.status_code == 500
        assert response.json()["detail"] == "INTERNAL_DISPATCH_SECRET not configured"

    @pytest.mark.parametrize(
        "headers",
        [AUTH, {"Authorization": "Bearer dispatch-secret"}, {"Authorization": "bearer   dispatch-secret"}],
    )
    def test_accepted_credentials(self, api, headers):
        with patch("app.routers.internal.dispatch_pending_notifications", return_value=DispatchSummary()):
            response = api.post("/internal/notifications/dispatch", headers=headers)
        assert response.status_code == 200

    def test_basic_auth_is_rejected(self, api):
        response = api.post("/internal/notifications/dispatch", headers={"Authorization": "Basic dispatch-secret"})
        assert response.status_code == 403


class TestDispatchEndpoint:
    def test_returns_summary(self, api, db_session):
        summary = DispatchSummary(claimed=3, sent=2, failed=1, retry_scheduled=1, dead=0)
        with patch("app.routers.internal.dispatch_pending_notifications", return_value=summary) as mock_dispatch:
            response = api.post("/internal/notifications/dispatch?limit=10", headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "claimed": 3, "sent": 2, "failed": 1, "retry_scheduled": 1, "dead": 0}
        mock_dispatch.assert_called_once_with(db_session, limit=10)

    def test_default_limit(self, api, db_session):
        with patch("app.routers.internal.dispatch_pending_notifications", return_value=DispatchSummary()) as mock_dispatch:
            api.post("/internal/notifications/dispatch", headers=AUTH)
        mock_dispatch.assert_called_once_with(db_session, limit=25)

    def test_limit_bounds(self, api):
        assert api.post("/internal/notifications/dispatch?limit=0", headers=AUTH).status_code == 422
        assert api.post("/internal/notifications/dispatch?limit=501", headers=AUTH).status_code == 422


class TestSendEndpoint:
    def _payload(self, tenant_id):
        return {
            "tenant_id": str(tenant_id),
            "contact_id": str(uuid.uuid4()),
            "channel": "sms",
            "body_text": "Your appointment is tomorrow",
            "template_key": "booking.reminder",
        }

    def test_allowed(self, api, db_session, tenant_id):
        message = make_message(tenant_id, channel="sms", provider="twilio")
        outbox_id = uuid.uuid4()
        outcome = SendOutcome(decision=Allowed(), message=message, outbox=SimpleNamespace(id=outbox_id))
        with patch("app.routers.internal.queue_outbound_message", return_value=outcome):
            response = api.post("/internal/messages/send", json=self._payload(tenant_id), headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["message_id"] == str(message.id)
        assert body["outbox_id"] == str(outbox_id)
        assert body["code"] is None
        db_session.commit.assert_called_once()

    def test_denied_is_committed(self, api, db_session, tenant_id):
        message = make_message(tenant_id, status="failed")
        outcome = SendOutcome(decision=Denied(PolicyCode.OPTED_OUT, "Contact opted out of this channel."), message=message)
        with patch("app.routers.internal.queue_outbound_message", return_value=outcome):
            response = api.post("/internal/messages/send", json=self._payload(tenant_id), headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is False
        assert body["code"] == "OPTED_OUT"
        assert body["outbox_id"] is None
        db_session.commit.assert_called_once()

    def test_send_error(self, api, db_session, tenant_id):
        with patch("app.routers.internal.queue_outbound_message", side_effect=SendError(404, "Contact not found")):
            response = api.post("/internal/messages/send", json=self._payload(tenant_id), headers=AUTH)
        assert response.status_code == 404
        db_session.commit.assert_not_called()

    def test_unsupported_channel(self, api, tenant_id):
        payload = {**self._payload(tenant_id), "channel": "fax"}
        response = api.post("/internal/messages/send", json=payload, headers=AUTH)
        assert response.status_code == 422


class TestPolicyEndpoint:
    def _payload(self, tenant_id, contact_id, **extra):
        return {"tenant_id": str(tenant_id), "contact_id": str(contact_id), "channel": "sms", **extra}

    def test_cap_exceeded_after_two_sends(self, api, tenant_id):
        contact = make_contact(tenant_id, phone_e164="+15551234567")
        now = datetime(2024, 6, 3, 16, 0, tzinfo=timezone.utc)
        sent_at = [now - timedelta(minutes=20), now - timedelta(minutes=5)]

        def _count(db, *, tenant_id, contact_id, channel, since, statuses=None, dedupe_key=None):
            if dedupe_key is not None:
                return 0
            return sum(1 for created in sent_at if created >= since)

        with patch("app.routers.internal.load_contact", return_value=contact), patch(
            "app.routers.internal.load_comms_settings", return_value=CommsSettings.from_json({"timezone": "UTC"})
        ), patch("app.services.policy_service.get_consent_status", return_value=None), patch(
            "app.services.policy_service.count_outbound_messages", side_effect=_count
        ):
            response = api.post(
                "/internal/policy/evaluate",
                json=self._payload(tenant_id, contact.id, at=now.isoformat()),
                headers=AUTH,
            )

        assert response.status_code == 200
        assert response.json() == {
            "allowed": False,
            "code": "CAP_EXCEEDED",
            "reason": "Hourly cap exceeded.",
        }

    def test_fresh_contact_with_defaults_is_allowed(self, api, tenant_id):
        contact = make_contact(tenant_id, phone_e164="+15551234567")
        with patch("app.routers.internal.load_contact", return_value=contact), patch(
            "app.routers.internal.load_comms_settings", return_value=CommsSettings.from_json(None)
        ), patch("app.services.policy_service.get_consent_status", return_value=None), patch(
            "app.services.policy_service.count_outbound_messages", return_value=0
        ):
            response = api.post("/internal/policy/evaluate", json=self._payload(tenant_id, contact.id), headers=AUTH)
        assert response.status_code == 200
        assert response.json() == {"allowed": True, "code": None, "reason": None}

    def test_unknown_contact(self, api, tenant_id):
        with patch("app.routers.internal.load_contact", return_value=None):
            response = api.post(
                "/internal/policy/evaluate", json=self._payload(tenant_id, uuid.uuid4()), headers=AUTH
            )
        assert response.status_code == 404
