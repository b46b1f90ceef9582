import uuid
from unittest.mock import MagicMock, patch

import httpx
import pytest

from app.services.providers import (
    InAppSender,
    MailgunSender,
    OutboundEnvelope,
    ProviderError,
    SenderRegistry,
    TwilioSender,
)


def _client_returning(response):
    client = MagicMock()
    client.__enter__.return_value = client
    client.post.return_value = response
    return client


def _response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.json.return_value = payload or {}
    return response


def _email(**overrides):
    values = dict(
        tenant_id=uuid.uuid4(),
        channel="email",
        to_address="jane@example.com",
        subject="Hi",
        body_text="Hello",
        body_html="<p>Hello</p>",
        from_address="Acme <support@acme.test>",
        reply_to="support@acme.test",
    )
    values.update(overrides)
    return OutboundEnvelope(**values)


class TestMailgunSender:
    def test_posts_form_with_basic_auth(self):
        client = _client_returning(_response(payload={"id": "<20240101@mg.acme.test>", "message": "Queued"}))
        sender = MailgunSender(api_key="key-1", domain="mg.acme.test", base_url="https://api.mailgun.net/v3/")
        envelope = _email(message_stream="outbound", tags=["booking"], variables={"nc_message_id": "m-1"})

        with patch("app.services.providers.httpx.Client", return_value=client):
            receipt = sender.send(envelope)

        url = client.post.call_args.args[0]
        kwargs = client.post.call_args.kwargs
        assert url == "https://api.mailgun.net/v3/mg.acme.test/messages"
        assert kwargs["auth"] == ("api", "key-1")
        form = kwargs["data"]
        assert ("to", "jane@example.com") in form
        assert ("h:Reply-To", "support@acme.test") in form
        assert ("h:X-Mailgun-Message-Stream", "outbound") in form
        assert ("o:tag", "booking") in form
        assert ("v:nc_message_id", "m-1") in form
        assert receipt.provider == "mailgun"
        assert receipt.provider_message_id == "<20240101@mg.acme.test>"

    def test_tenant_api_key_overrides_global(self):
        client = _client_returning(_response(payload={"id": "x"}))
        sender = MailgunSender(api_key="key-global", domain="mg.acme.test")
        with patch("app.services.providers.httpx.Client", return_value=client):
            sender.send(_email(api_key="key-tenant"))
        assert client.post.call_args.kwargs["auth"] == ("api", "key-tenant")

    def test_non_2xx_carries_body(self):
        client = _client_returning(_response(status_code=401, text="Forbidden"))
        sender = MailgunSender(api_key="key-1", domain="mg.acme.test")
        with patch("app.services.providers.httpx.Client", return_value=client):
            with pytest.raises(ProviderError) as exc:
                sender.send(_email())
        assert exc.value.status_code == 401
        assert exc.value.body == "Forbidden"
        assert "Forbidden" in str(exc.value)

    def test_transport_error(self):
        client = MagicMock()
        client.__enter__.return_value = client
        client.post.side_effect = httpx.ConnectTimeout("timed out")
        sender = MailgunSender(api_key="key-1", domain="mg.acme.test")
        with patch("app.services.providers.httpx.Client", return_value=client):
            with pytest.raises(ProviderError) as exc:
                sender.send(_email())
        assert "ConnectTimeout" in str(exc.value)

    def test_missing_from_address(self):
        sender = MailgunSender(api_key="key-1", domain="mg.acme.test")
        with pytest.raises(ProviderError):
            sender.send(_email(from_address=None))

    def test_tenant_key_alone_is_enough(self):
        client = _client_returning(_response(payload={"id": "x"}))
        sender = MailgunSender(api_key="", domain="mg.acme.test")
        assert sender.is_configured() is True
        with patch("app.services.providers.httpx.Client", return_value=client):
            sender.send(_email(api_key="key-tenant"))
        assert client.post.call_args.kwargs["auth"] == ("api", "key-tenant")

    def test_no_key_anywhere(self):
        sender = MailgunSender(api_key="", domain="mg.acme.test")
        with patch("app.services.providers.httpx.Client") as mock_client:
            with pytest.raises(ProviderError) as exc:
                sender.send(_email())
        assert "No Mailgun API key" in str(exc.value)
        mock_client.assert_not_called()

    def test_text_only_form(self):
        form = MailgunSender(api_key="k", domain="d").build_form(_email(body_html=None, reply_to=None))
        keys = [key for key, _ in form]
        assert "html" not in keys
        assert "h:Reply-To" not in keys
        assert ("text", "Hello") in form


class TestTwilioSender:
    def test_posts_to_account_messages(self):
        client = _client_returning(_response(status_code=201, payload={"sid": "SM123", "status": "queued"}))
        sender = TwilioSender(
            account_sid="AC1",
            auth_token="secret",
            status_callback_url="https://comms.example.com/webhooks/twilio/status",
        )
        envelope = OutboundEnvelope(
            tenant_id=uuid.uuid4(),
            channel="sms",
            to_address="+15551234567",
            body_text="Reminder",
            from_address="+15550001111",
        )
        with patch("app.services.providers.httpx.Client", return_value=client):
            receipt = sender.send(envelope)

        assert client.post.call_args.args[0] == "https://api.twilio.com/2010-04-01/Accounts/AC1/Messages.json"
        assert client.post.call_args.kwargs["auth"] == ("AC1", "secret")
        assert client.post.call_args.kwargs["data"] == {
            "From": "+15550001111",
            "To": "+15551234567",
            "Body": "Reminder",
            "StatusCallback": "https://comms.example.com/webhooks/twilio/status",
        }
        assert receipt.provider_message_id == "SM123"

    def test_missing_from_number(self):
        sender = TwilioSender(account_sid="AC1", auth_token="secret")
        envelope = OutboundEnvelope(tenant_id=uuid.uuid4(), channel="sms", to_address="+15551234567")
        with pytest.raises(ProviderError):
            sender.send(envelope)


class TestSenderRegistry:
    def test_unsupported_channel(self):
        result = SenderRegistry({}).get("fax")
        assert result.ok is False
        assert result.error_code == "unsupported_channel"

    def test_not_configured(self):
        registry = SenderRegistry({"sms": TwilioSender(account_sid="", auth_token="")})
        result = registry.get("sms")
        assert result.ok is False
        assert result.error_code == "not_configured"

    def test_mailgun_without_domain_is_not_configured(self):
        registry = SenderRegistry({"email": MailgunSender(api_key="key-1", domain="")})
        assert registry.get("email").error_code == "not_configured"

    def test_in_app_is_always_available(self):
        registry = SenderRegistry({"in_app": InAppSender()})
        sender = registry.get("in_app").unwrap()
        receipt = sender.send(OutboundEnvelope(tenant_id=uuid.uuid4(), channel="in_app", to_address=""))
        assert receipt.provider == "in_app"
        assert receipt.provider_message_id is None
