"""Provider adapters: turn a normalized send into a Mailgun or Twilio HTTP call."""

from dataclasses import dataclass, field
from typing import Optional, Protocol
from uuid import UUID

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.result import Result

logger = get_logger("providers")


class ProviderError(Exception):
    """Provider call failed. ``body`` carries the raw provider response text."""

    def __init__(self, provider: str, message: str, *, status_code: Optional[int] = None, body: str = ""):
        self.provider = provider
        self.status_code = status_code
        self.body = body
        detail = f"{provider} send failed"
        if status_code is not None:
            detail += f" ({status_code})"
        detail += f": {message}"
        if body and body not in message:
            detail += f" {body}"
        super().__init__(detail)


@dataclass
class OutboundEnvelope:
    tenant_id: UUID
    channel: str
    to_address: str
    body_text: str = ""
    subject: Optional[str] = None
    body_html: Optional[str] = None
    from_address: Optional[str] = None
    reply_to: Optional[str] = None
    message_stream: Optional[str] = None
    api_key: Optional[str] = None
    variables: dict[str, str] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)


@dataclass
class SendReceipt:
    provider: str
    provider_message_id: Optional[str] = None
    raw: dict = field(default_factory=dict)


class Sender(Protocol):
    name: str

    def is_configured(self) -> bool: ...

    def send(self, envelope: OutboundEnvelope) -> SendReceipt: ...


def _response_json(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError:
        return {"text": response.text}
    return payload if isinstance(payload, dict) else {"data": payload}


def _post_form(provider: str, url: str, *, data, auth: tuple[str, str], timeout: float) -> httpx.Response:
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(url, data=data, auth=auth)
    except httpx.HTTPError as exc:
        raise ProviderError(provider, f"{type(exc).__name__}: {exc}") from exc
    if response.status_code < 200 or response.status_code >= 300:
        raise ProviderError(provider, "non-2xx response", status_code=response.status_code, body=response.text)
    return response


class MailgunSender:
    name = "mailgun"

    def __init__(
        self,
        api_key: Optional[str] = None,
        domain: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.mailgun_api_key
        self.domain = domain if domain is not None else settings.mailgun_domain
        self.base_url = (base_url or settings.mailgun_api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds

    def is_configured(self) -> bool:
        # The API key may come per tenant on the envelope; send() checks it.
        return bool(self.domain)

    def build_form(self, envelope: OutboundEnvelope) -> list[tuple[str, str]]:
        form = [
            ("from", envelope.from_address or ""),
            ("to", envelope.to_address),
            ("subject", envelope.subject or ""),
        ]
        if envelope.body_text:
            form.append(("text", envelope.body_text))
        if envelope.body_html:
            form.append(("html", envelope.body_html))
        if envelope.reply_to:
            form.append(("h:Reply-To", envelope.reply_to))
        if envelope.message_stream:
            form.append(("h:X-Mailgun-Message-Stream", envelope.message_stream))
        for tag in envelope.tags:
            form.append(("o:tag", tag))
        for key, value in envelope.variables.items():
            if value is not None:
                form.append((f"v:{key}", str(value)))
        return form

    def send(self, envelope: OutboundEnvelope) -> SendReceipt:
        api_key = envelope.api_key or self.api_key
        if not self.domain:
            raise ProviderError(self.name, "Mailgun is not configured")
        if not api_key:
            raise ProviderError(self.name, "No Mailgun API key for tenant")
        if not envelope.from_address:
            raise ProviderError(self.name, "No from address resolved for tenant")
        url = f"{self.base_url}/{self.domain}/messages"
        response = _post_form(
            self.name,
            url,
            data=self.build_form(envelope),
            auth=("api", api_key),
            timeout=self.timeout,
        )
        payload = _response_json(response)
        return SendReceipt(provider=self.name, provider_message_id=payload.get("id"), raw=payload)


class TwilioSender:
    name = "twilio"

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        base_url: Optional[str] = None,
        status_callback_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.account_sid = account_sid if account_sid is not None else settings.twilio_account_sid
        self.auth_token = auth_token if auth_token is not None else settings.twilio_auth_token
        self.base_url = (base_url or settings.twilio_api_base_url).rstrip("/")
        self.status_callback_url = (
            status_callback_url if status_callback_url is not None else settings.twilio_status_callback_url
        )
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token)

    def send(self, envelope: OutboundEnvelope) -> SendReceipt:
        if not self.is_configured():
            raise ProviderError(self.name, "Twilio is not configured")
        if not envelope.from_address:
            raise ProviderError(self.name, "No From number resolved for tenant")
        data = {"From": envelope.from_address, "To": envelope.to_address, "Body": envelope.body_text or ""}
        if self.status_callback_url:
            data["StatusCallback"] = self.status_callback_url
        url = f"{self.base_url}/Accounts/{self.account_sid}/Messages.json"
        response = _post_form(
            self.name,
            url,
            data=data,
            auth=(self.account_sid, self.auth_token),
            timeout=self.timeout,
        )
        payload = _response_json(response)
        return SendReceipt(provider=self.name, provider_message_id=payload.get("sid"), raw=payload)


class InAppSender:
    """Placeholder for in-app notifications; nothing is delivered."""

    name = "in_app"

    def is_configured(self) -> bool:
        return True

    def send(self, envelope: OutboundEnvelope) -> SendReceipt:
        logger.info(
            "In-app notification skipped",
            extra={"context": {"tenant_id": str(envelope.tenant_id), "to": envelope.to_address}},
        )
        return SendReceipt(provider=self.name)


class SenderRegistry:
    """Channel -> sender lookup."""

    def __init__(self, senders: Optional[dict[str, Sender]] = None):
        self._senders: dict[str, Sender] = dict(senders or {})

    def register(self, channel: str, sender: Sender) -> None:
        self._senders[channel] = sender

    def get(self, channel: str) -> Result[Sender]:
        sender = self._senders.get(channel)
        if sender is None:
            return Result.failure(f"Unsupported channel: {channel}", "unsupported_channel")
        if not sender.is_configured():
            return Result.failure(f"{sender.name} is not configured", "not_configured")
        return Result.success(sender)


def default_registry() -> SenderRegistry:
    return SenderRegistry(
        {
            "email": MailgunSender(),
            "sms": TwilioSender(),
            "in_app": InAppSender(),
        }
    )


PROVIDER_BY_CHANNEL = {"email": MailgunSender.name, "sms": TwilioSender.name, "in_app": InAppSender.name}
