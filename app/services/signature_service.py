"""Webhook signature verification for Mailgun (email) and Twilio (SMS).

All functions are pure apart from the wall-clock read in the freshness check,
which accepts an explicit ``now`` for tests.
"""

import base64
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence, Union


TwilioParams = Union[Mapping[str, str], Sequence[tuple[str, str]]]


class SignatureError(Exception):
    status_code = 403

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidSignatureError(SignatureError):
    """Signature missing or does not match."""


class StaleTimestampError(SignatureError):
    """Timestamp outside the allowed skew window."""


class SignatureConfigError(SignatureError):
    """Verification is enabled but the server-side secret is missing."""

    status_code = 500


@dataclass(frozen=True)
class MailgunSignature:
    timestamp: str
    token: str
    signature: str


def sign_mailgun(signing_key: str, timestamp: str, token: str) -> str:
    """Return the hex HMAC-SHA256 of ``timestamp + token``."""
    payload = f"{timestamp}{token}".encode("utf-8")
    return hmac.new(signing_key.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_mailgun_signature(signing_key: str, timestamp: str, token: str, signature: str) -> bool:
    if not signature:
        return False
    expected = sign_mailgun(signing_key, timestamp, token)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def is_timestamp_fresh(timestamp: Any, max_skew_seconds: int, now: Optional[float] = None) -> bool:
    """True iff ``|now - timestamp| <= max_skew_seconds``."""
    try:
        ts = float(timestamp)
    except (TypeError, ValueError):
        return False
    current = time.time() if now is None else now
    return abs(current - ts) <= max_skew_seconds


def _str_field(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def extract_mailgun_signature_from_json(body: Mapping[str, Any]) -> MailgunSignature:
    """Read ``signature: {timestamp, token, signature}`` from an events-webhook body."""
    block = body.get("signature") if isinstance(body, Mapping) else None
    if not isinstance(block, Mapping):
        raise InvalidSignatureError("Missing Mailgun signature block")
    sig = MailgunSignature(
        timestamp=_str_field(block.get("timestamp")),
        token=_str_field(block.get("token")),
        signature=_str_field(block.get("signature")),
    )
    if not sig.timestamp or not sig.token or not sig.signature:
        raise InvalidSignatureError("Incomplete Mailgun signature block")
    return sig


def extract_mailgun_signature_from_form(form: Mapping[str, Any]) -> MailgunSignature:
    """Read top-level ``timestamp``/``token``/``signature`` multipart fields."""
    sig = MailgunSignature(
        timestamp=_str_field(form.get("timestamp")),
        token=_str_field(form.get("token")),
        signature=_str_field(form.get("signature")),
    )
    if not sig.timestamp or not sig.token or not sig.signature:
        raise InvalidSignatureError("Missing Mailgun signature fields")
    return sig


def verify_mailgun_request(
    sig_source: Mapping[str, Any],
    *,
    enabled: bool,
    signing_key: Optional[str],
    max_skew_seconds: int,
    from_form: bool = False,
    now: Optional[float] = None,
) -> None:
    """Raise a SignatureError subclass unless the Mailgun request is authentic."""
    if not enabled:
        return
    if not signing_key:
        raise SignatureConfigError("Missing MAILGUN_WEBHOOK_SIGNING_KEY")
    if from_form:
        sig = extract_mailgun_signature_from_form(sig_source)
    else:
        sig = extract_mailgun_signature_from_json(sig_source)
    if not is_timestamp_fresh(sig.timestamp, max_skew_seconds, now=now):
        raise StaleTimestampError("Stale Mailgun webhook timestamp")
    if not verify_mailgun_signature(signing_key, sig.timestamp, sig.token, sig.signature):
        raise InvalidSignatureError("Invalid Mailgun webhook signature")


def build_public_url(
    *,
    scheme: str,
    host: str,
    path: str,
    query: str,
    headers: Mapping[str, str],
) -> str:
    """Rebuild the URL the provider called, honoring reverse-proxy headers."""
    proto = headers.get("x-forwarded-proto") or scheme
    public_host = headers.get("x-forwarded-host") or headers.get("host") or host
    # Proxies may append a list; the first entry is the client-facing value.
    proto = proto.split(",")[0].strip()
    public_host = public_host.split(",")[0].strip()
    url = f"{proto}://{public_host}{path}"
    if query:
        url = f"{url}?{query}"
    return url


def _signing_pairs(params: TwilioParams) -> list[tuple[str, str]]:
    items = params.items() if isinstance(params, Mapping) else params
    return sorted((str(key), str(value)) for key, value in items)


def compute_twilio_signature(auth_token: str, url: str, params: TwilioParams) -> str:
    """Base64 HMAC-SHA1 of the URL followed by every ``key + value`` pair, sorted.

    ``params`` may be a mapping or the raw form pairs; a repeated key
    contributes one pair per value.
    """
    data = url + "".join(f"{key}{value}" for key, value in _signing_pairs(params))
    digest = hmac.new(auth_token.encode("utf-8"), data.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_twilio_signature(
    auth_token: str,
    provided_signature: Optional[str],
    url: str,
    params: TwilioParams,
) -> bool:
    if not provided_signature:
        return False
    expected = compute_twilio_signature(auth_token, url, params)
    return hmac.compare_digest(expected.encode("utf-8"), provided_signature.strip().encode("utf-8"))


def verify_twilio_request(
    *,
    enabled: bool,
    auth_token: Optional[str],
    provided_signature: Optional[str],
    url: str,
    params: TwilioParams,
) -> None:
    if not enabled:
        return
    if not auth_token:
        raise SignatureConfigError("Missing TWILIO_AUTH_TOKEN")
    if not verify_twilio_signature(auth_token, provided_signature, url, params):
        raise InvalidSignatureError("Invalid Twilio signature")
