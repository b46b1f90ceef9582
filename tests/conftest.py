import uuid
from unittest.mock import MagicMock

import pytest

from app.config import settings


@pytest.fixture
def db_session():
    """Mock database session."""
    return MagicMock()


@pytest.fixture
def mock_env(monkeypatch):
    """Known secrets for signature and internal endpoint tests."""
    monkeypatch.setattr(settings, "mailgun_verify_webhook_signature", True)
    monkeypatch.setattr(settings, "mailgun_webhook_signing_key", "mg-signing-key")
    monkeypatch.setattr(settings, "twilio_validate_signature", True)
    monkeypatch.setattr(settings, "twilio_auth_token", "tw-auth-token")
    monkeypatch.setattr(settings, "internal_dispatch_secret", "dispatch-secret")
    return settings


@pytest.fixture
def tenant_id():
    return uuid.uuid4()
