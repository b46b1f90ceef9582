import uuid
from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from app.services.preference_service import OPTED_OUT, is_sms_opt_out, opt_out


class TestSmsOptOutKeywords:
    @pytest.mark.parametrize("body", ["STOP", "stop", "  Stop\n", "UNSUBSCRIBE", "quit", "StopAll", "cancel", "END"])
    def test_keywords(self, body):
        assert is_sms_opt_out(body) is True

    @pytest.mark.parametrize("body", ["please stop texting", "STOP!", "", None, "STOPS", "start"])
    def test_not_keywords(self, body):
        assert is_sms_opt_out(body) is False


class TestOptOut:
    def test_upsert_sets_opted_out(self):
        db = MagicMock()
        tenant, contact = uuid.uuid4(), uuid.uuid4()

        opt_out(db, tenant_id=tenant, contact_id=contact, channel="sms", source="twilio_inbound_keyword")

        stmt = db.execute.call_args.args[0]
        compiled = stmt.compile(dialect=postgresql.dialect())
        sql = str(compiled)
        assert "ON CONFLICT (tenant_id, contact_id, channel) DO UPDATE" in sql
        assert compiled.params["consent_status"] == OPTED_OUT
        assert compiled.params["consent_source"] == "twilio_inbound_keyword"
        assert compiled.params["channel"] == "sms"
        assert compiled.params["tenant_id"] == tenant
