import pytest

from app.services.result import Result, ResultError


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("test value")
        assert result.ok is True
        assert result.value == "test value"
        assert result.error is None

    def test_unwrap_returns_value(self):
        assert Result.success(42).unwrap() == 42


class TestResultFailure:
    def test_failure_creates_not_ok_result(self):
        result = Result.failure("mailgun is not configured", "not_configured")
        assert result.ok is False
        assert result.error == "mailgun is not configured"
        assert result.error_code == "not_configured"
        assert result.value is None

    def test_failure_default_code(self):
        result = Result.failure("Error message")
        assert result.error_code == "unknown"

    def test_unwrap_raises_with_code(self):
        with pytest.raises(ResultError) as exc:
            Result.failure("twilio is not configured", "not_configured").unwrap()
        assert exc.value.code == "not_configured"
        assert str(exc.value) == "not_configured: twilio is not configured"


class TestResultUnwrapOr:
    def test_unwrap_or_returns_value_on_success(self):
        result = Result.success("actual value")
        assert result.unwrap_or("default") == "actual value"

    def test_unwrap_or_returns_default_on_failure(self):
        result = Result.failure("Error", "code")
        assert result.unwrap_or("default") == "default"
