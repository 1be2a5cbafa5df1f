"""Tests for secret redaction of URLs, errors and parameters."""

import pytest

from teamguard.core.sanitizer import (
    JWT_REDACTED,
    REDACTED,
    sanitize_endpoint,
    sanitize_error,
    sanitize_item_errors,
    sanitize_params,
)

SAMPLE_JWT = (
    "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9"
    ".eyJzdWIiOiIxMjM0NTY3ODkwIiwibmFtZSI6IkpvaG4ifQ"
    ".SflKxwRJSMeKKF2QT4fwpMeJf36POk6yJV_adQssw5c"
)


class TestSanitizeEndpoint:
    """Tests for URL sanitization."""

    @pytest.mark.parametrize("param", ["token", "access_token", "idToken", "apiKey", "api_key", "auth", "password"])
    def test_credential_params_redacted(self, param):
        url = f"https://api.example.com/v2/teams?{param}=s3cr3tvalue&season=2024"
        result = sanitize_endpoint(url)

        assert "s3cr3tvalue" not in result
        assert f"{param}={REDACTED}" in result
        assert "season=2024" in result

    def test_plain_url_unchanged(self):
        url = "https://api.example.com/v2/teams/42/roster?season=2024"
        assert sanitize_endpoint(url) == url

    def test_bearer_value_redacted(self):
        result = sanitize_endpoint("https://api.example.com/x Bearer abc.def.ghi")
        assert "abc.def.ghi" not in result
        assert f"Bearer {REDACTED}" in result

    def test_fragment_preserved(self):
        result = sanitize_endpoint("https://api.example.com/cb?token=abc#section")
        assert result == f"https://api.example.com/cb?token={REDACTED}#section"

    @pytest.mark.parametrize("value", [None, ""])
    def test_empty_input(self, value):
        assert sanitize_endpoint(value) is None

    def test_idempotent(self):
        once = sanitize_endpoint("https://x.example.com/?refresh_token=zzz&key=yyy")
        assert sanitize_endpoint(once) == once


class TestSanitizeError:
    """Tests for error message sanitization."""

    def test_jwt_redacted(self):
        result = sanitize_error(f"Could not decode {SAMPLE_JWT}")
        assert SAMPLE_JWT not in result
        assert JWT_REDACTED in result

    def test_bearer_redacted(self):
        result = sanitize_error("401 for header Bearer abc123xyz")
        assert "abc123xyz" not in result

    def test_labeled_secrets_redacted(self):
        result = sanitize_error('Login failed: {"password": "hunter22", "user": "coach"}')
        assert "hunter22" not in result
        assert "coach" in result

    def test_authorization_label_redacted(self):
        result = sanitize_error("Request rejected, Authorization: Y29hY2g6aHVudGVy")
        assert "Y29hY2g6aHVudGVy" not in result
        assert result.startswith("Request rejected, Authorization: ")

    def test_embedded_url_redacted(self):
        result = sanitize_error("GET https://api.example.com/stats?access_token=leaky failed with 500")
        assert "leaky" not in result
        assert "failed with 500" in result

    def test_accepts_exceptions(self):
        result = sanitize_error(RuntimeError("provider said token: abc123"))
        assert "abc123" not in result
        assert f"token: {REDACTED}" in result

    def test_exception_without_message_uses_type(self):
        assert sanitize_error(TimeoutError()) == "TimeoutError"

    def test_harmless_message_unchanged(self):
        assert sanitize_error("Connection reset by peer") == "Connection reset by peer"

    @pytest.mark.parametrize("value", [None, ""])
    def test_empty_input(self, value):
        assert sanitize_error(value) is None

    def test_idempotent(self):
        once = sanitize_error(f"token: abc Bearer def {SAMPLE_JWT} ?apikey=ghi")
        assert sanitize_error(once) == once


class TestSanitizeParams:
    """Tests for request parameter sanitization."""

    def test_sensitive_keys_redacted(self):
        params = {
            "password": "hunter22",
            "idToken": "abc",
            "refreshToken": "def",
            "clientSecret": "ghi",
            "api_key": "jkl",
            "season": 2024,
            "teamId": "42",
        }
        result = sanitize_params(params)

        assert result["password"] == REDACTED
        assert result["idToken"] == REDACTED
        assert result["refreshToken"] == REDACTED
        assert result["clientSecret"] == REDACTED
        assert result["api_key"] == REDACTED
        assert result["season"] == 2024
        assert result["teamId"] == "42"

    def test_input_not_mutated(self):
        params = {"password": "hunter22"}
        sanitize_params(params)
        assert params == {"password": "hunter22"}

    @pytest.mark.parametrize("value", [None, {}])
    def test_empty_input(self, value):
        assert sanitize_params(value) is None


class TestSanitizeItemErrors:
    """Tests for per-item error sanitization."""

    def test_error_field_sanitized(self):
        result = sanitize_item_errors([
            {"item_id": "p-7", "error": "token: abc123"},
            {"item_id": "p-8", "error": "Missing jersey number"},
        ])

        assert result[0]["item_id"] == "p-7"
        assert "abc123" not in result[0]["error"]
        assert result[1]["error"] == "Missing jersey number"

    def test_non_dict_entries_wrapped(self):
        result = sanitize_item_errors(["password: hunter22"])
        assert result == [{"error": f"password: {REDACTED}"}]

    def test_empty_input(self):
        assert sanitize_item_errors([]) is None
        assert sanitize_item_errors(None) is None
