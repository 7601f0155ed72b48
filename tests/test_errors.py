"""Tests for auth error classification and remediation text."""

import pytest

from fresh_auth.errors import (
    AuthErrorKind,
    AuthorizationRequired,
    classify_auth_error,
    is_retryable_auth_error,
)


class TestClassifyAuthError:
    """Tests for classify_auth_error precedence."""

    def test_no_session(self):
        assert classify_auth_error({"error": "no_agent_session"}).kind is AuthErrorKind.NO_SESSION

    @pytest.mark.parametrize("code", ["no_grant", "grant_expired", "single_use_exhausted"])
    def test_grant_codes(self, code):
        assert classify_auth_error({"error": code}, "mail").kind is AuthErrorKind.NO_GRANT

    def test_account_not_linked_needs_connect_url(self):
        linked = classify_auth_error({"error": "no_oauth_token", "connectUrl": "https://c"})
        assert linked.kind is AuthErrorKind.ACCOUNT_NOT_LINKED
        assert linked.url == "https://c"
        bare = classify_auth_error({"error": "no_oauth_token"})
        assert bare.kind is AuthErrorKind.GENERIC

    def test_reauthorize(self):
        error = classify_auth_error({
            "error": "insufficient_scope",
            "reauthorizeUrl": "https://r",
            "missingScopes": ["Mail.Send", "Files.Read"],
        })
        assert error.kind is AuthErrorKind.SCOPE_OR_TOKEN_EXPIRED
        assert error.missing_scopes == ("Mail.Send", "Files.Read")

    def test_elevation(self):
        error = classify_auth_error({"error": "elevation_required", "elevateUrl": "https://e"})
        assert error.kind is AuthErrorKind.ELEVATION_REQUIRED
        assert error.url == "https://e"

    def test_generic(self):
        assert classify_auth_error({"error": "boom"}).kind is AuthErrorKind.GENERIC
        assert classify_auth_error("not a dict").kind is AuthErrorKind.GENERIC

    def test_no_session_beats_urls(self):
        payload = {"error": "no_agent_session", "reauthorizeUrl": "https://r", "elevateUrl": "https://e"}
        assert classify_auth_error(payload).kind is AuthErrorKind.NO_SESSION

    def test_grant_code_beats_urls(self):
        payload = {"error": "no_grant", "connectUrl": "https://c", "elevateUrl": "https://e"}
        assert classify_auth_error(payload).kind is AuthErrorKind.NO_GRANT

    def test_reauthorize_beats_elevate(self):
        payload = {"error": "x", "reauthorizeUrl": "https://r", "elevateUrl": "https://e"}
        assert classify_auth_error(payload).kind is AuthErrorKind.SCOPE_OR_TOKEN_EXPIRED

    def test_details_are_lifted(self):
        payload = {"error": "oauth", "details": {"reauthorizeUrl": "https://r"}}
        assert classify_auth_error(payload).kind is AuthErrorKind.SCOPE_OR_TOKEN_EXPIRED


class TestIsRetryableAuthError:
    """Tests for is_retryable_auth_error function."""

    @pytest.mark.parametrize("code", ["no_grant", "grant_expired", "single_use_exhausted"])
    def test_retryable(self, code):
        assert is_retryable_auth_error({"error": code})

    @pytest.mark.parametrize("payload", [
        {"error": "no_agent_session"},
        {"error": "no_oauth_token", "connectUrl": "https://c"},
        {"error": "x", "reauthorizeUrl": "https://r"},
        {"error": "x", "elevateUrl": "https://e"},
        {"message": "no_grant"},
        None,
        [],
    ])
    def test_not_retryable(self, payload):
        assert not is_retryable_auth_error(payload)


class TestRemediation:
    """Tests for remediation messages."""

    def test_no_grant_names_service(self):
        text = classify_auth_error({"error": "no_grant"}, "drive").remediation()
        assert "No active grant for drive." in text
        assert "fresh-auth request drive" in text

    def test_account_label(self):
        text = classify_auth_error(
            {"error": "no_oauth_token", "connectUrl": "https://c"}, "mail"
        ).remediation()
        assert text.startswith("Microsoft account not linked.")
        assert "https://c" in text

    def test_missing_scopes_listed(self):
        text = classify_auth_error(
            {"reauthorizeUrl": "https://r", "missingScopes": ["A", "B"]}
        ).remediation()
        assert "Missing scopes: A B" in text

    def test_generic_uses_message(self):
        assert classify_auth_error({"error": "x", "message": "Nope"}).remediation() == "Nope"

    def test_exception_carries_kind(self):
        error = AuthorizationRequired(classify_auth_error({"error": "no_agent_session"}), 401)
        assert error.kind is AuthErrorKind.NO_SESSION
        assert error.status_code == 401
        assert "login" in str(error)
